import hashlib
import hmac
import json
import time
from datetime import date, datetime, timezone

import pytest
import sqlalchemy as sa

from protection_billing.billing.webhooks import WebhookSignatureError, apply_invoice_event, verify_signature
from protection_billing.common.db import session_scope
from protection_billing.common.models import Invoice, Store

SECRET = "whsec_test"


def _sign(payload: bytes, timestamp: int, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_verify_signature_accepts_valid_header():
    payload = json.dumps({"id": "evt_1"}).encode()

    verify_signature(payload, _sign(payload, int(time.time()) - 30), SECRET)


@pytest.mark.parametrize(
    "header",
    ["", "t=1700000000", "v1=abc", "t=abc,v1=deadbeef", "t=1700000000,v1=deadbeef"],
)
def test_verify_signature_rejects_malformed_or_wrong_headers(header):
    with pytest.raises(WebhookSignatureError):
        verify_signature(b"{}", header, SECRET)


def test_verify_signature_rejects_wrong_secret():
    payload = b"{}"

    with pytest.raises(WebhookSignatureError):
        verify_signature(payload, _sign(payload, int(time.time()), secret="whsec_other"), SECRET)


def test_verify_signature_rejects_stale_timestamp():
    payload = b"{}"

    with pytest.raises(WebhookSignatureError, match="tolerance"):
        verify_signature(payload, _sign(payload, int(time.time()) - 1000), SECRET)



async def _seed_invoice(seed) -> None:
    await seed(
        Store(id="store-a", shop_domain="a.myshopify.com", stripe_customer_id="cus_A"),
        Invoice(
            store_id="store-a",
            week="2025-W15",
            week_start_date=date(2025, 4, 7),
            week_end_date=date(2025, 4, 13),
            sales_count=2,
            commission_total=373,
            total_amount=373,
            external_invoice_id="in_123",
            status="open",
        ),
    )


async def _invoice(database_url: str) -> Invoice:
    async with session_scope(database_url) as session:
        return (await session.execute(sa.select(Invoice))).scalar_one()


@pytest.mark.asyncio
async def test_apply_invoice_paid_sets_status_and_paid_at(database_url, seed, logger):
    await _seed_invoice(seed)
    event = {
        "id": "evt_1",
        "type": "invoice.paid",
        "data": {"object": {"id": "in_123", "status": "paid", "status_transitions": {"paid_at": 1744621200}}},
    }

    assert await apply_invoice_event(database_url, event, logger=logger) is True

    invoice = await _invoice(database_url)
    assert invoice.status == "paid"
    assert invoice.paid_at.replace(tzinfo=timezone.utc) == datetime.fromtimestamp(1744621200, tz=timezone.utc)


@pytest.mark.asyncio
async def test_apply_invoice_voided_updates_status(database_url, seed, logger):
    await _seed_invoice(seed)
    event = {"type": "invoice.voided", "data": {"object": {"id": "in_123"}}}

    assert await apply_invoice_event(database_url, event, logger=logger) is True
    assert (await _invoice(database_url)).status == "void"


@pytest.mark.asyncio
async def test_apply_invoice_event_ignores_unknown_types_and_invoices(database_url, seed, logger, read_events):
    await _seed_invoice(seed)

    ignored = await apply_invoice_event(
        database_url, {"type": "customer.created", "data": {"object": {"id": "cus_A"}}}, logger=logger
    )
    missing = await apply_invoice_event(
        database_url, {"type": "invoice.paid", "data": {"object": {"id": "in_unknown"}}}, logger=logger
    )

    assert (ignored, missing) == (False, False)
    assert (await _invoice(database_url)).status == "open"
    assert [event["status"] for event in read_events() if event["phase"] == "webhook"] == ["warn", "warn"]
