"""Echo processor-side invoice status changes onto local invoice rows."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import sqlalchemy as sa
import stripe

from protection_billing.common.date_utils import utc_now
from protection_billing.common.db import session_scope
from protection_billing.common.json_logger import JsonLogger, log_event
from protection_billing.common.models import Invoice

DEFAULT_TOLERANCE_SECONDS = 300

EVENT_STATUSES = {
    "invoice.paid": "paid",
    "invoice.payment_failed": "open",
    "invoice.marked_uncollectible": "uncollectible",
    "invoice.voided": "void",
    "invoice.finalized": "open",
}


class WebhookSignatureError(ValueError):
    pass


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Validate a ``Stripe-Signature`` header (``t=<ts>,v1=<hex>``) for ``payload``."""

    if not header:
        raise WebhookSignatureError("Missing signature header")
    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(exc.user_message or str(exc)) from exc


def _paid_at(invoice: Mapping[str, Any]) -> datetime:
    raw = (invoice.get("status_transitions") or {}).get("paid_at")
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return utc_now()


async def apply_invoice_event(database_url: str, event: Mapping[str, Any], *, logger: JsonLogger) -> bool:
    """Update the matching invoice row; returns whether a row changed."""

    event_type = str(event.get("type") or "")
    invoice = (event.get("data") or {}).get("object") or {}
    external_id = invoice.get("id")
    if event_type not in EVENT_STATUSES or not external_id:
        log_event(
            logger=logger,
            phase="webhook",
            status="warn",
            message="Ignoring unsupported webhook event",
            event_type=event_type,
            event_id=event.get("id"),
        )
        return False

    status = str(invoice.get("status") or EVENT_STATUSES[event_type])
    values: dict[str, Any] = {"status": status}
    if event_type == "invoice.paid":
        values["status"] = "paid"
        values["paid_at"] = _paid_at(invoice)

    async with session_scope(database_url) as session:
        async with session.begin():
            result = await session.execute(
                sa.update(Invoice).where(Invoice.external_invoice_id == str(external_id)).values(**values)
            )
            updated = result.rowcount or 0

    log_event(
        logger=logger,
        phase="webhook",
        status="ok" if updated else "warn",
        message="Invoice status updated" if updated else "No local invoice for webhook event",
        event_type=event_type,
        external_invoice_id=external_id,
        invoice_status=values["status"],
    )
    return bool(updated)
