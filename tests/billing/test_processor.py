from types import SimpleNamespace

import pytest
import stripe

from protection_billing.billing.processor import PaymentProcessorError, StripeProcessor


class _Recorder:
    def __init__(self, responses=None, error=None):
        self.calls: list[tuple] = []
        self.responses = responses or {}
        self.error = error

    def __getattr__(self, name):
        async def _method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if self.error is not None:
                raise self.error
            return self.responses[name]

        return _method


def _sdk(**services) -> SimpleNamespace:
    return SimpleNamespace(v1=SimpleNamespace(**services))


def _invoice(**fields) -> SimpleNamespace:
    values = {"id": "in_1", "status": "draft", "amount_due": 0, "hosted_invoice_url": None}
    values.update(fields)
    return SimpleNamespace(**values)


def test_processor_requires_an_api_key():
    with pytest.raises(ValueError):
        StripeProcessor()


@pytest.mark.asyncio
async def test_create_draft_invoice_sends_idempotent_request():
    invoices = _Recorder({"create_async": _invoice()})
    processor = StripeProcessor(client=_sdk(invoices=invoices))

    invoice = await processor.create_draft_invoice(
        customer_id="cus_A",
        description="Weekly commission for 2025-W15",
        metadata={"store_id": "store-a", "week": "2025-W15"},
        default_payment_method=None,
        idempotency_key="weekly:store-a:2025-W15:373:draft",
    )

    assert invoice.id == "in_1"
    name, _, kwargs = invoices.calls[0]
    assert name == "create_async"
    assert kwargs["options"] == {"idempotency_key": "weekly:store-a:2025-W15:373:draft"}
    params = kwargs["params"]
    assert params["auto_advance"] is False
    assert params["pending_invoice_items_behavior"] == "exclude"
    assert params["collection_method"] == "charge_automatically"
    assert params["metadata"] == {"store_id": "store-a", "week": "2025-W15"}
    assert "default_payment_method" not in params


@pytest.mark.asyncio
async def test_attach_invoice_item_targets_the_draft():
    invoice_items = _Recorder({"create_async": SimpleNamespace(id="ii_1")})
    processor = StripeProcessor(client=_sdk(invoice_items=invoice_items))

    item_id = await processor.attach_invoice_item(
        customer_id="cus_A",
        invoice_id="in_1",
        amount=373,
        description="Weekly commission for 2025-W15",
        idempotency_key="k:item",
    )

    assert item_id == "ii_1"
    params = invoice_items.calls[0][2]["params"]
    assert (params["invoice"], params["amount"], params["currency"]) == ("in_1", 373, "usd")


@pytest.mark.asyncio
async def test_find_default_payment_method_reads_active_subscription():
    subscriptions = _Recorder(
        {"list_async": SimpleNamespace(data=[SimpleNamespace(id="sub_1", default_payment_method="pm_1")])}
    )
    processor = StripeProcessor(client=_sdk(subscriptions=subscriptions))

    assert await processor.find_default_payment_method("cus_A") == "pm_1"
    assert subscriptions.calls[0][2]["params"] == {"customer": "cus_A", "status": "active", "limit": 1}

    subscriptions.responses["list_async"] = SimpleNamespace(data=[])
    assert await processor.find_default_payment_method("cus_B") is None


@pytest.mark.asyncio
async def test_find_default_payment_method_accepts_expanded_object():
    subscriptions = _Recorder(
        {"list_async": SimpleNamespace(data=[SimpleNamespace(default_payment_method=SimpleNamespace(id="pm_2"))])}
    )
    processor = StripeProcessor(client=_sdk(subscriptions=subscriptions))

    assert await processor.find_default_payment_method("cus_A") == "pm_2"


@pytest.mark.asyncio
async def test_pay_invoice_maps_card_decline():
    declined = stripe.CardError(
        "Your card was declined.",
        None,
        "card_declined",
        http_status=402,
        json_body={"error": {"message": "Your card was declined.", "code": "card_declined", "decline_code": "generic_decline"}},
    )
    processor = StripeProcessor(client=_sdk(invoices=_Recorder(error=declined)))

    with pytest.raises(PaymentProcessorError) as excinfo:
        await processor.pay_invoice("in_1", "pm_1")

    assert excinfo.value.status_code == 402
    assert excinfo.value.code == "card_declined"
    assert excinfo.value.decline_code == "generic_decline"
    assert excinfo.value.is_card_error
    assert isinstance(excinfo.value.__cause__, stripe.CardError)


@pytest.mark.asyncio
async def test_connection_errors_are_not_card_errors():
    processor = StripeProcessor(client=_sdk(invoices=_Recorder(error=stripe.APIConnectionError("network down"))))

    with pytest.raises(PaymentProcessorError) as excinfo:
        await processor.finalize_invoice("in_1")

    assert "network down" in str(excinfo.value)
    assert excinfo.value.status_code is None
    assert not excinfo.value.is_card_error


@pytest.mark.asyncio
async def test_retrieve_invoice_parses_paid_timestamp():
    paid = _invoice(
        status="paid",
        amount_due=373,
        status_transitions=SimpleNamespace(paid_at=1744621200),
        hosted_invoice_url="https://invoice.stripe.com/i/in_1",
    )
    processor = StripeProcessor(client=_sdk(invoices=_Recorder({"retrieve_async": paid})))

    invoice = await processor.retrieve_invoice("in_1")

    assert invoice.paid is True
    assert invoice.amount_due == 373
    assert invoice.paid_at is not None and invoice.paid_at.year == 2025
