"""Payment processor seam and its Stripe SDK implementation."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Mapping, Protocol, TypeVar

import stripe

T = TypeVar("T")


class PaymentProcessorError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        decline_code: str | None = None,
    ):
        self.status_code = status_code
        self.code = code
        self.decline_code = decline_code
        super().__init__(message)

    @property
    def is_card_error(self) -> bool:
        return self.status_code == 402 or bool(self.decline_code)


@dataclass(frozen=True)
class ProcessorInvoice:
    id: str
    status: str
    amount_due: int
    hosted_invoice_url: str | None = None
    paid: bool = False
    paid_at: datetime | None = None

    @classmethod
    def from_stripe(cls, invoice: Any) -> "ProcessorInvoice":
        transitions = getattr(invoice, "status_transitions", None)
        raw_paid_at = getattr(transitions, "paid_at", None)
        paid_at = (
            datetime.fromtimestamp(raw_paid_at, tz=timezone.utc) if isinstance(raw_paid_at, (int, float)) else None
        )
        status = str(getattr(invoice, "status", None) or "")
        return cls(
            id=str(invoice.id),
            status=status,
            amount_due=int(getattr(invoice, "amount_due", None) or 0),
            hosted_invoice_url=getattr(invoice, "hosted_invoice_url", None),
            paid=bool(getattr(invoice, "paid", False)) or status == "paid",
            paid_at=paid_at,
        )


class PaymentProcessor(Protocol):  # pragma: no cover - protocol
    async def find_default_payment_method(self, customer_id: str) -> str | None: ...

    async def create_draft_invoice(
        self,
        *,
        customer_id: str,
        description: str,
        metadata: Mapping[str, str],
        default_payment_method: str | None,
        idempotency_key: str,
    ) -> ProcessorInvoice: ...

    async def attach_invoice_item(
        self,
        *,
        customer_id: str,
        invoice_id: str,
        amount: int,
        description: str,
        idempotency_key: str,
        currency: str = "usd",
    ) -> str: ...

    async def retrieve_invoice(self, invoice_id: str) -> ProcessorInvoice: ...

    async def finalize_invoice(self, invoice_id: str) -> ProcessorInvoice: ...

    async def pay_invoice(self, invoice_id: str, payment_method: str) -> ProcessorInvoice: ...


def processor_error(exc: stripe.StripeError) -> PaymentProcessorError:
    body = exc.json_body if isinstance(exc.json_body, dict) else {}
    details = body.get("error") or {}
    return PaymentProcessorError(
        exc.user_message or str(exc) or type(exc).__name__,
        status_code=exc.http_status,
        code=exc.code,
        decline_code=details.get("decline_code"),
    )


class StripeProcessor:
    """``PaymentProcessor`` backed by the ``stripe`` SDK's async methods."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: stripe.StripeClient | None = None,
        timeout: float = 30.0,
        max_network_retries: int = 2,
    ):
        self._http_client: stripe.HTTPXClient | None = None
        if client is None:
            if not api_key:
                raise ValueError("A Stripe API key is required")
            self._http_client = stripe.HTTPXClient(timeout=timeout)
            client = stripe.StripeClient(
                api_key, http_client=self._http_client, max_network_retries=max_network_retries
            )
        self.client = client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()
            self._http_client = None

    @staticmethod
    async def _call(call: Awaitable[T]) -> T:
        try:
            return await call
        except stripe.StripeError as exc:
            raise processor_error(exc) from exc

    async def find_default_payment_method(self, customer_id: str) -> str | None:
        subscriptions = await self._call(
            self.client.v1.subscriptions.list_async(
                params={"customer": customer_id, "status": "active", "limit": 1}
            )
        )
        if not subscriptions.data:
            return None
        method = getattr(subscriptions.data[0], "default_payment_method", None)
        if method is not None and not isinstance(method, str):
            method = method.id
        return method or None

    async def create_draft_invoice(
        self,
        *,
        customer_id: str,
        description: str,
        metadata: Mapping[str, str],
        default_payment_method: str | None,
        idempotency_key: str,
    ) -> ProcessorInvoice:
        params: dict[str, Any] = {
            "customer": customer_id,
            "auto_advance": False,
            "collection_method": "charge_automatically",
            "pending_invoice_items_behavior": "exclude",
            "description": description,
            "metadata": dict(metadata),
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        invoice = await self._call(
            self.client.v1.invoices.create_async(params=params, options={"idempotency_key": idempotency_key})
        )
        return ProcessorInvoice.from_stripe(invoice)

    async def attach_invoice_item(
        self,
        *,
        customer_id: str,
        invoice_id: str,
        amount: int,
        description: str,
        idempotency_key: str,
        currency: str = "usd",
    ) -> str:
        item = await self._call(
            self.client.v1.invoice_items.create_async(
                params={
                    "customer": customer_id,
                    "invoice": invoice_id,
                    "amount": amount,
                    "currency": currency,
                    "description": description,
                },
                options={"idempotency_key": idempotency_key},
            )
        )
        return str(item.id)

    async def retrieve_invoice(self, invoice_id: str) -> ProcessorInvoice:
        return ProcessorInvoice.from_stripe(await self._call(self.client.v1.invoices.retrieve_async(invoice_id)))

    async def finalize_invoice(self, invoice_id: str) -> ProcessorInvoice:
        invoice = await self._call(
            self.client.v1.invoices.finalize_invoice_async(invoice_id, params={"auto_advance": False})
        )
        return ProcessorInvoice.from_stripe(invoice)

    async def pay_invoice(self, invoice_id: str, payment_method: str) -> ProcessorInvoice:
        invoice = await self._call(
            self.client.v1.invoices.pay_async(invoice_id, params={"payment_method": payment_method})
        )
        return ProcessorInvoice.from_stripe(invoice)
