"""Sequential invoice state machine against the payment processor.

NOT_STARTED -> DRAFT_CREATED -> ITEM_ATTACHED -> AMOUNT_VERIFIED -> FINALIZED -> PAID | OPEN

Any failure up to FINALIZED moves to FAILED, raises ``InvoiceWorkflowError``
carrying the last state reached, and writes nothing locally. Once the invoice
is finalized it exists at the processor, so a payment decline still persists
the row with its unpaid status.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Tuple

from sqlalchemy.exc import SQLAlchemyError

from protection_billing.common.date_utils import format_week_display, utc_now
from protection_billing.common.db import session_scope
from protection_billing.common.json_logger import JsonLogger, log_event
from protection_billing.common.models import INVOICE_TYPE_SUPPLEMENTAL, INVOICE_TYPE_WEEKLY, Invoice
from protection_billing.common.money import format_currency

from .processor import PaymentProcessor, PaymentProcessorError, ProcessorInvoice


class InvoiceState(str, Enum):
    NOT_STARTED = "not_started"
    DRAFT_CREATED = "draft_created"
    ITEM_ATTACHED = "item_attached"
    AMOUNT_VERIFIED = "amount_verified"
    FINALIZED = "finalized"
    PAID = "paid"
    OPEN = "open"
    FAILED = "failed"


class InvoiceWorkflowError(RuntimeError):
    def __init__(self, message: str, *, state: InvoiceState, external_invoice_id: str | None = None):
        self.state = state
        self.external_invoice_id = external_invoice_id
        self.transitions: List[InvoiceState] = []
        super().__init__(message)


class ZeroAmountDueError(InvoiceWorkflowError):
    """The draft would bill nothing; never finalize or send it."""


class InvoicePersistError(RuntimeError):
    def __init__(self, message: str, *, external_invoice_id: str):
        self.external_invoice_id = external_invoice_id
        super().__init__(message)


@dataclass(frozen=True)
class InvoiceRequest:
    store_id: str
    shop_domain: str
    customer_id: str
    week: str
    week_start: date
    week_end: date
    sales_count: int
    amount: int
    invoice_type: str = INVOICE_TYPE_WEEKLY
    original_invoice_id: int | None = None
    original_external_invoice_id: str | None = None
    idempotency_key: str | None = None

    @property
    def description(self) -> str:
        if self.invoice_type == INVOICE_TYPE_SUPPLEMENTAL:
            reference = self.original_external_invoice_id or self.original_invoice_id
            return (
                f"Supplemental commission for {self.week} "
                f"({self.sales_count} additional sales not in original invoice {reference})"
            )
        return f"Weekly commission for {self.week}"

    @property
    def metadata(self) -> dict[str, str]:
        payload = {
            "store_id": self.store_id,
            "shop_domain": self.shop_domain,
            "week": self.week,
            "week_label": format_week_display(self.week),
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "invoice_type": self.invoice_type,
        }
        if self.original_invoice_id is not None:
            payload["original_invoice_id"] = str(self.original_invoice_id)
        if self.original_external_invoice_id:
            payload["original_external_invoice_id"] = self.original_external_invoice_id
        return payload

    def key_for(self, step: str) -> str:
        base = self.idempotency_key or f"{self.store_id}:{self.week}:{self.invoice_type}:{self.amount}"
        return f"{base}:{step}"


@dataclass
class InvoiceOutcome:
    state: InvoiceState
    external_invoice_id: str | None = None
    status: str | None = None
    hosted_invoice_url: str | None = None
    paid_at: datetime | None = None
    invoice_row_id: int | None = None
    payment_error: str | None = None
    transitions: List[InvoiceState] = field(default_factory=list)


class InvoiceWorkflow:
    def __init__(self, processor: PaymentProcessor, *, database_url: str, logger: JsonLogger):
        self.processor = processor
        self.database_url = database_url
        self.logger = logger

    def _advance(
        self, outcome: InvoiceOutcome, state: InvoiceState, request: InvoiceRequest, *, status: str = "ok", **fields
    ) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        log_event(
            logger=self.logger,
            phase="invoice",
            status=status,
            message=f"Invoice {state.value}",
            store_id=request.store_id,
            week=request.week,
            invoice_type=request.invoice_type,
            state=state.value,
            **fields,
        )

    async def run(self, request: InvoiceRequest) -> InvoiceOutcome:
        outcome = InvoiceOutcome(state=InvoiceState.NOT_STARTED, transitions=[InvoiceState.NOT_STARTED])
        try:
            payment_method, finalized = await self._create_and_finalize(request, outcome)
        except InvoiceWorkflowError as exc:
            self._advance(
                outcome,
                InvoiceState.FAILED,
                request,
                status="error",
                failed_at=exc.state.value,
                external_invoice_id=exc.external_invoice_id,
                error=str(exc),
            )
            exc.transitions = list(outcome.transitions)
            raise

        outcome.status = finalized.status
        outcome.hosted_invoice_url = finalized.hosted_invoice_url

        settled = finalized
        if payment_method:
            try:
                settled = await self.processor.pay_invoice(finalized.id, payment_method)
            except PaymentProcessorError as exc:
                outcome.payment_error = str(exc)
                log_event(
                    logger=self.logger,
                    phase="invoice",
                    status="warn",
                    message="Invoice payment failed; leaving invoice open",
                    store_id=request.store_id,
                    week=request.week,
                    external_invoice_id=finalized.id,
                    error=str(exc),
                    decline_code=exc.decline_code,
                    card_error=exc.is_card_error,
                )
        else:
            log_event(
                logger=self.logger,
                phase="invoice",
                status="warn",
                message="No payment method on file; leaving invoice open",
                store_id=request.store_id,
                week=request.week,
                external_invoice_id=finalized.id,
            )

        outcome.status = settled.status or finalized.status
        outcome.hosted_invoice_url = settled.hosted_invoice_url or finalized.hosted_invoice_url
        if settled.paid:
            outcome.paid_at = settled.paid_at or utc_now()
            self._advance(outcome, InvoiceState.PAID, request, external_invoice_id=finalized.id)
        else:
            self._advance(outcome, InvoiceState.OPEN, request, external_invoice_id=finalized.id)

        outcome.invoice_row_id = await self._persist(request, outcome)
        return outcome

    async def _create_and_finalize(
        self, request: InvoiceRequest, outcome: InvoiceOutcome
    ) -> Tuple[str | None, ProcessorInvoice]:
        if request.amount <= 0:
            raise ZeroAmountDueError(
                f"Refusing to invoice a non-positive amount ({request.amount}) for {request.store_id} {request.week}",
                state=InvoiceState.NOT_STARTED,
            )

        try:
            payment_method = await self.processor.find_default_payment_method(request.customer_id)
            draft = await self.processor.create_draft_invoice(
                customer_id=request.customer_id,
                description=request.description,
                metadata=request.metadata,
                default_payment_method=payment_method,
                idempotency_key=request.key_for("draft"),
            )
        except PaymentProcessorError as exc:
            raise InvoiceWorkflowError(f"Draft invoice creation failed: {exc}", state=outcome.state) from exc
        outcome.external_invoice_id = draft.id
        self._advance(outcome, InvoiceState.DRAFT_CREATED, request, external_invoice_id=draft.id)

        return payment_method, await self._attach_verify_finalize(request, outcome, draft)

    async def _attach_verify_finalize(
        self, request: InvoiceRequest, outcome: InvoiceOutcome, draft: ProcessorInvoice
    ) -> ProcessorInvoice:
        try:
            await self.processor.attach_invoice_item(
                customer_id=request.customer_id,
                invoice_id=draft.id,
                amount=request.amount,
                description=request.description,
                idempotency_key=request.key_for("item"),
            )
            self._advance(outcome, InvoiceState.ITEM_ATTACHED, request, amount=request.amount)

            refreshed = await self.processor.retrieve_invoice(draft.id)
            if refreshed.amount_due == 0:
                log_event(
                    logger=self.logger,
                    phase="invoice",
                    status="error",
                    message="Draft invoice has zero amount due; aborting before finalize",
                    store_id=request.store_id,
                    week=request.week,
                    external_invoice_id=draft.id,
                    expected_amount=format_currency(request.amount),
                )
                raise ZeroAmountDueError(
                    f"Invoice {draft.id} has $0.00 amount due; item not attached",
                    state=outcome.state,
                    external_invoice_id=draft.id,
                )
            if refreshed.amount_due != request.amount:
                log_event(
                    logger=self.logger,
                    phase="invoice",
                    status="warn",
                    message="Draft amount due differs from requested amount",
                    external_invoice_id=draft.id,
                    amount_due=refreshed.amount_due,
                    expected_amount=request.amount,
                )
            self._advance(outcome, InvoiceState.AMOUNT_VERIFIED, request, amount_due=refreshed.amount_due)

            finalized = await self.processor.finalize_invoice(draft.id)
        except PaymentProcessorError as exc:
            raise InvoiceWorkflowError(
                f"Invoice workflow failed after {outcome.state.value}: {exc}",
                state=outcome.state,
                external_invoice_id=draft.id,
            ) from exc
        self._advance(
            outcome,
            InvoiceState.FINALIZED,
            request,
            external_invoice_id=finalized.id,
            hosted_invoice_url=finalized.hosted_invoice_url,
        )
        return finalized

    async def _persist(self, request: InvoiceRequest, outcome: InvoiceOutcome) -> int:
        external_id = outcome.external_invoice_id or ""
        row = Invoice(
            store_id=request.store_id,
            week=request.week,
            week_start_date=request.week_start,
            week_end_date=request.week_end,
            sales_count=request.sales_count,
            commission_total=request.amount,
            subscription_fee=0,
            total_amount=request.amount,
            invoice_type=request.invoice_type,
            original_invoice_id=request.original_invoice_id,
            external_invoice_id=external_id,
            hosted_invoice_url=outcome.hosted_invoice_url,
            status=outcome.status or outcome.state.value,
            paid_at=outcome.paid_at,
        )
        try:
            async with session_scope(self.database_url) as session:
                async with session.begin():
                    session.add(row)
                    await session.flush()
                    row_id = row.id
        except SQLAlchemyError as exc:
            log_event(
                logger=self.logger,
                phase="db",
                status="error",
                message="Invoice exists at the processor but its row could not be saved",
                store_id=request.store_id,
                week=request.week,
                external_invoice_id=external_id,
                error=str(exc),
            )
            raise InvoicePersistError(
                f"Failed to persist invoice {external_id}: {exc}", external_invoice_id=external_id
            ) from exc
        return row_id
