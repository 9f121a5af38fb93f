from __future__ import annotations

import contextlib
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from protection_billing.common.date_utils import current_week, previous_week, utc_now, week_bounds
from protection_billing.common.db import session_scope
from protection_billing.common.json_logger import JsonLogger, get_logger, log_event
from protection_billing.common.models import INVOICE_TYPE_WEEKLY, Invoice, Store
from protection_billing.common.money import format_currency
from protection_billing.config import get_config

from .aggregator import weekly_total
from .invoice_workflow import InvoicePersistError, InvoiceRequest, InvoiceWorkflow, InvoiceWorkflowError
from .processor import PaymentProcessor, StripeProcessor


@dataclass
class StoreInvoiceEntry:
    store_id: str
    shop_domain: str
    status: str
    sales_count: int = 0
    commission: int = 0
    external_invoice_id: str | None = None
    invoice_status: str | None = None
    reason: str | None = None


@dataclass
class WeeklyBillingResult:
    week: str
    test_mode: bool
    invoices_created: int = 0
    invoices_failed: int = 0
    invoices_skipped: int = 0
    total_commission: int = 0
    stores: List[StoreInvoiceEntry] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.invoices_failed == 0

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


def billing_week(*, test_mode: bool, now: datetime | None = None) -> str:
    """Current week in test mode, otherwise the last completed week."""

    reference = now or utc_now()
    return current_week(reference) if test_mode else previous_week(reference)


async def load_billable_stores(database_url: str, store_id: str | None = None) -> List[Store]:
    async with session_scope(database_url) as session:
        stmt = (
            sa.select(Store)
            .where(Store.stripe_customer_id.is_not(None))
            .where(Store.stripe_customer_id != "")
            .order_by(Store.created_at, Store.id)
        )
        if store_id:
            stmt = stmt.where(Store.id == store_id)
        return list((await session.execute(stmt)).scalars().all())


async def _invoice_store(
    store: Store, week: str, *, database_url: str, workflow: InvoiceWorkflow, logger: JsonLogger
) -> StoreInvoiceEntry:
    entry = StoreInvoiceEntry(store_id=store.id, shop_domain=store.shop_domain, status="skipped")
    async with session_scope(database_url) as session:
        async with session.begin():
            existing = await session.execute(
                sa.select(Invoice.id).where(
                    Invoice.store_id == store.id,
                    Invoice.week == week,
                    Invoice.invoice_type == INVOICE_TYPE_WEEKLY,
                )
            )
            already_invoiced = existing.first() is not None
            totals = await weekly_total(session, store.id, week)

    entry.sales_count = totals.count
    entry.commission = totals.total_commission
    log_event(
        logger=logger,
        phase="aggregate",
        message="Weekly commission computed",
        store_id=store.id,
        week=week,
        sales_count=totals.count,
        commission=format_currency(totals.total_commission),
    )
    if already_invoiced:
        entry.reason = "weekly invoice already exists"
        return entry
    if totals.total_commission <= 0:
        entry.reason = "no commission for week"
        return entry

    week_start, week_end = week_bounds(week)
    request = InvoiceRequest(
        store_id=store.id,
        shop_domain=store.shop_domain,
        customer_id=store.stripe_customer_id or "",
        week=week,
        week_start=week_start,
        week_end=week_end,
        sales_count=totals.count,
        amount=totals.total_commission,
        invoice_type=INVOICE_TYPE_WEEKLY,
        idempotency_key=f"weekly:{store.id}:{week}:{totals.total_commission}",
    )
    outcome = await workflow.run(request)
    entry.status = "created"
    entry.external_invoice_id = outcome.external_invoice_id
    entry.invoice_status = outcome.status
    entry.reason = outcome.payment_error
    return entry


async def generate_weekly_invoices(
    *,
    test_mode: bool = False,
    store_id: str | None = None,
    now: datetime | None = None,
    database_url: str | None = None,
    processor: PaymentProcessor | None = None,
    logger: JsonLogger | None = None,
) -> WeeklyBillingResult:
    """Invoice every billable store for its commission in the billing week."""

    week = billing_week(test_mode=test_mode, now=now)
    result = WeeklyBillingResult(week=week, test_mode=test_mode)

    async with contextlib.AsyncExitStack() as stack:
        config = get_config() if (database_url is None or processor is None or logger is None) else None
        resolved_url = database_url or config.database_url
        if logger is None:
            logger = get_logger(log_file_path=config.json_log_file)
            stack.callback(logger.close)
        if processor is None:
            stripe_processor = StripeProcessor(config.stripe_secret_key, timeout=config.http_timeout_seconds)
            stack.push_async_callback(stripe_processor.aclose)
            processor = stripe_processor

        workflow = InvoiceWorkflow(processor, database_url=resolved_url, logger=logger)
        stores = await load_billable_stores(resolved_url, store_id)
        log_event(
            logger=logger,
            phase="invoice",
            message="Starting weekly invoice generation",
            week=week,
            test_mode=test_mode,
            stores=len(stores),
        )

        for store in stores:
            try:
                entry = await _invoice_store(
                    store, week, database_url=resolved_url, workflow=workflow, logger=logger
                )
            except (InvoiceWorkflowError, InvoicePersistError, SQLAlchemyError) as exc:
                log_event(
                    logger=logger,
                    phase="invoice",
                    status="error",
                    message="Weekly invoice failed",
                    store_id=store.id,
                    week=week,
                    error=str(exc),
                    state=getattr(getattr(exc, "state", None), "value", None),
                )
                entry = StoreInvoiceEntry(
                    store_id=store.id, shop_domain=store.shop_domain, status="failed", reason=str(exc)
                )

            result.stores.append(entry)
            if entry.status == "created":
                result.invoices_created += 1
                result.total_commission += entry.commission
            elif entry.status == "failed":
                result.invoices_failed += 1
            else:
                result.invoices_skipped += 1

        log_event(
            logger=logger,
            phase="invoice",
            status="ok" if result.success else "warn",
            message="Weekly invoice generation complete",
            week=week,
            invoices_created=result.invoices_created,
            invoices_failed=result.invoices_failed,
            invoices_skipped=result.invoices_skipped,
            total_commission=format_currency(result.total_commission),
        )
    return result
