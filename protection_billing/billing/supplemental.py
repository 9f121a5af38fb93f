"""Bill late-arriving sales for a week that already has a weekly invoice."""
from __future__ import annotations

import asyncio
import contextlib
import zlib
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Dict, Tuple

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from protection_billing.common.date_utils import parse_week_identifier
from protection_billing.common.db import get_engine, session_scope
from protection_billing.common.json_logger import JsonLogger, get_logger, log_event
from protection_billing.common.models import INVOICE_TYPE_SUPPLEMENTAL, INVOICE_TYPE_WEEKLY, Invoice, Store
from protection_billing.common.money import format_currency
from protection_billing.config import get_config

from .aggregator import weekly_total
from .invoice_workflow import InvoiceRequest, InvoiceWorkflow
from .processor import PaymentProcessor, StripeProcessor

_reconcile_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
_lock_holders: Dict[Tuple[str, str], int] = {}


class OriginalInvoiceNotFound(LookupError):
    pass


@dataclass
class ReconcileResult:
    store_id: str
    week: str
    original_invoice_id: int
    true_count: int
    true_commission: int
    billed_count: int
    billed_commission: int
    delta: int
    skipped: bool
    message: str
    supplemental_invoice_id: int | None = None
    external_invoice_id: str | None = None
    invoice_status: str | None = None
    sales_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _advisory_key(store_id: str, week: str) -> int:
    # pg_advisory_lock takes a signed bigint.
    return zlib.crc32(f"reconcile:{store_id}:{week}".encode("utf-8")) - 2**31


@contextlib.asynccontextmanager
async def reconcile_lock(database_url: str, store_id: str, week: str) -> AsyncIterator[None]:
    """Serialize reconciliation per (store, week) in-process and, on PostgreSQL, across processes."""

    lock_key = (store_id, week)
    lock = _reconcile_locks.setdefault(lock_key, asyncio.Lock())
    _lock_holders[lock_key] = _lock_holders.get(lock_key, 0) + 1
    try:
        async with lock:
            engine = get_engine(database_url)
            if engine.dialect.name != "postgresql":
                yield
                return
            key = _advisory_key(store_id, week)
            async with engine.connect() as connection:
                await connection.execute(sa.text("SELECT pg_advisory_lock(:key)"), {"key": key})
                await connection.commit()
                try:
                    yield
                finally:
                    await connection.execute(sa.text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    await connection.commit()
    finally:
        # Holders counts the running task and every waiter on the lock.
        _lock_holders[lock_key] -= 1
        if not _lock_holders[lock_key]:
            del _lock_holders[lock_key]
            del _reconcile_locks[lock_key]


async def _load_original(
    session: AsyncSession, store_id: str, week: str, original_invoice_id: int | None
) -> Invoice:
    stmt = sa.select(Invoice).where(
        Invoice.store_id == store_id,
        Invoice.week == week,
        Invoice.invoice_type == INVOICE_TYPE_WEEKLY,
    )
    if original_invoice_id is not None:
        stmt = stmt.where(Invoice.id == original_invoice_id)
    original = (await session.execute(stmt)).scalar_one_or_none()
    if original is None:
        reference = f"id={original_invoice_id}" if original_invoice_id is not None else "any"
        raise OriginalInvoiceNotFound(f"No weekly invoice ({reference}) for store {store_id} week {week}")
    return original


async def _supplemental_totals(session: AsyncSession, store_id: str, week: str) -> Tuple[int, int]:
    row = (
        await session.execute(
            sa.select(
                sa.func.coalesce(sa.func.sum(Invoice.sales_count), 0),
                sa.func.coalesce(sa.func.sum(Invoice.commission_total), 0),
            ).where(
                Invoice.store_id == store_id,
                Invoice.week == week,
                Invoice.invoice_type == INVOICE_TYPE_SUPPLEMENTAL,
            )
        )
    ).one()
    return int(row[0]), int(row[1])


async def reconcile(
    store: Store,
    week: str,
    *,
    database_url: str,
    processor: PaymentProcessor,
    logger: JsonLogger,
    original_invoice_id: int | None = None,
) -> ReconcileResult:
    """Invoice the commission recorded for ``week`` since it was last billed.

    The billed amount is the weekly invoice plus every supplemental invoice
    already issued for the week, so repeated runs with no new sales skip.
    """

    parse_week_identifier(week)
    async with reconcile_lock(database_url, store.id, week):
        async with session_scope(database_url) as session:
            async with session.begin():
                original = await _load_original(session, store.id, week, original_invoice_id)
                truth = await weekly_total(session, store.id, week)
                extra_count, extra_commission = await _supplemental_totals(session, store.id, week)

        billed_count = original.sales_count + extra_count
        billed_commission = original.commission_total + extra_commission
        delta = truth.total_commission - billed_commission
        result = ReconcileResult(
            store_id=store.id,
            week=week,
            original_invoice_id=original.id,
            true_count=truth.count,
            true_commission=truth.total_commission,
            billed_count=billed_count,
            billed_commission=billed_commission,
            delta=delta,
            skipped=delta <= 0,
            message="no supplemental needed",
        )
        log_event(
            logger=logger,
            phase="reconcile",
            message="Reconciled weekly commission",
            store_id=store.id,
            week=week,
            original_invoice_id=original.id,
            true_commission=format_currency(truth.total_commission),
            billed_commission=format_currency(billed_commission),
            delta=delta,
        )
        if result.skipped:
            return result

        result.sales_count = max(truth.count - billed_count, 0)
        request = InvoiceRequest(
            store_id=store.id,
            shop_domain=store.shop_domain,
            customer_id=store.stripe_customer_id or "",
            week=week,
            week_start=original.week_start_date,
            week_end=original.week_end_date,
            sales_count=result.sales_count,
            amount=delta,
            invoice_type=INVOICE_TYPE_SUPPLEMENTAL,
            original_invoice_id=original.id,
            original_external_invoice_id=original.external_invoice_id,
            idempotency_key=(
                f"supplemental:{store.id}:{week}:{truth.count}:{truth.total_commission}:{billed_commission}"
            ),
        )
        outcome = await InvoiceWorkflow(processor, database_url=database_url, logger=logger).run(request)

    result.message = f"supplemental invoice created for {format_currency(delta)}"
    result.supplemental_invoice_id = outcome.invoice_row_id
    result.external_invoice_id = outcome.external_invoice_id
    result.invoice_status = outcome.status
    return result


async def generate_supplemental_invoice(
    *,
    store_id: str,
    week: str,
    original_invoice_id: int | None = None,
    database_url: str | None = None,
    processor: PaymentProcessor | None = None,
    logger: JsonLogger | None = None,
) -> ReconcileResult:
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

        async with session_scope(resolved_url) as session:
            store = await session.get(Store, store_id)
        if store is None:
            raise LookupError(f"Store {store_id} not found")
        if not store.stripe_customer_id:
            raise ValueError(f"Store {store_id} has no payment processor customer")

        return await reconcile(
            store,
            week,
            database_url=resolved_url,
            processor=processor,
            logger=logger,
            original_invoice_id=original_invoice_id,
        )
