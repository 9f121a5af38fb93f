from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from protection_billing.common.date_utils import month_identifier, utc_now, week_identifier
from protection_billing.common.fx import FxRateSource
from protection_billing.common.json_logger import JsonLogger, log_event
from protection_billing.common.models import Sale, Store
from protection_billing.common.money import commission as compute_commission
from protection_billing.common.money import to_usd_minor_units
from protection_billing.shopify.client import ShopifyLineItem, ShopifyOrder


class SaleInsertError(RuntimeError):
    """Raised when a new sale row could not be written; the next sync retries it."""


@dataclass(frozen=True)
class RecordResult:
    inserted: bool
    protection_price: int
    commission: int


async def _existing_sale(session: AsyncSession, store_id: str, order_id: str) -> Sale | None:
    result = await session.execute(
        sa.select(Sale).where(Sale.store_id == store_id, Sale.order_id == order_id)
    )
    return result.scalar_one_or_none()


async def record_sale(
    session: AsyncSession,
    *,
    store: Store,
    order: ShopifyOrder,
    item: ShopifyLineItem,
    fee_percent: Decimal,
    fx: FxRateSource,
    logger: JsonLogger,
) -> RecordResult:
    """Record ``order`` as a sale once per ``(store, order)``.

    An already-recorded order returns its stored amounts with ``inserted=False``.
    ``FxRateError`` propagates before anything is written.
    """

    existing: Sale | None = None
    try:
        async with session.begin():
            existing = await _existing_sale(session, store.id, order.id)
            if existing is None:
                price_cents, rate = await to_usd_minor_units(item.price, order.currency, fx)
                commission_cents = compute_commission(price_cents, fee_percent)
                sale = Sale(
                    store_id=store.id,
                    order_id=order.id,
                    order_number=order.name,
                    protection_price=price_cents,
                    commission=commission_cents,
                    currency=order.currency,
                    fx_rate=rate,
                    month=month_identifier(order.created_at),
                    week=week_identifier(order.created_at),
                    created_at=order.created_at,
                    synced_at=utc_now(),
                )
                session.add(sale)
    except IntegrityError:
        # A concurrent writer recorded this order first.
        async with session.begin():
            winner = await _existing_sale(session, store.id, order.id)
        if winner is None:
            raise SaleInsertError(f"Sale insert for order {order.id} violated a constraint")
        log_event(
            logger=logger,
            phase="record",
            status="warn",
            message="Sale recorded concurrently by another writer",
            store_id=store.id,
            order_id=order.id,
        )
        return RecordResult(
            inserted=False, protection_price=winner.protection_price, commission=winner.commission
        )
    except SQLAlchemyError as exc:
        raise SaleInsertError(f"Sale insert for order {order.id} failed: {exc}") from exc

    if existing is not None:
        log_event(
            logger=logger,
            phase="record",
            message="Sale already recorded",
            store_id=store.id,
            order_id=order.id,
        )
        return RecordResult(
            inserted=False, protection_price=existing.protection_price, commission=existing.commission
        )

    log_event(
        logger=logger,
        phase="record",
        message="Sale recorded",
        store_id=store.id,
        order_id=order.id,
        week=sale.week,
        protection_price=price_cents,
        commission=commission_cents,
        currency=order.currency,
        fx_rate=str(rate),
    )
    return RecordResult(inserted=True, protection_price=price_cents, commission=commission_cents)
