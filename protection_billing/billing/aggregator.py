from __future__ import annotations

from dataclasses import dataclass

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from protection_billing.common.models import Sale

DEFAULT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class WeeklyTotal:
    count: int
    total_commission: int


async def weekly_total(
    session: AsyncSession, store_id: str, week: str, *, batch_size: int = DEFAULT_BATCH_SIZE
) -> WeeklyTotal:
    """Sum a store's sale commissions for ``week`` reading ``batch_size`` rows at a time."""

    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1; got {batch_size}")

    count = 0
    total = 0
    offset = 0
    while True:
        stmt = (
            sa.select(Sale.commission)
            .where(Sale.store_id == store_id, Sale.week == week)
            .order_by(Sale.id)
            .limit(batch_size)
            .offset(offset)
        )
        page = (await session.execute(stmt)).scalars().all()
        count += len(page)
        total += sum(page)
        if len(page) < batch_size:
            break
        offset += batch_size
    return WeeklyTotal(count=count, total_commission=total)
