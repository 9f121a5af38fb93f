from datetime import datetime, timezone
from decimal import Decimal

import pytest
import sqlalchemy as sa

from protection_billing.common.db import session_scope
from protection_billing.common.fx import FxRateError
from protection_billing.common.models import Sale, Store
from protection_billing.shopify.client import ShopifyLineItem, ShopifyOrder
from protection_billing.sync.recorder import record_sale


def _store() -> Store:
    return Store(id="store-a", shop_domain="a.myshopify.com", api_token="tok", subscription_status="active")


def _order(order_id: str = "5001", *, currency: str = "USD", created_at: datetime | None = None) -> ShopifyOrder:
    return ShopifyOrder(
        id=order_id,
        name=f"#{order_id}",
        created_at=created_at or datetime(2025, 4, 13, 23, 30, tzinfo=timezone.utc),
        currency=currency,
        line_items=[],
    )


def _item(price: str = "4.90") -> ShopifyLineItem:
    return ShopifyLineItem(
        id="li-1", product_id="777", sku="SHIPPING-PROTECTION-STD", title="Shipping Protection", name=None, price=price
    )


async def _sales(database_url: str) -> list[Sale]:
    async with session_scope(database_url) as session:
        return list((await session.execute(sa.select(Sale).order_by(Sale.id))).scalars().all())


@pytest.mark.asyncio
async def test_record_sale_inserts_once_and_reports_existing(database_url, seed, logger, fake_fx):
    store = _store()
    await seed(store)

    async with session_scope(database_url) as session:
        first = await record_sale(
            session, store=store, order=_order(), item=_item(), fee_percent=Decimal("25"), fx=fake_fx, logger=logger
        )
        second = await record_sale(
            session, store=store, order=_order(), item=_item(), fee_percent=Decimal("25"), fx=fake_fx, logger=logger
        )

    assert (first.inserted, first.protection_price, first.commission) == (True, 490, 123)
    assert (second.inserted, second.protection_price, second.commission) == (False, 490, 123)
    rows = await _sales(database_url)
    assert len(rows) == 1
    assert rows[0].week == "2025-W15"
    assert rows[0].month == "2025-04"
    assert rows[0].order_number == "#5001"


@pytest.mark.asyncio
async def test_record_sale_converts_foreign_currency_and_keeps_audit_columns(database_url, seed, logger, fake_fx):
    store = _store()
    await seed(store)

    async with session_scope(database_url) as session:
        result = await record_sale(
            session,
            store=store,
            order=_order(currency="JPY"),
            item=_item(price="1000"),
            fee_percent=Decimal("25"),
            fx=fake_fx,
            logger=logger,
        )

    assert result.protection_price == 670
    assert result.commission == 168
    row = (await _sales(database_url))[0]
    assert row.currency == "JPY"
    assert row.fx_rate == Decimal("0.0067")


@pytest.mark.asyncio
async def test_record_sale_writes_nothing_when_fx_fails(database_url, seed, logger, fake_fx):
    store = _store()
    await seed(store)

    async with session_scope(database_url) as session:
        with pytest.raises(FxRateError):
            await record_sale(
                session,
                store=store,
                order=_order(currency="CHF"),
                item=_item(price="5.00"),
                fee_percent=Decimal("25"),
                fx=fake_fx,
                logger=logger,
            )

    assert await _sales(database_url) == []


@pytest.mark.asyncio
async def test_record_sale_treats_unique_violation_as_existing(database_url, seed, logger, fake_fx, monkeypatch):
    store = _store()
    await seed(
        store,
        Sale(
            store_id="store-a",
            order_id="5001",
            protection_price=500,
            commission=125,
            month="2025-04",
            week="2025-W15",
            created_at=datetime(2025, 4, 9, tzinfo=timezone.utc),
        ),
    )

    from protection_billing.sync import recorder

    lookups = 0
    original_lookup = recorder._existing_sale

    async def racing_lookup(session, store_id, order_id):
        nonlocal lookups
        lookups += 1
        if lookups == 1:
            # The concurrent writer has not committed yet when we check.
            return None
        return await original_lookup(session, store_id, order_id)

    monkeypatch.setattr(recorder, "_existing_sale", racing_lookup)

    async with session_scope(database_url) as session:
        result = await record_sale(
            session, store=store, order=_order(), item=_item(), fee_percent=Decimal("25"), fx=fake_fx, logger=logger
        )

    assert (result.inserted, result.protection_price, result.commission) == (False, 500, 125)
    assert len(await _sales(database_url)) == 1
