from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

import httpx
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from protection_billing.common.db import session_scope
from protection_billing.common.fx import FxRateError, FxRateSource
from protection_billing.common.json_logger import JsonLogger, log_event
from protection_billing.common.models import Store, StoreSettings
from protection_billing.common.money import format_currency, resolve_commission_percent
from protection_billing.config import Config
from protection_billing.shopify.client import ShopifyAPIError, ShopifyClient, SyncWindow
from protection_billing.shopify.matcher import classify_line_item, find_protection_item

from .recorder import SaleInsertError, record_sale


@dataclass
class StoreSyncResult:
    store_id: str
    shop_domain: str
    orders_checked: int = 0
    protection_sales_found: int = 0
    new_sales_inserted: int = 0
    already_existing: int = 0
    failed_orders: int = 0
    total_revenue: int = 0
    total_commission: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


async def resolve_protection_handle(session: AsyncSession, store_id: str, default_handle: str) -> str:
    """Configured add-on handle, then legacy protection product id, then the default."""

    async with session.begin():
        result = await session.execute(sa.select(StoreSettings).where(StoreSettings.store_id == store_id))
        settings = result.scalar_one_or_none()
    if settings is not None:
        for candidate in (settings.addon_product_id, settings.protection_product_id):
            if candidate and candidate.strip():
                return candidate.strip()
    return default_handle


async def sync_store(
    store: Store,
    window: SyncWindow,
    *,
    database_url: str,
    http_client: httpx.AsyncClient,
    fx: FxRateSource,
    logger: JsonLogger,
    config: Config,
) -> StoreSyncResult:
    """Fetch, match and record protection sales for one store.

    Totals cover every protection sale found in the window, new or previously
    recorded, so a repeated sync over an overlapping window reports the same
    revenue and commission.
    """

    store_logger = logger.bind(store_id=store.id, shop_domain=store.shop_domain)
    result = StoreSyncResult(store_id=store.id, shop_domain=store.shop_domain)
    fee_percent = resolve_commission_percent(store.platform_fee)
    client = ShopifyClient(
        http_client,
        shop_domain=store.shop_domain,
        api_token=store.api_token or "",
        api_version=config.shopify_api_version,
        logger=store_logger,
    )

    log_event(
        logger=store_logger,
        phase="store",
        message="Starting store sync",
        window_start=window.start,
        window_end=window.end,
        fee_percent=str(fee_percent),
    )

    async with session_scope(database_url) as session:
        handle = await resolve_protection_handle(session, store.id, config.default_protection_handle)
        resolved_product_id = await client.resolve_product_id(handle)

        fetched = await client.fetch_orders(window)
        result.error = fetched.error
        result.orders_checked = len(fetched.orders)

        for order in fetched.orders:
            item = find_protection_item(order, handle, resolved_product_id)
            if item is None:
                continue

            result.protection_sales_found += 1
            log_event(
                logger=store_logger,
                phase="match",
                message="Protection item found",
                order_id=order.id,
                line_item_id=item.id,
                strategy=classify_line_item(item, handle, resolved_product_id).value,
            )
            try:
                recorded = await record_sale(
                    session,
                    store=store,
                    order=order,
                    item=item,
                    fee_percent=fee_percent,
                    fx=fx,
                    logger=store_logger,
                )
            except (FxRateError, SaleInsertError, ValueError) as exc:
                result.failed_orders += 1
                log_event(
                    logger=store_logger,
                    phase="record",
                    status="error",
                    message="Skipping order; it will be retried on the next sync",
                    order_id=order.id,
                    error=str(exc),
                )
                continue

            if recorded.inserted:
                result.new_sales_inserted += 1
            else:
                result.already_existing += 1
            result.total_revenue += recorded.protection_price
            result.total_commission += recorded.commission

    log_event(
        logger=store_logger,
        phase="store",
        status="ok" if result.success else "warn",
        message="Store sync complete" if result.success else "Store sync finished with a partial fetch",
        orders_checked=result.orders_checked,
        protection_sales_found=result.protection_sales_found,
        new_sales_inserted=result.new_sales_inserted,
        already_existing=result.already_existing,
        failed_orders=result.failed_orders,
        total_revenue=format_currency(result.total_revenue),
        total_commission=format_currency(result.total_commission),
        error=result.error,
    )
    return result


async def validate_store_credentials(
    store: Store, *, http_client: httpx.AsyncClient, logger: JsonLogger, config: Config
) -> Dict[str, Any]:
    """Call the shop endpoint with the store's token; never raises for API failures."""

    client = ShopifyClient(
        http_client,
        shop_domain=store.shop_domain,
        api_token=store.api_token or "",
        api_version=config.shopify_api_version,
        logger=logger,
    )
    payload: Dict[str, Any] = {"store_id": store.id, "shop_domain": store.shop_domain}
    try:
        shop = await client.fetch_shop()
    except ShopifyAPIError as exc:
        log_event(
            logger=logger,
            phase="store",
            status="warn",
            message="Shopify credential rejected",
            store_id=store.id,
            shop_domain=store.shop_domain,
            status_code=exc.status_code,
            error=str(exc),
        )
        return {**payload, "valid": False, "status_code": exc.status_code, "error": str(exc)}

    log_event(logger=logger, phase="store", message="Shopify credential valid", store_id=store.id, shop=shop)
    return {**payload, "valid": True, "shop": shop}
