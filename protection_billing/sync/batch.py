from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Sequence

import httpx
import sqlalchemy as sa

from protection_billing.common.db import session_scope
from protection_billing.common.fx import ExchangeRateClient, FxRateSource
from protection_billing.common.json_logger import JsonLogger, get_logger, log_event
from protection_billing.common.models import Store
from protection_billing.common.money import format_currency
from protection_billing.config import SYNC_MODES, Config, get_config
from protection_billing.shopify.client import SyncWindow

from .store_sync import StoreSyncResult, sync_store, validate_store_credentials

ACTIVE_SUBSCRIPTION_STATUS = "active"


@dataclass
class BatchResult:
    store_results: List[StoreSyncResult] = field(default_factory=list)

    @property
    def total_stores(self) -> int:
        return len(self.store_results)

    @property
    def successful_syncs(self) -> int:
        return sum(1 for result in self.store_results if result.success)

    @property
    def failed_syncs(self) -> int:
        return self.total_stores - self.successful_syncs

    @property
    def total_orders(self) -> int:
        return sum(result.orders_checked for result in self.store_results)

    @property
    def total_protection_sales(self) -> int:
        return sum(result.protection_sales_found for result in self.store_results)

    @property
    def total_new_sales(self) -> int:
        return sum(result.new_sales_inserted for result in self.store_results)

    @property
    def total_existing(self) -> int:
        return sum(result.already_existing for result in self.store_results)

    @property
    def total_failed_orders(self) -> int:
        return sum(result.failed_orders for result in self.store_results)

    @property
    def total_revenue(self) -> int:
        return sum(result.total_revenue for result in self.store_results)

    @property
    def total_commission(self) -> int:
        return sum(result.total_commission for result in self.store_results)

    def summary_text(self) -> str:
        return (
            f"Synced {self.successful_syncs}/{self.total_stores} stores: "
            f"{self.total_protection_sales} protection sales found "
            f"({self.total_new_sales} new, {self.total_existing} existing, "
            f"{self.total_failed_orders} failed) across {self.total_orders} orders; "
            f"revenue {format_currency(self.total_revenue)}, "
            f"commission {format_currency(self.total_commission)}"
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_stores": self.total_stores,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "total_orders": self.total_orders,
            "total_protection_sales": self.total_protection_sales,
            "total_new_sales": self.total_new_sales,
            "total_existing": self.total_existing,
            "total_failed_orders": self.total_failed_orders,
            "total_revenue": self.total_revenue,
            "total_commission": self.total_commission,
            "summary": self.summary_text(),
            "stores": [result.as_dict() for result in self.store_results],
        }


async def load_eligible_stores(database_url: str, store_id: str | None = None) -> List[Store]:
    """Stores with an active subscription and an API credential on file."""

    async with session_scope(database_url) as session:
        stmt = (
            sa.select(Store)
            .where(Store.subscription_status == ACTIVE_SUBSCRIPTION_STATUS)
            .where(Store.api_token.is_not(None))
            .where(Store.api_token != "")
            .order_by(Store.created_at, Store.id)
        )
        if store_id:
            stmt = stmt.where(Store.id == store_id)
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def _sync_isolated(
    store: Store,
    window: SyncWindow,
    *,
    database_url: str,
    http_client: httpx.AsyncClient,
    fx: FxRateSource,
    logger: JsonLogger,
    config: Config,
) -> StoreSyncResult:
    try:
        return await sync_store(
            store,
            window,
            database_url=database_url,
            http_client=http_client,
            fx=fx,
            logger=logger,
            config=config,
        )
    except Exception as exc:  # noqa: BLE001 - one store must not sink the batch
        log_event(
            logger=logger,
            phase="store",
            status="error",
            message="Store sync failed",
            store_id=store.id,
            shop_domain=store.shop_domain,
            error=repr(exc),
        )
        return StoreSyncResult(store_id=store.id, shop_domain=store.shop_domain, error=str(exc) or repr(exc))


async def sync_all(
    window: SyncWindow,
    *,
    database_url: str,
    http_client: httpx.AsyncClient,
    fx: FxRateSource,
    logger: JsonLogger,
    config: Config,
    stores: Sequence[Store] | None = None,
    store_id: str | None = None,
    mode: str | None = None,
    concurrency: int | None = None,
    store_delay_seconds: float | None = None,
) -> BatchResult:
    resolved_mode = (mode or config.sync_mode).lower()
    if resolved_mode not in SYNC_MODES:
        raise ValueError(f"Unsupported sync mode {mode!r}; expected one of {sorted(SYNC_MODES)}")
    delay = config.sync_store_delay_seconds if store_delay_seconds is None else store_delay_seconds
    limit = concurrency or config.sync_concurrency

    if stores is None:
        stores = await load_eligible_stores(database_url, store_id)
    log_event(
        logger=logger,
        phase="batch",
        message="Starting batch sync",
        mode=resolved_mode,
        stores=len(stores),
        window_start=window.start,
        window_end=window.end,
    )

    kwargs = dict(
        database_url=database_url, http_client=http_client, fx=fx, logger=logger, config=config
    )
    batch = BatchResult()
    if resolved_mode == "concurrent":
        semaphore = asyncio.Semaphore(limit)

        async def _bounded(store: Store) -> StoreSyncResult:
            async with semaphore:
                return await _sync_isolated(store, window, **kwargs)

        batch.store_results = list(await asyncio.gather(*(_bounded(store) for store in stores)))
    else:
        for index, store in enumerate(stores):
            if index and delay > 0:
                await asyncio.sleep(delay)
            batch.store_results.append(await _sync_isolated(store, window, **kwargs))

    log_event(
        logger=logger,
        phase="batch",
        status="ok" if batch.failed_syncs == 0 else "warn",
        message=batch.summary_text(),
        successful_syncs=batch.successful_syncs,
        failed_syncs=batch.failed_syncs,
    )
    return batch


def build_window(
    *, days_back: int | None, start_date: date | None, end_date: date | None, config: Config
) -> SyncWindow:
    if start_date or end_date:
        if not (start_date and end_date):
            raise ValueError("start_date and end_date must be provided together")
        return SyncWindow.between(start_date, end_date)
    return SyncWindow.last_days(days_back or config.sync_days_back)


async def sync_now(
    *,
    store_id: str | None = None,
    days_back: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    mode: str | None = None,
    run_id: str | None = None,
) -> BatchResult:
    """Entry point for schedulers and admin tooling."""

    config = get_config()
    window = build_window(days_back=days_back, start_date=start_date, end_date=end_date, config=config)
    logger = get_logger(run_id=run_id, log_file_path=config.json_log_file)
    try:
        async with httpx.AsyncClient(timeout=config.http_timeout_seconds) as http_client:
            fx = ExchangeRateClient(
                http_client,
                base_url=config.fx_api_base_url,
                cache_ttl_seconds=config.fx_cache_ttl_seconds,
                logger=logger,
            )
            return await sync_all(
                window,
                database_url=config.database_url,
                http_client=http_client,
                fx=fx,
                logger=logger,
                config=config,
                store_id=store_id,
                mode=mode,
            )
    finally:
        logger.close()


async def validate_store(*, store_id: str, run_id: str | None = None) -> Dict[str, Any]:
    config = get_config()
    async with session_scope(config.database_url) as session:
        store = await session.get(Store, store_id)
    if store is None:
        raise LookupError(f"Store {store_id} not found")
    if not store.api_token:
        raise ValueError(f"Store {store_id} has no Shopify API token")

    logger = get_logger(run_id=run_id, log_file_path=config.json_log_file)
    try:
        async with httpx.AsyncClient(timeout=config.http_timeout_seconds) as http_client:
            return await validate_store_credentials(store, http_client=http_client, logger=logger, config=config)
    finally:
        logger.close()
