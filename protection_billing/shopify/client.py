"""Shopify Admin REST client for order history and product lookups."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Union

import httpx

from protection_billing.common.date_utils import as_utc, parse_timestamp, utc_now
from protection_billing.common.json_logger import JsonLogger, log_event

PAGE_SIZE = 250
MAX_PAGES = 20
DEFAULT_API_VERSION = "2024-01"


class ShopifyAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive UTC window of order creation timestamps."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if self.start > self.end:
            raise ValueError(f"Window start {self.start.isoformat()} is after end {self.end.isoformat()}")

    @classmethod
    def last_days(cls, days_back: int, now: datetime | None = None) -> "SyncWindow":
        if days_back < 1:
            raise ValueError(f"days_back must be >= 1; got {days_back}")
        end = as_utc(now or utc_now())
        return cls(start=end - timedelta(days=days_back), end=end)

    @classmethod
    def between(cls, start_date: date, end_date: date) -> "SyncWindow":
        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        end = datetime.combine(end_date, time.max, tzinfo=timezone.utc)
        return cls(start=start, end=end)


@dataclass(frozen=True)
class FilteredPage:
    window: SyncWindow


@dataclass(frozen=True)
class CursorPage:
    cursor: str


FetchPage = Union[FilteredPage, CursorPage]


def page_params(page: FetchPage) -> Dict[str, str]:
    """Build query parameters for one page request.

    Continuation requests may carry only ``limit`` and ``page_info``; Shopify
    rejects a cursor combined with any filter.
    """

    if isinstance(page, CursorPage):
        return {"limit": str(PAGE_SIZE), "page_info": page.cursor}
    if isinstance(page, FilteredPage):
        return {
            "status": "any",
            "limit": str(PAGE_SIZE),
            "created_at_min": page.window.start.isoformat(),
            "created_at_max": page.window.end.isoformat(),
        }
    raise TypeError(f"Unsupported page request: {page!r}")


def next_cursor(response: httpx.Response) -> str | None:
    next_link = response.links.get("next")
    if not next_link or not next_link.get("url"):
        return None
    return httpx.URL(next_link["url"]).params.get("page_info") or None


@dataclass(frozen=True)
class ShopifyLineItem:
    id: str
    product_id: str | None
    sku: str | None
    title: str | None
    name: str | None
    price: str
    quantity: int = 1

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ShopifyLineItem":
        product_id = payload.get("product_id")
        return cls(
            id=str(payload.get("id")),
            product_id=str(product_id) if product_id is not None else None,
            sku=payload.get("sku"),
            title=payload.get("title"),
            name=payload.get("name"),
            price=str(payload.get("price") or "0"),
            quantity=int(payload.get("quantity") or 1),
        )


@dataclass(frozen=True)
class ShopifyOrder:
    id: str
    name: str | None
    created_at: datetime
    currency: str
    line_items: List[ShopifyLineItem] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ShopifyOrder":
        return cls(
            id=str(payload["id"]),
            name=payload.get("name"),
            created_at=parse_timestamp(payload["created_at"]),
            currency=str(payload.get("currency") or "USD").upper(),
            line_items=[ShopifyLineItem.from_payload(item) for item in payload.get("line_items") or []],
        )


@dataclass
class FetchResult:
    orders: List[ShopifyOrder]
    error: str | None = None
    pages: int = 0


class ShopifyClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        shop_domain: str,
        api_token: str,
        api_version: str = DEFAULT_API_VERSION,
        logger: JsonLogger | None = None,
    ):
        self.http_client = http_client
        self.shop_domain = shop_domain.strip().rstrip("/")
        self.api_token = api_token
        self.api_version = api_version
        self.logger = logger

    @property
    def base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"

    def _headers(self) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": self.api_token, "Content-Type": "application/json"}

    def _log(self, *, status: str = "ok", message: str, **fields: Any) -> None:
        if self.logger:
            log_event(
                logger=self.logger,
                phase="fetch",
                status=status,
                message=message,
                shop_domain=self.shop_domain,
                **fields,
            )

    async def _get(self, path: str, params: Mapping[str, str] | None = None) -> httpx.Response:
        try:
            response = await self.http_client.get(
                f"{self.base_url}/{path}", params=params, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise ShopifyAPIError(f"Shopify request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ShopifyAPIError(
                f"Shopify API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response

    async def fetch_orders(self, window: SyncWindow) -> FetchResult:
        """Collect every order created inside ``window``.

        Any failed page stops pagination; the orders gathered so far are still
        returned together with the error string.
        """

        orders: List[ShopifyOrder] = []
        page: FetchPage | None = FilteredPage(window)
        pages = 0

        while page is not None:
            if pages >= MAX_PAGES:
                self._log(
                    status="warn",
                    message="Page cap reached before pagination finished; remaining orders left for next sync",
                    max_pages=MAX_PAGES,
                    orders_collected=len(orders),
                )
                break
            try:
                response = await self._get("orders.json", page_params(page))
                payload = response.json()
                batch = [ShopifyOrder.from_payload(raw) for raw in payload.get("orders") or []]
            except ShopifyAPIError as exc:
                self._log(status="error", message="Order page fetch failed", page=pages + 1, error=str(exc))
                return FetchResult(orders=orders, error=str(exc), pages=pages)
            except (ValueError, KeyError, TypeError) as exc:
                error = f"Malformed orders payload: {exc}"
                self._log(status="error", message="Order page fetch failed", page=pages + 1, error=error)
                return FetchResult(orders=orders, error=error, pages=pages)

            pages += 1
            orders.extend(batch)
            cursor = next_cursor(response)
            page = CursorPage(cursor) if cursor else None

        self._log(
            message="Fetched orders",
            orders=len(orders),
            pages=pages,
            window_start=window.start,
            window_end=window.end,
        )
        return FetchResult(orders=orders, pages=pages)

    async def resolve_product_id(self, handle: str) -> str | None:
        """Reverse-lookup a product id by handle; ``None`` when unavailable."""

        try:
            response = await self._get("products.json", {"handle": handle, "fields": "id,handle"})
            products = response.json().get("products") or []
        except (ShopifyAPIError, ValueError) as exc:
            self._log(status="warn", message="Product handle lookup failed", handle=handle, error=str(exc))
            return None
        if not products:
            self._log(status="warn", message="No product found for handle", handle=handle)
            return None
        return str(products[0]["id"])

    async def fetch_shop(self) -> Dict[str, Any]:
        """Return basic shop details; used to validate a tenant's credential."""

        response = await self._get("shop.json")
        try:
            shop = response.json()["shop"]
        except (ValueError, KeyError) as exc:
            raise ShopifyAPIError("Malformed shop payload") from exc
        return {
            "id": shop.get("id"),
            "name": shop.get("name"),
            "domain": shop.get("domain") or shop.get("myshopify_domain"),
            "currency": shop.get("currency"),
        }
