"""Detect shipping-protection line items on an order.

Two independent strategies are combined with OR:

* by id: the line item's product id equals the id resolved from the tenant's
  configured handle (unavailable when that lookup failed);
* by content: the handle appears in the SKU, title or name (case-insensitive),
  or the title carries one of the generic protection keywords.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable

from .client import ShopifyLineItem, ShopifyOrder

PROTECTION_KEYWORDS = ("shipping protection", "shipping insurance", "package protection")


class MatchResult(str, Enum):
    BY_ID = "by_id"
    BY_CONTENT = "by_content"
    NO_MATCH = "no_match"


def matches_by_id(item: ShopifyLineItem, resolved_product_id: str | None) -> bool:
    if not resolved_product_id or not item.product_id:
        return False
    return item.product_id.strip() == str(resolved_product_id).strip()


def _fields(item: ShopifyLineItem) -> Iterable[str]:
    for value in (item.sku, item.title, item.name):
        if value:
            yield value.lower()


def matches_by_content(item: ShopifyLineItem, handle: str | None) -> bool:
    needle = (handle or "").strip().lower()
    if needle and any(needle in value for value in _fields(item)):
        return True
    title = (item.title or "").lower()
    return any(keyword in title for keyword in PROTECTION_KEYWORDS)


def classify_line_item(
    item: ShopifyLineItem, handle: str | None, resolved_product_id: str | None = None
) -> MatchResult:
    if matches_by_id(item, resolved_product_id):
        return MatchResult.BY_ID
    if matches_by_content(item, handle):
        return MatchResult.BY_CONTENT
    return MatchResult.NO_MATCH


def is_protection_item(
    item: ShopifyLineItem, handle: str | None, resolved_product_id: str | None = None
) -> bool:
    return classify_line_item(item, handle, resolved_product_id) is not MatchResult.NO_MATCH


def find_protection_item(
    order: ShopifyOrder, handle: str | None, resolved_product_id: str | None = None
) -> ShopifyLineItem | None:
    """Return the first qualifying line item; an order yields at most one sale."""

    for item in order.line_items:
        if is_protection_item(item, handle, resolved_product_id):
            return item
    return None
