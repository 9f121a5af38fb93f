"""Shared helpers for UTC week and month identifiers.

Sales are bucketed by the UTC calendar of the order's original creation
timestamp, never the sync time, so a late or backfilled sync still attributes
a sale to the week it was actually placed in.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Tuple

WEEK_ID_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` in UTC; naive datetimes are assumed to already be UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by Shopify into an aware UTC datetime."""

    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def week_identifier(value: datetime | date) -> str:
    """Return the ISO-8601 week identifier (``YYYY-Www``) for ``value``."""

    day = as_utc(value).date() if isinstance(value, datetime) else value
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def month_identifier(value: datetime | date) -> str:
    day = as_utc(value).date() if isinstance(value, datetime) else value
    return f"{day.year}-{day.month:02d}"


def parse_week_identifier(week_id: str) -> Tuple[int, int]:
    match = WEEK_ID_PATTERN.match(week_id.strip())
    if not match:
        raise ValueError(f"Invalid week identifier {week_id!r}; expected YYYY-Www")
    year, week = int(match.group(1)), int(match.group(2))
    try:
        date.fromisocalendar(year, week, 1)
    except ValueError as exc:
        raise ValueError(f"Week {week} does not exist in ISO year {year}") from exc
    return year, week


def week_bounds(week_id: str) -> Tuple[date, date]:
    """Return the Monday and Sunday of an ISO week identifier."""

    year, week = parse_week_identifier(week_id)
    start = date.fromisocalendar(year, week, 1)
    return start, start + timedelta(days=6)


def current_week(reference: datetime | None = None) -> str:
    return week_identifier(reference or utc_now())


def previous_week(reference: datetime | None = None) -> str:
    """Return the most recent fully completed Monday to Sunday week."""

    current = as_utc(reference or utc_now())
    return week_identifier(current - timedelta(days=7))


def format_week_display(week_id: str) -> str:
    year, week = parse_week_identifier(week_id)
    return f"Week {week}, {year}"
