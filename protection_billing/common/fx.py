from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Protocol, Tuple

import httpx

from .json_logger import JsonLogger, log_event

DEFAULT_FX_API_BASE_URL = "https://api.exchangerate-api.com/v4/latest"
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60


class FxRateError(RuntimeError):
    """Raised when no usable exchange rate is available for a currency."""

    def __init__(self, currency: str, message: str):
        self.currency = currency
        super().__init__(f"{currency}: {message}")


@dataclass(frozen=True)
class FxQuote:
    rate: Decimal
    as_of: datetime


class FxRateSource(Protocol):
    async def get_rate(self, currency: str) -> FxQuote:  # pragma: no cover - protocol
        ...


class ExchangeRateClient:
    """USD spot rates from an exchangerate-api compatible endpoint, cached per currency."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = DEFAULT_FX_API_BASE_URL,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        logger: JsonLogger | None = None,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.cache_ttl_seconds = cache_ttl_seconds
        self.logger = logger
        self._cache: Dict[str, Tuple[float, FxQuote]] = {}

    def _cached(self, currency: str) -> FxQuote | None:
        entry = self._cache.get(currency)
        if entry is None:
            return None
        fetched_at, quote = entry
        if time.monotonic() - fetched_at >= self.cache_ttl_seconds:
            self._cache.pop(currency, None)
            return None
        return quote

    async def get_rate(self, currency: str) -> FxQuote:
        code = currency.strip().upper()
        if code == "USD":
            return FxQuote(rate=Decimal("1"), as_of=datetime.now(timezone.utc))

        cached = self._cached(code)
        if cached is not None:
            return cached

        url = f"{self.base_url}/{code}"
        try:
            response = await self.http_client.get(url)
        except httpx.HTTPError as exc:
            raise FxRateError(code, f"rate request failed: {exc}") from exc
        if response.status_code != 200:
            raise FxRateError(code, f"rate request returned HTTP {response.status_code}")

        try:
            payload = response.json()
            raw_rate = payload["rates"]["USD"]
            rate = Decimal(str(raw_rate))
        except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
            raise FxRateError(code, "rate payload missing rates.USD") from exc
        if not rate.is_finite() or rate <= 0:
            raise FxRateError(code, f"rate must be positive; got {raw_rate!r}")

        as_of = datetime.now(timezone.utc)
        raw_as_of = payload.get("time_last_updated")
        if isinstance(raw_as_of, (int, float)):
            as_of = datetime.fromtimestamp(raw_as_of, tz=timezone.utc)

        quote = FxQuote(rate=rate, as_of=as_of)
        self._cache[code] = (time.monotonic(), quote)
        if self.logger:
            log_event(
                logger=self.logger,
                phase="fx",
                message="Fetched exchange rate",
                currency=code,
                rate=str(rate),
                as_of=as_of,
            )
        return quote
