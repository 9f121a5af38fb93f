"""Money helpers.

All amounts leaving this module are integer minor units. Rounding is
``ROUND_HALF_UP`` everywhere (0.5 rounds away from zero), which matches how
the storefront and the payment processor present cents to merchants.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .fx import FxRateSource

DEFAULT_COMMISSION_PERCENT = Decimal("25")
USD = "USD"

ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def currency_exponent(currency: str) -> int:
    code = currency.strip().upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def parse_price(price: str) -> Decimal:
    try:
        value = Decimal(str(price).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid price {price!r}") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid price {price!r}")
    return value


def to_minor_units(price: str, currency: str = USD) -> int:
    """Parse a decimal price string into minor units of ``currency``."""

    return _round_half_up(parse_price(price).scaleb(currency_exponent(currency)))


def convert_to_usd_minor_units(price: str, rate: Decimal) -> int:
    """Convert a major-unit price string at ``rate`` (USD per unit) into US cents."""

    if rate <= 0:
        raise ValueError(f"Exchange rate must be positive; got {rate}")
    return _round_half_up(parse_price(price) * rate * _HUNDRED)


async def to_usd_minor_units(price: str, currency: str, fx: FxRateSource) -> Tuple[int, Decimal]:
    """Return ``(usd_cents, rate_used)`` for a storefront price.

    Raises ``FxRateError`` when no rate is available; an unconverted amount is
    never returned as if it were USD.
    """

    code = (currency or USD).strip().upper()
    if code == USD:
        return to_minor_units(price, USD), _ONE
    quote = await fx.get_rate(code)
    return convert_to_usd_minor_units(price, quote.rate), quote.rate


def resolve_commission_percent(value: Decimal | float | int | str | None) -> Decimal:
    """Single source of truth for a tenant's commission rate.

    Unset, non-numeric and out-of-range (below 0 or above 100) values resolve
    to ``DEFAULT_COMMISSION_PERCENT``.
    """

    if value is None or (isinstance(value, str) and not value.strip()):
        return DEFAULT_COMMISSION_PERCENT
    try:
        percent = Decimal(str(value).strip())
    except InvalidOperation:
        return DEFAULT_COMMISSION_PERCENT
    if not percent.is_finite() or percent < 0 or percent > _HUNDRED:
        return DEFAULT_COMMISSION_PERCENT
    return percent


def commission(amount_minor_units: int, fee_percent: Decimal | float | int) -> int:
    percent = Decimal(str(fee_percent))
    if percent < 0:
        raise ValueError(f"Commission percent cannot be negative; got {fee_percent!r}")
    return _round_half_up(Decimal(amount_minor_units) * percent / _HUNDRED)


def format_currency(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${Decimal(abs(cents)) / _HUNDRED:.2f}"
