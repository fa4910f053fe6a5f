"""Currency conversion between invoice currencies and the base currency.

Every base-currency figure in the system is produced here, so all call
sites share one rounding rule: half-up to two decimals, applied once at
the point of computation.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from billing.config import settings
from billing.middleware.exceptions import InvalidExchangeRate

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Coerce ints, strings and floats to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc


def round2(amount) -> Decimal:
    """Round half-up to two decimal places."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def _require_rate(currency: str, exchange_rate) -> Decimal:
    if exchange_rate is None:
        raise InvalidExchangeRate(currency, exchange_rate)
    rate = to_decimal(exchange_rate)
    if rate <= 0:
        raise InvalidExchangeRate(currency, exchange_rate)
    return rate


def is_base(currency: str, base_currency: str | None = None) -> bool:
    return currency == (base_currency or settings.base_currency)


def to_base(amount_original, currency: str, exchange_rate=None, base_currency: str | None = None) -> Decimal:
    """Convert an amount in `currency` to the base currency.

    Base-currency amounts come back unchanged.  Anything else is divided
    by `exchange_rate` (local units per base unit) and rounded.

    Raises:
        InvalidExchangeRate: currency is not the base and the rate is
            missing or not positive.
    """
    amount = to_decimal(amount_original)
    if is_base(currency, base_currency):
        return amount
    rate = _require_rate(currency, exchange_rate)
    return round2(amount / rate)


def from_base(amount_base, currency: str, exchange_rate=None, base_currency: str | None = None) -> Decimal:
    """Inverse of to_base: express a base amount in `currency`."""
    amount = to_decimal(amount_base)
    if is_base(currency, base_currency):
        return amount
    rate = _require_rate(currency, exchange_rate)
    return round2(amount * rate)


def validate_currency_pair(currency: str, exchange_rate=None, base_currency: str | None = None) -> Decimal | None:
    """Return the normalised rate to store alongside an amount in `currency`.

    Base-currency amounts keep whatever rate was supplied (informational);
    foreign amounts must carry a positive one.
    """
    if is_base(currency, base_currency):
        return to_decimal(exchange_rate) if exchange_rate is not None else None
    return _require_rate(currency, exchange_rate)
