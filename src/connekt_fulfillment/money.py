"""Fixed-point money helpers.

Amounts are integers in minor units everywhere inside the engine. Decimal
major units only appear at the boundary (wire terms, CLI, web API).
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from connekt_fulfillment.errors import CurrencyMismatch, InvalidAmount

MINOR_UNITS = 100


def to_minor(value) -> int:
    """Convert a major-unit amount (str, int, float or Decimal) to minor units."""
    if isinstance(value, bool):
        raise InvalidAmount(f"Not an amount: {value!r}")
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Not an amount: {value!r}") from None
    if not dec.is_finite():
        raise InvalidAmount(f"Not an amount: {value!r}")
    return int((dec * MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(amount: int) -> Decimal:
    return (Decimal(amount) / MINOR_UNITS).quantize(Decimal("0.01"))


def format_amount(amount: int, currency: str) -> str:
    return f"{currency} {to_major(amount):,.2f}"


def require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer number of minor units: {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive: {amount}")
    return amount


def check_currency(expected: str, actual: str):
    if expected.upper() != actual.upper():
        raise CurrencyMismatch(f"Currency mismatch: expected {expected}, got {actual}")
