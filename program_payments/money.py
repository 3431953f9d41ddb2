"""
Money Helpers Module

Single-currency amount handling with Decimal precision. NEVER uses float
for monetary values except at the display boundary. Amounts inside the
engine are in major units (naira); the gateway speaks minor units (kobo).
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0')
MINOR_UNITS_PER_MAJOR = 100

AmountLike = Union[Decimal, int, str, float]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert a value to Decimal, going through str for floats"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def round2(value: AmountLike) -> Decimal:
    """Round half-up to 2 decimal places"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: AmountLike) -> int:
    """Convert a major-unit amount to integer minor units (kobo)"""
    return int((round2(amount) * MINOR_UNITS_PER_MAJOR).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(minor: Union[int, str]) -> Decimal:
    """Convert integer minor units (kobo) to a major-unit amount"""
    return round2(to_decimal(minor) / MINOR_UNITS_PER_MAJOR)


def format_amount(amount: AmountLike, currency_code: str = "NGN") -> str:
    """Format for display, e.g. 'NGN 30,000.00'"""
    return f"{currency_code} {round2(amount):,.2f}"
