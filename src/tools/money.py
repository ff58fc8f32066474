"""
Money and Ratio Helpers

All collection and withdrawal totals are accumulated as Decimal so that
summing thousands of rupee amounts never drifts the way binary floats do.
Ratios are always derived from totals that were already summed.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Union
import logging

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

Number = Union[int, float, str, Decimal]


def to_decimal(value: Any) -> Decimal:
    """
    Convert a raw record value into a Decimal.

    None, empty strings and unparseable values become 0; floats are converted
    through their string form so 0.1 stays 0.1.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"Unparseable numeric value {value!r}; treating as 0")
        return ZERO


def sum_decimal(values: Iterable[Any]) -> Decimal:
    """Sum raw values exactly."""
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total


def safe_divide(numerator: Number, denominator: Number) -> Optional[Decimal]:
    """Safe division with zero handling. Returns None when the denominator is 0."""
    denominator = to_decimal(denominator)
    if denominator == 0:
        return None
    return to_decimal(numerator) / denominator


def round_half_up(value: Number, places: int = 0) -> Decimal:
    """Round the way people expect (2.5 -> 3), not banker's rounding."""
    exponent = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def percent_of(part: Number, whole: Number) -> int:
    """Integer percentage of part over whole; 0 when whole is 0."""
    ratio = safe_divide(part, whole)
    if ratio is None:
        return 0
    return int(round_half_up(ratio * HUNDRED))


def format_inr(value: Number) -> str:
    """
    Format a rupee amount the way the admin reports display it.

    >= 1 crore -> "₹1.50 Cr", >= 1 lakh -> "₹2.50 L", >= 1000 -> "₹1.5K".
    """
    amount = to_decimal(value)
    magnitude = abs(amount)
    sign = "-" if amount < 0 else ""
    if magnitude >= Decimal("10000000"):
        return f"{sign}₹{magnitude / Decimal('10000000'):.2f} Cr"
    elif magnitude >= Decimal("100000"):
        return f"{sign}₹{magnitude / Decimal('100000'):.2f} L"
    elif magnitude >= Decimal("1000"):
        return f"{sign}₹{magnitude / Decimal('1000'):.1f}K"
    else:
        return f"{sign}₹{magnitude.normalize():f}"
