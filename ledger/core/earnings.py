"""
Earnings Calculator — turns tracked seconds and an hourly rate into money.

All money is handled as Decimal and rounded to the cent, half-up, so that
3600 s at $10/hr is exactly $10.00 and never 9.999999.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
SECONDS_PER_HOUR = Decimal(3600)

Number = Union[int, float, Decimal, str]


def to_money(value: Optional[Number]) -> Decimal:
    """Coerce a number (or None) to a cent-rounded Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_earnings(elapsed_seconds: Number, hourly_rate_usd: Optional[Number]) -> Decimal:
    """
    earnings = round2(elapsed_seconds / 3600 * hourly_rate_usd)

    A missing or zero rate yields $0.00: tracking time without a rate is
    a normal use (personal activities), not an error.
    """
    seconds = Decimal(str(elapsed_seconds))
    if seconds < 0:
        raise ValueError(f"elapsed_seconds must be >= 0, got {elapsed_seconds}")
    if hourly_rate_usd is None:
        return ZERO
    rate = Decimal(str(hourly_rate_usd))
    if rate < 0:
        raise ValueError(f"hourly_rate_usd must be >= 0, got {hourly_rate_usd}")
    if rate == 0 or seconds == 0:
        return ZERO
    return (seconds * rate / SECONDS_PER_HOUR).quantize(CENT, rounding=ROUND_HALF_UP)
