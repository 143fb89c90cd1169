"""Decimal helpers shared by the costing passes.

Intermediate arithmetic runs on unrounded ``Decimal`` values; ``money`` and
``rate`` are applied once, right before a value is written to the trip.
"""
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

ZERO = Decimal("0")
CENTS = Decimal("0.01")
MICROS = Decimal("0.000001")

def to_decimal(value) -> Decimal:
    """Coerce a stored or submitted number to Decimal, 0 for null/NaN/inf."""
    dec = to_nullable_decimal(value)
    return ZERO if dec is None else dec

def to_nullable_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return dec if dec.is_finite() else None

def safe_divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Division that resolves to 0 instead of raising or going non-finite."""
    if denominator is None or denominator == 0:
        return ZERO
    try:
        result = numerator / denominator
    except (InvalidOperation, ZeroDivisionError):
        return ZERO
    return result if result.is_finite() else ZERO

def money(value) -> Decimal:
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)

def rate(value) -> Decimal:
    return to_decimal(value).quantize(MICROS, rounding=ROUND_HALF_UP)

def optional_money(value) -> Optional[Decimal]:
    return None if value is None else money(value)

def optional_rate(value) -> Optional[Decimal]:
    return None if value is None else rate(value)

def as_float(value, default: Optional[float] = 0.0) -> Optional[float]:
    """Render a stored Decimal for JSON output."""
    if value is None:
        return default
    result = float(value)
    return result if math.isfinite(result) else default

def finite_or_none(value, minimum: Optional[float] = None) -> Optional[float]:
    """Auxiliary numeric input: keep finite numbers, drop everything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    if minimum is not None and value < minimum:
        return None
    return float(value)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def truncate_to_second(value: datetime) -> datetime:
    return as_utc(value).replace(microsecond=0)
