# Overview: Decimal helpers for monetary amounts (two places, half-up).

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value, field: str = "amount") -> Decimal:
    """Coerce ints, strings, and Decimals to Decimal. Floats go through str() to avoid binary noise."""
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(value) -> int:
    """Gateway amounts are integers in the smallest currency unit (paise)."""
    return int((quantize(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def money_str(value) -> str | None:
    if value is None:
        return None
    return str(quantize(value))
