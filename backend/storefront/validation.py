from __future__ import annotations
from datetime import datetime
from decimal import Decimal

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from storefront.errors import ValidationError
from storefront.money import to_decimal
from storefront.time_utils import parse_iso_datetime


# Upper bound for any single money column: Numeric(10, 2)
MAX_AMOUNT = Decimal("99999999.99")

COUPON_TYPES = {"percentage", "fixed"}


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Numeric before Integer: money columns arrive as JSON numbers or strings
    if isinstance(coltype, Numeric):
        amount = to_decimal(value, col.key)
        if not amount.is_finite():
            raise ValidationError(f"{col.key} must be a finite number")
        if abs(amount) > MAX_AMOUNT:
            raise ValidationError(f"{col.key} cannot exceed {MAX_AMOUNT}")
        return amount

    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or "e" in stripped.lower() or "." in stripped:
                raise ValidationError(f"{col.key} must be an integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes"}
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_coupon(patch: dict, *, current_type: str | None = None) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    coupon_type = patch.get("type", current_type)
    if "type" in patch and coupon_type not in COUPON_TYPES:
        raise ValidationError("Coupon type must be either percentage or fixed")

    if "value" in patch and patch["value"] is not None:
        value = patch["value"]
        if coupon_type == "percentage" and (value < 0 or value > 100):
            raise ValidationError("Percentage discount must be between 0 and 100")
        if coupon_type == "fixed" and value <= 0:
            raise ValidationError("Fixed discount must be a positive amount")

    for key in ("minimum_order_amount", "maximum_discount_amount"):
        if patch.get(key) is not None and patch[key] < 0:
            raise ValidationError(f"{key} must be >= 0")

    if patch.get("usage_limit") is not None and patch["usage_limit"] < 1:
        raise ValidationError("usage_limit must be >= 1")

    valid_from = patch.get("valid_from")
    valid_until = patch.get("valid_until")
    if valid_from and valid_until and valid_until < valid_from:
        raise ValidationError("valid_until must be after valid_from")


def require_quantity(value: Any, field: str = "quantity", *, allow_zero: bool = False) -> int:
    """Strict positive-integer check for cart and stock quantities."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{field} must be an integer")
    try:
        qty = int(value)
    except ValueError:
        raise ValidationError(f"{field} must be an integer")
    if qty < 0 or (qty == 0 and not allow_zero):
        raise ValidationError(f"{field} must be greater than 0")
    return qty
