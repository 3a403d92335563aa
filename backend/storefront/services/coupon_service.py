# Overview: Coupon validation, discount computation, redemption tracking, and coupon admin.

"""
Coupon rules

Validation runs in a fixed order and stops at the first failure:
    lookup -> date window -> per-user usage -> minimum order -> discount

usage_limit semantics:
    usage_limit caps how many times ONE user may redeem a coupon. used_count
    is a global reporting counter; it is incremented on redemption and
    decremented on cancellation but never compared against usage_limit.

Redemption:
    Validation happens at checkout (to price the order). Unpaid orders that
    already hold the coupon count against the user's limit there, so a user
    cannot open more pending orders than they may redeem. The CouponUsage row
    is written only once payment is confirmed, inside the same transaction
    that marks the order paid, after re-counting under the coupon row lock.
    A (coupon, user, order) triple is recorded at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Coupon, CouponUsage, Order
from ..money import ZERO, money_str, quantize, to_decimal
from ..validation import ModelValidationPolicy, enforce_rules_coupon, validate_payload
from storefront.time_utils import as_utc_naive, utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry


COUPON_PERCENTAGE = "percentage"
COUPON_FIXED = "fixed"

COUPON_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "name", "description", "type", "value",
        "minimum_order_amount", "maximum_discount_amount", "usage_limit",
        "is_active", "is_public", "valid_from", "valid_until",
    },
    required_on_create={"code", "name", "type", "value"},
)

# code and type are fixed once created; everything else may change
COUPON_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "value", "minimum_order_amount",
        "maximum_discount_amount", "usage_limit", "is_active", "is_public",
        "valid_from", "valid_until",
    },
)


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    message: str
    coupon: Coupon | None = None
    discount_amount: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "message": self.message,
            "coupon": self.coupon.to_dict() if self.coupon else None,
            "discount_amount": money_str(self.discount_amount),
        }


def _format_amount(value) -> str:
    currency = current_app.config.get("CURRENCY", "INR")
    if currency == "INR":
        return f"₹{money_str(value)}"
    return f"{money_str(value)} {currency}"


def find_active_coupon(code: str) -> Coupon | None:
    return (
        db.session.query(Coupon)
        .filter(func.upper(Coupon.code) == code.strip().upper(), Coupon.is_active.is_(True))
        .first()
    )


def calculate_discount(coupon: Coupon, order_amount) -> Decimal:
    """
    percentage: amount * value / 100, capped at maximum_discount_amount
    fixed:      min(value, amount)
    Rounded half-up to 2 places; never negative.
    """
    amount = to_decimal(order_amount, "order_amount")
    value = to_decimal(coupon.value, "value")

    if coupon.type == COUPON_PERCENTAGE:
        discount = amount * value / Decimal(100)
        if coupon.maximum_discount_amount is not None:
            discount = min(discount, to_decimal(coupon.maximum_discount_amount))
    else:
        discount = min(value, amount)

    return quantize(max(discount, ZERO))


def count_user_redemptions(coupon_id: str, user_id: str) -> int:
    return (
        db.session.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .scalar()
    ) or 0


def count_open_orders(coupon_id: str, user_id: str) -> int:
    """Live orders holding the coupon whose payment has not completed yet."""
    return (
        db.session.query(func.count(Order.id))
        .filter(
            Order.coupon_id == coupon_id,
            Order.user_id == user_id,
            Order.status != "cancelled",
            Order.payment_status.in_(("pending", "failed")),
        )
        .scalar()
    ) or 0


def validate_coupon(
    code: str | None,
    user_id: str | None,
    order_amount,
    *,
    now=None,
    include_open_orders: bool = False,
) -> CouponValidation:
    amount = to_decimal(order_amount, "order_amount")
    if amount < 0:
        raise ValidationError("order_amount must be >= 0")

    if not code or not code.strip():
        return CouponValidation(False, "Invalid coupon code")

    coupon = find_active_coupon(code)
    if coupon is None:
        return CouponValidation(False, "Invalid coupon code")

    now = now or utcnow()
    valid_from = as_utc_naive(coupon.valid_from)
    valid_until = as_utc_naive(coupon.valid_until)
    if valid_from is not None and now < valid_from:
        return CouponValidation(False, "Coupon is not yet active", coupon)
    if valid_until is not None and now > valid_until:
        return CouponValidation(False, "Coupon has expired", coupon)

    if coupon.usage_limit is not None and user_id is not None:
        claimed = count_user_redemptions(coupon.id, user_id)
        if include_open_orders:
            claimed += count_open_orders(coupon.id, user_id)
        if claimed >= coupon.usage_limit:
            return CouponValidation(
                False,
                f"You have reached the usage limit for this coupon ({coupon.usage_limit} uses per user)",
                coupon,
            )

    if coupon.minimum_order_amount is not None and amount < to_decimal(coupon.minimum_order_amount):
        return CouponValidation(
            False,
            f"Minimum order amount of {_format_amount(coupon.minimum_order_amount)} required",
            coupon,
        )

    return CouponValidation(True, "Coupon applied successfully", coupon, calculate_discount(coupon, amount))


# =============================================================================
# REDEMPTION
# =============================================================================

def record_redemption(coupon_id: str, user_id: str, order_id: str, discount_amount) -> bool:
    """
    Insert the usage row and bump used_count. Flushes only.

    Returns False without touching used_count when this (coupon, user, order)
    was already recorded, so replays are harmless.
    """
    if not order_id:
        raise ValidationError("order_id is required to redeem a coupon")

    exists = (
        db.session.query(CouponUsage.id)
        .filter_by(coupon_id=coupon_id, user_id=user_id, order_id=order_id)
        .first()
    )
    if exists:
        return False

    try:
        with db.session.begin_nested():
            db.session.add(CouponUsage(
                coupon_id=coupon_id,
                user_id=user_id,
                order_id=order_id,
                discount_amount=quantize(discount_amount),
            ))
    except IntegrityError:
        # Lost a race with a concurrent redemption of the same triple
        return False

    db.session.query(Coupon).filter(Coupon.id == coupon_id).update(
        {Coupon.used_count: Coupon.used_count + 1},
        synchronize_session=False,
    )
    return True


def redeem_for_order(order: Order) -> bool:
    """
    Record the redemption for a just-paid order. Flushes only.

    The coupon row is locked and the user's redemptions on other orders are
    re-counted; once the per-user limit is reached nothing is recorded.
    """
    if not order.coupon_id or not order.user_id:
        return False
    coupon = lock_for_update(db.session.query(Coupon).filter_by(id=order.coupon_id)).first()
    if coupon is None:
        return False
    if coupon.usage_limit is not None:
        prior = (
            db.session.query(func.count(CouponUsage.id))
            .filter(
                CouponUsage.coupon_id == coupon.id,
                CouponUsage.user_id == order.user_id,
                CouponUsage.order_id != order.id,
            )
            .scalar()
        ) or 0
        if prior >= coupon.usage_limit:
            current_app.logger.warning(
                "Coupon %s usage limit reached for user %s; order %s not recorded",
                coupon.code, order.user_id, order.order_number,
            )
            return False
    return record_redemption(coupon.id, order.user_id, order.id, order.discount_amount)


def apply_coupon(coupon_id: str, user_id: str, order_id: str, discount_amount) -> bool:
    def _op():
        begin_write()
        if db.session.get(Coupon, coupon_id) is None:
            raise NotFoundError("Coupon not found")
        inserted = record_redemption(coupon_id, user_id, order_id, discount_amount)
        db.session.commit()
        return inserted

    return run_with_retry(_op)


def release_redemption(order: Order) -> bool:
    """Undo the redemption recorded for ``order`` (cancellation path). Flushes only."""
    if not order.coupon_id or not order.user_id:
        return False
    deleted = (
        db.session.query(CouponUsage)
        .filter_by(coupon_id=order.coupon_id, user_id=order.user_id, order_id=order.id)
        .delete(synchronize_session=False)
    )
    if not deleted:
        return False
    db.session.query(Coupon).filter(Coupon.id == order.coupon_id).update(
        {Coupon.used_count: case((Coupon.used_count > 0, Coupon.used_count - 1), else_=0)},
        synchronize_session=False,
    )
    return True


def release_user_redemptions(user_id: str) -> int:
    """Delete every redemption by ``user_id`` and take them off used_count. Flushes only."""
    per_coupon = (
        db.session.query(CouponUsage.coupon_id, func.count(CouponUsage.id))
        .filter(CouponUsage.user_id == user_id)
        .group_by(CouponUsage.coupon_id)
        .all()
    )
    for coupon_id, count in per_coupon:
        db.session.query(Coupon).filter(Coupon.id == coupon_id).update(
            {Coupon.used_count: case((Coupon.used_count > count, Coupon.used_count - count), else_=0)},
            synchronize_session=False,
        )
    db.session.query(CouponUsage).filter(CouponUsage.user_id == user_id).delete(synchronize_session=False)
    return sum(count for _, count in per_coupon)


# =============================================================================
# QUERIES
# =============================================================================

def get_active_coupons(*, public_only: bool = False, oldest_first: bool = False) -> list[Coupon]:
    query = db.session.query(Coupon).filter(Coupon.is_active.is_(True))
    if public_only:
        now = utcnow()
        query = query.filter(
            Coupon.is_public.is_(True),
            or_(Coupon.valid_from.is_(None), Coupon.valid_from <= now),
            or_(Coupon.valid_until.is_(None), Coupon.valid_until > now),
        )
    if oldest_first:
        return query.order_by(Coupon.created_at.asc(), Coupon.code.asc()).all()
    return query.order_by(Coupon.created_at.desc()).all()


def get_best_coupon_for_order(user_id: str | None, order_amount) -> CouponValidation | None:
    """
    Evaluate every public coupon against the amount and keep the largest discount.

    Coupons are evaluated oldest first; a later coupon must beat the current
    best strictly, so ties go to the earlier one.
    """
    best: CouponValidation | None = None
    for coupon in get_active_coupons(public_only=True, oldest_first=True):
        result = validate_coupon(coupon.code, user_id, order_amount)
        if not result.valid:
            continue
        if best is None or result.discount_amount > best.discount_amount:
            best = result
    return best


def get_coupon(coupon_id: str) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    return coupon


# =============================================================================
# ADMIN
# =============================================================================

def create_coupon(payload: dict) -> Coupon:
    patch = validate_payload(model=Coupon, payload=payload, policy=COUPON_CREATE_POLICY, partial=False)
    patch["code"] = patch["code"].upper()
    enforce_rules_coupon(patch)

    def _op():
        duplicate = db.session.query(Coupon.id).filter(func.upper(Coupon.code) == patch["code"]).first()
        if duplicate:
            raise ConflictError("Coupon code already exists")
        coupon = Coupon(**patch)
        db.session.add(coupon)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("Coupon code already exists")
        return coupon

    return run_with_retry(_op)


def update_coupon(coupon_id: str, payload: dict) -> Coupon:
    patch = validate_payload(model=Coupon, payload=payload, policy=COUPON_UPDATE_POLICY, partial=True)
    if not patch:
        raise ValidationError("No valid fields to update")

    def _op():
        coupon = get_coupon(coupon_id)
        merged = {
            "valid_from": as_utc_naive(coupon.valid_from),
            "valid_until": as_utc_naive(coupon.valid_until),
            **patch,
        }
        enforce_rules_coupon(merged, current_type=coupon.type)
        for key, value in patch.items():
            setattr(coupon, key, value)
        db.session.commit()
        return coupon

    return run_with_retry(_op)


def delete_coupon(coupon_id: str, *, hard: bool = False) -> None:
    """
    Soft delete (default) deactivates the coupon.

    Hard delete removes usage rows, detaches orders that referenced it, and
    deletes the coupon. Orders keep their coupon_code and discount_amount.
    """
    def _op():
        coupon = get_coupon(coupon_id)
        if not hard:
            coupon.is_active = False
            db.session.commit()
            return

        db.session.query(CouponUsage).filter_by(coupon_id=coupon_id).delete(synchronize_session=False)
        db.session.query(Order).filter(Order.coupon_id == coupon_id).update(
            {Order.coupon_id: None},
            synchronize_session=False,
        )
        db.session.delete(coupon)
        db.session.commit()

    run_with_retry(_op)


def get_coupon_stats(coupon_id: str) -> dict:
    coupon = get_coupon(coupon_id)
    usage = db.session.query(
        func.count(CouponUsage.id).label("total_usage"),
        func.count(func.distinct(CouponUsage.user_id)).label("unique_users"),
        func.coalesce(func.sum(CouponUsage.discount_amount), 0).label("total_discount"),
    ).filter(CouponUsage.coupon_id == coupon_id).one()

    revenue = (
        db.session.query(func.coalesce(func.sum(Order.total_amount), 0))
        .filter(Order.coupon_id == coupon_id, Order.payment_status == "paid")
        .scalar()
    )

    return {
        "coupon": coupon.to_dict(),
        "total_usage": int(usage.total_usage or 0),
        "unique_users": int(usage.unique_users or 0),
        "total_discount": money_str(to_decimal(usage.total_discount or 0)),
        "revenue_generated": money_str(to_decimal(revenue or 0)),
    }


def get_overall_coupon_stats() -> dict:
    total_coupons = db.session.query(func.count(Coupon.id)).scalar() or 0
    active_coupons = db.session.query(func.count(Coupon.id)).filter(Coupon.is_active.is_(True)).scalar() or 0
    redemptions = db.session.query(
        func.count(CouponUsage.id),
        func.coalesce(func.sum(CouponUsage.discount_amount), 0),
    ).one()
    revenue = (
        db.session.query(func.coalesce(func.sum(Order.total_amount), 0))
        .filter(Order.coupon_id.isnot(None), Order.payment_status == "paid")
        .scalar()
    )
    return {
        "total_coupons": int(total_coupons),
        "active_coupons": int(active_coupons),
        "total_redemptions": int(redemptions[0] or 0),
        "total_discount_given": money_str(to_decimal(redemptions[1] or 0)),
        "revenue_with_coupons": money_str(to_decimal(revenue or 0)),
    }
