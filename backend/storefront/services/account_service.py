# Overview: Account lifecycle helpers; user lookup, creation, and right-to-erasure anonymization.

from __future__ import annotations

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Cart, CartActivity, InventoryHistoryEntry, Order, User, UserTombstone
from . import coupon_service
from .concurrency import begin_write, run_with_retry


USER_ROLES = {"customer", "admin"}


def get_user(user_id: str) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def create_user(email: str, name: str, *, phone: str | None = None, role: str = "customer") -> User:
    email = (email or "").strip().lower()
    name = (name or "").strip()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if not name:
        raise ValidationError("name is required")
    if role not in USER_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(sorted(USER_ROLES))}")

    def _op():
        if db.session.query(User.id).filter_by(email=email).first():
            raise ConflictError("A user with this email already exists")
        user = User(email=email, name=name, phone=phone, role=role)
        db.session.add(user)
        db.session.commit()
        return user

    return run_with_retry(_op)


def anonymize_user(user_id: str, *, reason: str | None = None) -> UserTombstone:
    """
    Erase a user while keeping their orders for accounting.

    Orders and stock history lose the user reference; carts, cart activity,
    and coupon redemptions are deleted with the account (coupon used_count
    drops with them). A tombstone records that the erasure happened.
    """
    def _op():
        begin_write()
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        detached = (
            db.session.query(Order)
            .filter(Order.user_id == user_id)
            .update({Order.user_id: None}, synchronize_session=False)
        )
        db.session.query(InventoryHistoryEntry).filter(InventoryHistoryEntry.user_id == user_id).update(
            {InventoryHistoryEntry.user_id: None}, synchronize_session=False
        )
        coupon_service.release_user_redemptions(user_id)
        db.session.query(CartActivity).filter(CartActivity.user_id == user_id).delete(synchronize_session=False)
        cart = db.session.query(Cart).filter_by(user_id=user_id).first()
        if cart is not None:
            db.session.delete(cart)

        tombstone = UserTombstone(original_user_id=user_id, reason=reason, detached_order_count=detached)
        db.session.add(tombstone)
        db.session.delete(user)
        db.session.commit()
        return tombstone

    return run_with_retry(_op)
