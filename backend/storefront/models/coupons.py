from __future__ import annotations

from ..extensions import db
from storefront.money import money_str
from storefront.time_utils import to_utc_z, utcnow
from .base import new_id


class Coupon(db.Model):
    """
    Discount code.

    Codes are stored upper-case so the unique constraint is effectively
    case-insensitive. usage_limit caps redemptions per user; used_count is a
    reporting counter across all users and is never enforced as a cap.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.CheckConstraint("type IN ('percentage', 'fixed')", name="ck_coupons_type"),
        db.Index("ix_coupons_active_window", "is_active", "valid_from", "valid_until"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    type = db.Column(db.String(16), nullable=False)
    value = db.Column(db.Numeric(10, 2), nullable=False)
    minimum_order_amount = db.Column(db.Numeric(10, 2), nullable=True)
    maximum_discount_amount = db.Column(db.Numeric(10, 2), nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)
    used_count = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_public = db.Column(db.Boolean, nullable=False, default=True)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Coupon code={self.code!r} type={self.type} value={self.value}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "value": money_str(self.value),
            "minimum_order_amount": money_str(self.minimum_order_amount),
            "maximum_discount_amount": money_str(self.maximum_discount_amount),
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "is_active": self.is_active,
            "is_public": self.is_public,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "created_at": to_utc_z(self.created_at),
        }


class CouponUsage(db.Model):
    """One redemption of a coupon by a user against an order."""
    __tablename__ = "coupon_usage"
    __table_args__ = (
        db.UniqueConstraint("coupon_id", "user_id", "order_id", name="uq_coupon_usage_coupon_user_order"),
        db.Index("ix_coupon_usage_coupon_user", "coupon_id", "user_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    coupon_id = db.Column(db.String(36), db.ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "coupon_id": self.coupon_id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "discount_amount": money_str(self.discount_amount),
            "used_at": to_utc_z(self.used_at),
        }
