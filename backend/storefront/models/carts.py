from __future__ import annotations

from ..extensions import db
from storefront.money import money_str
from storefront.time_utils import to_utc_z, utcnow
from .base import new_id


class Cart(db.Model):
    """Shopping cart owned by exactly one of: a signed-in user or a guest session."""
    __tablename__ = "carts"
    __table_args__ = (
        db.CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_carts_single_owner",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, unique=True)
    session_id = db.Column(db.String(128), nullable=True, unique=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "CartItem",
        backref="cart",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="CartItem.created_at",
    )

    def __repr__(self) -> str:
        owner = f"user_id={self.user_id}" if self.user_id else f"session_id={self.session_id!r}"
        return f"<Cart id={self.id} {owner} items={len(self.items)}>"


class CartItem(db.Model):
    """A product line in a cart at the price captured when it was added."""
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "product_id", name="uq_cart_items_cart_product"),
        db.CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    cart_id = db.Column(db.String(36), db.ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    price_at_time = db.Column(db.Numeric(10, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product", lazy="joined")

    @property
    def line_total(self):
        return self.price_at_time * self.quantity

    def to_dict(self) -> dict:
        product = self.product
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": product.name if product else None,
            "sku": product.sku if product else None,
            "quantity": self.quantity,
            "price_at_time": money_str(self.price_at_time),
            "line_total": money_str(self.line_total),
            "stock_quantity": product.stock_quantity if product else 0,
            "is_active": product.is_active if product else False,
        }


class CartActivity(db.Model):
    """
    Per-user cart activity used by the abandonment jobs.

    Request paths touch last_activity; the scheduled jobs flip is_abandoned and
    advance reminder_count. Both sides write through short transactions on the
    row, so they may interleave freely.
    """
    __tablename__ = "cart_abandonment_tracking"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    last_activity = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    is_abandoned = db.Column(db.Boolean, nullable=False, default=False)
    abandoned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reminder_count = db.Column(db.Integer, nullable=False, default=0)
    last_reminder_sent = db.Column(db.DateTime(timezone=True), nullable=True)
    is_recovered = db.Column(db.Boolean, nullable=False, default=False)
    recovered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "last_activity": to_utc_z(self.last_activity),
            "is_abandoned": self.is_abandoned,
            "abandoned_at": to_utc_z(self.abandoned_at),
            "reminder_count": self.reminder_count,
            "last_reminder_sent": to_utc_z(self.last_reminder_sent),
            "is_recovered": self.is_recovered,
            "recovered_at": to_utc_z(self.recovered_at),
        }
