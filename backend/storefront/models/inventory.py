from __future__ import annotations

from ..extensions import db
from storefront.money import money_str
from storefront.time_utils import to_utc_z, utcnow
from .base import new_id


class Product(db.Model):
    """
    Product as read by the order engine.

    Catalog management is owned elsewhere; the only column this package writes
    is stock_quantity, and only through inventory_service.update_stock (or the
    checkout/cancellation paths that reuse its inner helper).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_active_stock", "is_active", "stock_quantity"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    price = db.Column(db.Numeric(10, 2), nullable=False)
    discount_price = db.Column(db.Numeric(10, 2), nullable=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def effective_price(self):
        """Price a customer pays today: discount_price when set, else list price."""
        if self.discount_price is not None and self.discount_price > 0:
            return self.discount_price
        return self.price

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "price": money_str(self.price),
            "discount_price": money_str(self.discount_price),
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def snapshot(self) -> dict:
        """Frozen copy stored on order items at purchase time."""
        data = self.to_dict()
        data.pop("updated_at", None)
        data["effective_price"] = money_str(self.effective_price)
        return data


class InventoryHistoryEntry(db.Model):
    """
    Append-only audit trail of stock changes.

    new_quantity is max(0, previous_quantity + quantity_change): the floor is
    enforced, so a clamped row does not reconcile to a signed sum. Rows are
    never updated; retention cleanup is the only delete.
    """
    __tablename__ = "inventory_history"
    __table_args__ = (
        db.Index("ix_inventory_history_product_created", "product_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    product_id = db.Column(
        db.String(36),
        db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )

    # adjustment | sale | return | restock
    change_type = db.Column(db.String(16), nullable=False, index=True)
    quantity_change = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    notes = db.Column(db.String(255), nullable=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    product = db.relationship("Product")

    def __repr__(self) -> str:
        return (
            f"<InventoryHistoryEntry product_id={self.product_id} {self.change_type} "
            f"{self.previous_quantity}->{self.new_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "change_type": self.change_type,
            "quantity_change": self.quantity_change,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "notes": self.notes,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
