from __future__ import annotations

from ..extensions import db
from storefront.money import money_str
from storefront.time_utils import to_utc_z, utcnow
from .base import new_id


class Order(db.Model):
    """
    Customer purchase aggregate.

    Four independently tracked axes live on one row (status, payment_status,
    shipping_status, return_status); order_service owns the transition graphs
    that couple them. Money columns are fixed-point and never floats.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_gateway_order_id", "gateway_order_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    order_number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending")
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    shipping_status = db.Column(db.String(16), nullable=False, default="not_shipped")

    # Money (Numeric(10, 2), Decimal in Python)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    shipping_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")

    coupon_id = db.Column(db.String(36), db.ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    coupon_code = db.Column(db.String(50), nullable=True)

    # Address snapshots, copied at checkout
    shipping_address = db.Column(db.JSON, nullable=False)
    billing_address = db.Column(db.JSON, nullable=True)

    # Payment gateway references
    payment_method = db.Column(db.String(32), nullable=True)
    gateway_order_id = db.Column(db.String(64), nullable=True)
    gateway_payment_id = db.Column(db.String(64), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Carrier references
    carrier_order_id = db.Column(db.String(64), nullable=True)
    shipment_id = db.Column(db.String(64), nullable=True)
    tracking_number = db.Column(db.String(64), nullable=True)
    courier_name = db.Column(db.String(100), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Cancellation and refund
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)
    refund_status = db.Column(db.String(16), nullable=False, default="none")
    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)
    refund_id = db.Column(db.String(64), nullable=True)

    # Return sub-flow (after delivery)
    return_requested = db.Column(db.Boolean, nullable=False, default=False)
    return_status = db.Column(db.String(20), nullable=False, default="none")
    return_reason = db.Column(db.String(255), nullable=True)
    return_awb = db.Column(db.String(64), nullable=True)
    return_courier = db.Column(db.String(100), nullable=True)
    return_pickup_scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )
    user = db.relationship("User", foreign_keys=[user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status} payment={self.payment_status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "order_number": self.order_number,
            "status": self.status,
            "payment_status": self.payment_status,
            "shipping_status": self.shipping_status,
            "subtotal": money_str(self.subtotal),
            "tax_amount": money_str(self.tax_amount),
            "shipping_amount": money_str(self.shipping_amount),
            "discount_amount": money_str(self.discount_amount),
            "total_amount": money_str(self.total_amount),
            "currency": self.currency,
            "coupon_id": self.coupon_id,
            "coupon_code": self.coupon_code,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "payment_method": self.payment_method,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "paid_at": to_utc_z(self.paid_at),
            "carrier_order_id": self.carrier_order_id,
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "courier_name": self.courier_name,
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "refund_status": self.refund_status,
            "refund_amount": money_str(self.refund_amount),
            "refund_id": self.refund_id,
            "return_requested": self.return_requested,
            "return_status": self.return_status,
            "return_reason": self.return_reason,
            "return_awb": self.return_awb,
            "return_courier": self.return_courier,
            "return_pickup_scheduled_at": to_utc_z(self.return_pickup_scheduled_at),
            "return_completed_at": to_utc_z(self.return_completed_at),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    Line item captured at order creation.

    Name, SKU, and price are copied so the row stays meaningful after the
    product changes or is deleted (product_id then becomes NULL). Never mutated.
    """
    __tablename__ = "order_items"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_name = db.Column(db.String(255), nullable=False)
    product_sku = db.Column(db.String(64), nullable=True)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    total_price = db.Column(db.Numeric(10, 2), nullable=False)
    product_snapshot = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "unit_price": money_str(self.unit_price),
            "quantity": self.quantity,
            "total_price": money_str(self.total_price),
            "product_snapshot": self.product_snapshot,
        }
