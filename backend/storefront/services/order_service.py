# Overview: Order aggregate operations; status machines, numbering, listing, returns, and refunds.

"""
Order state machines

    status:          pending -> confirmed -> processing -> shipped -> delivered
                     pending|confirmed|processing -> cancelled
                     (confirmed -> shipped is allowed when processing is skipped)
    payment_status:  pending -> paid | failed;  failed -> paid;  paid -> refunded
    shipping_status: not_shipped -> processing -> shipped -> in_transit -> delivered
                     (forward only, steps may be skipped)
    return_status:   none -> requested -> pickup_scheduled -> in_transit -> completed
                     (forward only, steps may be skipped)

Setting an axis to its current value is a no-op. Any other edge not listed is
rejected with ConflictError; nothing moves backwards.

Coupling rules:
- Cancelling from pending/confirmed/processing restores every item's stock and
  releases the coupon redemption in the same transaction.
- shipping_status shipped/in_transit/delivered pulls status forward to
  shipped/delivered.
- A completed return restocks the items and queues a refund.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from flask import current_app
from sqlalchemy import func

from ..errors import ConflictError, NotFoundError, StorefrontError, ValidationError
from ..extensions import db
from ..integrations import get_integrations
from ..models import Order, OrderItem, Product
from ..money import ZERO, money_str, quantize, to_decimal, to_minor_units
from storefront.time_utils import utcnow
from . import coupon_service, inventory_service
from .concurrency import begin_write, best_effort, lock_for_update, run_with_retry


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PROCESSING = "processing"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = {
    STATUS_PENDING, STATUS_CONFIRMED, STATUS_PROCESSING,
    STATUS_SHIPPED, STATUS_DELIVERED, STATUS_CANCELLED,
}

ORDER_STATUS_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED, STATUS_CANCELLED},
    STATUS_CONFIRMED: {STATUS_PROCESSING, STATUS_SHIPPED, STATUS_CANCELLED},
    STATUS_PROCESSING: {STATUS_SHIPPED, STATUS_CANCELLED},
    STATUS_SHIPPED: {STATUS_DELIVERED},
    STATUS_DELIVERED: set(),
    STATUS_CANCELLED: set(),
}

# Stock is still held by the order in these states
RESTOCK_ON_CANCEL_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED, STATUS_PROCESSING}

# =============================================================================
# PAYMENT STATUS
# =============================================================================

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUS_TRANSITIONS = {
    PAYMENT_PENDING: {PAYMENT_PAID, PAYMENT_FAILED},
    PAYMENT_FAILED: {PAYMENT_PAID},
    PAYMENT_PAID: {PAYMENT_REFUNDED},
    PAYMENT_REFUNDED: set(),
}

# =============================================================================
# SHIPPING / RETURN / REFUND STATUS
# =============================================================================

SHIPPING_STATUSES = ["not_shipped", "processing", "shipped", "in_transit", "delivered"]
RETURN_STATUSES = ["none", "requested", "pickup_scheduled", "in_transit", "completed"]
REFUND_STATUSES = {"none", "pending", "partial", "completed", "failed"}

RETURNABLE_STATUSES = {STATUS_SHIPPED, STATUS_DELIVERED}

ORDER_NUMBER_ATTEMPTS = 5


class OrderSort(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    TOTAL_AMOUNT = "total_amount"
    ORDER_NUMBER = "order_number"
    STATUS = "status"


_SORT_COLUMNS = {
    OrderSort.CREATED_AT: Order.created_at,
    OrderSort.UPDATED_AT: Order.updated_at,
    OrderSort.TOTAL_AMOUNT: Order.total_amount,
    OrderSort.ORDER_NUMBER: Order.order_number,
    OrderSort.STATUS: Order.status,
}


@dataclass(frozen=True)
class OrderLine:
    """A priced line ready to be frozen into an OrderItem."""
    product: Product
    quantity: int
    unit_price: Decimal

    @property
    def total_price(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)


# =============================================================================
# TRANSITION RULES
# =============================================================================

def can_transition_status(from_status: str, to_status: str) -> bool:
    if from_status == to_status:
        return True
    return to_status in ORDER_STATUS_TRANSITIONS.get(from_status, set())


def can_transition_payment(from_status: str, to_status: str) -> bool:
    if from_status == to_status:
        return True
    return to_status in PAYMENT_STATUS_TRANSITIONS.get(from_status, set())


def _can_move_forward(chain: list[str], from_status: str, to_status: str) -> bool:
    return chain.index(to_status) >= chain.index(from_status)


# =============================================================================
# NUMBERING AND CREATION
# =============================================================================

def generate_order_number() -> str:
    """
    "ORD" + epoch milliseconds + 3 random digits.

    Not unique by construction; the orders.order_number unique constraint is
    the guarantee, and create_order_record re-draws on a clash it can see.
    """
    return f"ORD{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def _unused_order_number() -> str:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number()
        taken = db.session.query(Order.id).filter_by(order_number=candidate).first()
        if not taken:
            return candidate
    raise ConflictError("Could not allocate an order number, please retry")


def create_order_record(
    *,
    user_id: str | None,
    lines: list[OrderLine],
    subtotal: Decimal,
    discount_amount: Decimal,
    tax_amount: Decimal,
    shipping_amount: Decimal,
    total_amount: Decimal,
    shipping_address: dict,
    billing_address: dict | None = None,
    coupon=None,
    payment_method: str | None = None,
    notes: str | None = None,
) -> Order:
    """Insert the order and its item snapshots. Flushes, never commits."""
    if not lines:
        raise ValidationError("Order must contain at least one item")

    order = Order(
        user_id=user_id,
        order_number=_unused_order_number(),
        status=STATUS_PENDING,
        payment_status=PAYMENT_PENDING,
        shipping_status=SHIPPING_STATUSES[0],
        subtotal=quantize(subtotal),
        discount_amount=quantize(discount_amount),
        tax_amount=quantize(tax_amount),
        shipping_amount=quantize(shipping_amount),
        total_amount=quantize(total_amount),
        currency=current_app.config.get("CURRENCY", "INR"),
        coupon_id=coupon.id if coupon else None,
        coupon_code=coupon.code if coupon else None,
        shipping_address=shipping_address,
        billing_address=billing_address or shipping_address,
        payment_method=payment_method,
        notes=notes,
    )
    for position, line in enumerate(lines):
        order.items.append(OrderItem(
            position=position,
            product_id=line.product.id,
            product_name=line.product.name,
            product_sku=line.product.sku,
            unit_price=quantize(line.unit_price),
            quantity=line.quantity,
            total_price=line.total_price,
            product_snapshot=line.product.snapshot(),
        ))
    db.session.add(order)
    db.session.flush()
    return order


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: str, *, user_id: str | None = None) -> Order:
    """Fetch an order; when user_id is given, another user's order reads as missing."""
    order = db.session.get(Order, order_id)
    if order is None or (user_id is not None and order.user_id != user_id):
        raise NotFoundError("Order not found")
    return order


def get_order_by_number(order_number: str, *, user_id: str | None = None) -> Order:
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None or (user_id is not None and order.user_id != user_id):
        raise NotFoundError("Order not found")
    return order


def _get_order_for_update(order_id: str) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def order_sort_clause(sort_by: str | None, sort_order: str | None):
    """Map a client sort key onto a column; unknown keys fall back to created_at."""
    try:
        key = OrderSort(sort_by or OrderSort.CREATED_AT.value)
    except ValueError:
        key = OrderSort.CREATED_AT
    column = _SORT_COLUMNS[key]
    return column.asc() if (sort_order or "").lower() == "asc" else column.desc()


def list_orders(
    *,
    user_id: str | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    page: int = 1,
    limit: int = 10,
    sort_by: str | None = None,
    sort_order: str | None = None,
) -> tuple[list[Order], dict]:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > 100:
        raise ValidationError("limit must be between 1 and 100")

    query = db.session.query(Order)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)

    total = query.count()
    orders = (
        query.order_by(order_sort_clause(sort_by, sort_order), Order.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }
    return orders, pagination


# =============================================================================
# STATUS UPDATES (inner helpers flush only)
# =============================================================================

def transition_status(
    order: Order,
    new_status: str,
    *,
    actor_user_id: str | None = None,
    reason: str | None = None,
) -> list[inventory_service.StockUpdate]:
    """
    Move ``order`` to ``new_status`` inside the caller's transaction.

    Returns the stock updates made by a cancellation so the caller can send
    low-stock alerts after commit.
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown status: {new_status}")
    current = order.status
    if current == new_status:
        return []
    if not can_transition_status(current, new_status):
        raise ConflictError(f"Cannot change order status from {current} to {new_status}")

    updates: list[inventory_service.StockUpdate] = []
    if new_status == STATUS_CANCELLED:
        if current in RESTOCK_ON_CANCEL_STATUSES:
            updates = inventory_service.restore_order_stock(order, user_id=actor_user_id)
        coupon_service.release_redemption(order)
        order.cancelled_at = utcnow()
        if reason:
            order.cancellation_reason = reason
    order.status = new_status
    db.session.flush()
    return updates


def transition_payment(order: Order, new_status: str, *, gateway_payment_id: str | None = None) -> bool:
    """Returns False when the order was already in ``new_status``."""
    if new_status not in PAYMENT_STATUS_TRANSITIONS:
        raise ValidationError(f"Unknown payment status: {new_status}")
    current = order.payment_status
    if current == new_status:
        return False
    if not can_transition_payment(current, new_status):
        raise ConflictError(f"Cannot change payment status from {current} to {new_status}")

    order.payment_status = new_status
    if new_status == PAYMENT_PAID:
        order.paid_at = utcnow()
        if gateway_payment_id:
            order.gateway_payment_id = gateway_payment_id
    db.session.flush()
    return True


def transition_shipping(
    order: Order,
    new_status: str,
    *,
    tracking_number: str | None = None,
    courier_name: str | None = None,
) -> bool:
    if new_status not in SHIPPING_STATUSES:
        raise ValidationError(f"Unknown shipping status: {new_status}")
    if order.status == STATUS_CANCELLED:
        raise ConflictError("Cannot update shipping for a cancelled order")
    current = order.shipping_status
    if not _can_move_forward(SHIPPING_STATUSES, current, new_status):
        raise ConflictError(f"Cannot change shipping status from {current} to {new_status}")

    if tracking_number:
        order.tracking_number = tracking_number
    if courier_name:
        order.courier_name = courier_name
    if current == new_status:
        db.session.flush()
        return False

    now = utcnow()
    order.shipping_status = new_status
    if new_status in ("shipped", "in_transit", "delivered") and order.shipped_at is None:
        order.shipped_at = now
    if new_status in ("shipped", "in_transit") and order.status in (STATUS_CONFIRMED, STATUS_PROCESSING):
        order.status = STATUS_SHIPPED
    if new_status == "delivered":
        order.delivered_at = now
        if order.status in (STATUS_CONFIRMED, STATUS_PROCESSING, STATUS_SHIPPED):
            order.status = STATUS_DELIVERED
    db.session.flush()
    return True


# =============================================================================
# PUBLIC OPERATIONS (one transaction each)
# =============================================================================

def update_status(order_id: str, new_status: str, *, actor_user_id: str | None = None, reason: str | None = None) -> Order:
    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        updates = transition_status(order, new_status, actor_user_id=actor_user_id, reason=reason)
        db.session.commit()
        return order, updates

    order, updates = run_with_retry(_op)
    inventory_service.notify_low_stock(updates)
    return order


def update_payment_status(order_id: str, new_status: str, *, gateway_payment_id: str | None = None) -> Order:
    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        transition_payment(order, new_status, gateway_payment_id=gateway_payment_id)
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_shipping_status(
    order_id: str,
    new_status: str,
    *,
    tracking_number: str | None = None,
    courier_name: str | None = None,
) -> Order:
    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        changed = transition_shipping(order, new_status, tracking_number=tracking_number, courier_name=courier_name)
        db.session.commit()
        return order, changed

    order, changed = run_with_retry(_op)
    if changed and new_status == "shipped" and order.user is not None:
        best_effort(
            f"shipping notification for {order.order_number}",
            get_integrations().notifier.send_shipping_notification,
            order,
            order.user,
        )
    return order


def record_shipment(order_id: str, shipment) -> Order:
    """Persist carrier identifiers from a ShipmentResult and mark shipping as processing."""
    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        order.carrier_order_id = shipment.carrier_order_id
        order.shipment_id = shipment.shipment_id
        if shipment.tracking_number:
            order.tracking_number = shipment.tracking_number
        if shipment.courier_name:
            order.courier_name = shipment.courier_name
        if order.shipping_status == SHIPPING_STATUSES[0]:
            order.shipping_status = "processing"
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_refund_status(
    order_id: str,
    refund_status: str,
    *,
    refund_id: str | None = None,
    refund_amount=None,
) -> Order:
    if refund_status not in REFUND_STATUSES:
        raise ValidationError(f"Unknown refund status: {refund_status}")

    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        order.refund_status = refund_status
        if refund_id:
            order.refund_id = refund_id
        if refund_amount is not None:
            order.refund_amount = quantize(refund_amount)
        if refund_status == "completed" and order.payment_status == PAYMENT_PAID:
            order.payment_status = PAYMENT_REFUNDED
        db.session.commit()
        return order

    return run_with_retry(_op)


def refund_order_payment(order_id: str, amount=None) -> Order:
    """
    Refund a captured payment through the gateway.

    ``amount`` defaults to everything not yet refunded. Partial refunds add up
    in refund_amount; refund_status becomes 'partial' until the captured total
    is reached, then 'completed' (payment_status 'refunded'). A gateway decline
    is recorded as refund_status='failed' for operators to retry.
    """
    order = get_order(order_id)
    if order.payment_status != PAYMENT_PAID or not order.gateway_payment_id:
        if amount is None:
            return order
        raise ConflictError("Order has no captured payment to refund")
    if order.refund_status == "completed":
        if amount is None:
            return order
        raise ConflictError("Order already refunded")

    total = quantize(order.total_amount)
    already = quantize(order.refund_amount or ZERO)
    remaining = total - already
    refund = remaining if amount is None else to_decimal(amount, "amount")
    if not refund.is_finite():
        raise ValidationError("amount must be a number")
    refund = quantize(refund)
    if refund <= ZERO:
        raise ValidationError("Refund amount must be greater than zero")
    if refund > remaining:
        raise ValidationError(
            "Refund amount exceeds the refundable balance",
            details={"refundable": money_str(remaining)},
        )

    result = get_integrations().payments.refund_payment(
        order.gateway_payment_id,
        to_minor_units(refund),
        {"order_number": order.order_number, "reason": order.cancellation_reason or order.return_reason or ""},
    )
    if result.success:
        refunded = already + refund
        return update_refund_status(
            order_id,
            "completed" if refunded >= total else "partial",
            refund_id=result.refund_id,
            refund_amount=refunded,
        )
    current_app.logger.warning("Refund declined for %s: %s", order.order_number, result.failure_reason)
    return update_refund_status(order_id, "failed")


# =============================================================================
# RETURNS
# =============================================================================

def request_return(order_id: str, user_id: str, reason: str) -> Order:
    if not reason or not reason.strip():
        raise ValidationError("Return reason is required")

    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        if order.user_id != user_id:
            raise NotFoundError("Order not found")
        if order.status not in RETURNABLE_STATUSES:
            raise ConflictError("Only shipped or delivered orders can be returned")
        if order.return_status != RETURN_STATUSES[0]:
            raise ConflictError("A return has already been requested for this order")
        order.return_requested = True
        order.return_status = "requested"
        order.return_reason = reason.strip()
        db.session.commit()
        return order

    order = run_with_retry(_op)

    from . import shipping_service
    best_effort(f"return pickup for {order.order_number}", shipping_service.schedule_return_pickup, order.id)
    return get_order(order_id)


def update_return_status(
    order_id: str,
    new_status: str,
    *,
    return_awb: str | None = None,
    return_courier: str | None = None,
) -> Order:
    if new_status not in RETURN_STATUSES:
        raise ValidationError(f"Unknown return status: {new_status}")

    def _op():
        begin_write()
        order = _get_order_for_update(order_id)
        current = order.return_status
        if current == RETURN_STATUSES[0] and new_status != current:
            if new_status != "requested":
                raise ConflictError("No return has been requested for this order")
            if order.status not in RETURNABLE_STATUSES:
                raise ConflictError("Only shipped or delivered orders can be returned")
        if not _can_move_forward(RETURN_STATUSES, current, new_status):
            raise ConflictError(f"Cannot change return status from {current} to {new_status}")

        if return_awb:
            order.return_awb = return_awb
        if return_courier:
            order.return_courier = return_courier

        updates: list[inventory_service.StockUpdate] = []
        completed_now = False
        if current != new_status:
            now = utcnow()
            order.return_status = new_status
            order.return_requested = True
            if new_status == "pickup_scheduled":
                order.return_pickup_scheduled_at = now
            if new_status == "completed":
                order.return_completed_at = now
                updates = inventory_service.restore_order_stock(
                    order, notes=f"Stock restored from returned order {order.order_number}"
                )
                if order.payment_status == PAYMENT_PAID and order.refund_status == "none":
                    order.refund_status = "pending"
                completed_now = True
        db.session.commit()
        return order, updates, completed_now

    order, updates, completed_now = run_with_retry(_op)
    inventory_service.notify_low_stock(updates)
    if completed_now:
        best_effort(f"refund for returned order {order.order_number}", refund_order_payment, order.id)
        order = get_order(order_id)
    return order


# =============================================================================
# ADMIN
# =============================================================================

def bulk_update_orders(
    order_ids: list[str],
    *,
    status: str | None = None,
    payment_status: str | None = None,
    shipping_status: str | None = None,
    actor_user_id: str | None = None,
) -> dict:
    """
    Apply the same update to many orders, each in its own transaction.

    One order failing (illegal transition, missing) does not stop the rest.
    """
    if not order_ids:
        raise ValidationError("order_ids must be a non-empty list")
    if not any([status, payment_status, shipping_status]):
        raise ValidationError("Provide status, payment_status, or shipping_status")

    updated: list[str] = []
    failed: list[dict] = []
    for order_id in order_ids:
        try:
            if status:
                update_status(order_id, status, actor_user_id=actor_user_id)
            if payment_status:
                update_payment_status(order_id, payment_status)
            if shipping_status:
                update_shipping_status(order_id, shipping_status)
            updated.append(order_id)
        except StorefrontError as exc:
            failed.append({"order_id": order_id, "error": exc.message})
    return {"updated": updated, "failed": failed}


def get_order_statistics() -> dict:
    by_status = dict(
        db.session.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    )
    by_payment = dict(
        db.session.query(Order.payment_status, func.count(Order.id)).group_by(Order.payment_status).all()
    )
    revenue_row = db.session.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total_amount), 0),
    ).filter(Order.payment_status == PAYMENT_PAID).one()

    paid_count = int(revenue_row[0] or 0)
    revenue = quantize(to_decimal(revenue_row[1] or 0))
    average = quantize(revenue / paid_count) if paid_count else quantize(0)
    return {
        "total_orders": sum(by_status.values()),
        "by_status": {s: int(by_status.get(s, 0)) for s in sorted(ORDER_STATUSES)},
        "by_payment_status": {s: int(by_payment.get(s, 0)) for s in sorted(PAYMENT_STATUS_TRANSITIONS)},
        "paid_orders": paid_count,
        "total_revenue": money_str(revenue),
        "average_order_value": money_str(average),
    }
