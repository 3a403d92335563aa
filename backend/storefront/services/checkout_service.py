# Overview: Order lifecycle coordinator; checkout, payment confirmation, webhooks, and cancellation.

# backend/storefront/services/checkout_service.py
"""
Order Lifecycle Coordinator

================================================================================
SEQUENCE: cart -> order -> gateway order -> verified payment -> shipment -> mail
================================================================================

1. checkout_from_cart (one transaction)
   Locks each product, checks stock, prices lines at the cart's captured
   price, validates the coupon, inserts Order + OrderItem snapshots,
   decrements stock ('sale' history rows), and empties the cart.

2. create_payment_order
   Registers total (minor units) with the gateway, receipt = order_number.
   Gateway failure -> IntegrationError, nothing persisted.

3. confirm_payment (one transaction)
   Signature verified first (constant-time). Then, under the order row lock:
   payment_status=paid, status=confirmed, coupon redemption recorded. There
   is no committed state where the order is paid but not confirmed.

4. After commit, best-effort: carrier shipment, then confirmation email.
   Failures are logged and never reach the caller; operators reconcile
   orders that are paid with no carrier_order_id.

The webhook path (payment.captured) runs step 3-4 for the order identified by
its gateway order id, so a lost client callback still confirms the order.
Replays of an already-confirmed payment are accepted without side effects.
A capture that arrives after cancellation is recorded and refunded.

Cancellation is the reverse: one transaction restores stock, releases the
coupon, and marks the refund pending; the gateway refund, carrier
cancellation, and email then run best-effort.
"""

from __future__ import annotations

import json
from decimal import Decimal

from flask import current_app

from ..errors import (
    ConflictError,
    NotFoundError,
    PaymentSignatureError,
    ValidationError,
)
from ..extensions import db
from ..integrations import get_integrations
from ..models import Cart, Order, Product
from ..money import ZERO, quantize, to_decimal, to_minor_units
from . import abandonment_service, cart_service, coupon_service, inventory_service, order_service, shipping_service
from .concurrency import begin_write, best_effort, lock_for_update, run_with_retry
from .order_service import (
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_REFUNDED,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_DELIVERED,
    STATUS_PENDING,
    OrderLine,
)


ADDRESS_REQUIRED_FIELDS = ("first_name", "last_name", "address_line_1", "city", "state", "postal_code", "country")

WEBHOOK_PAYMENT_CAPTURED = "payment.captured"
WEBHOOK_PAYMENT_FAILED = "payment.failed"

UNCANCELLABLE_SHIPPING = {"shipped", "in_transit", "delivered"}


# =============================================================================
# PRICING
# =============================================================================

def _config_decimal(key: str, default: str) -> Decimal:
    return to_decimal(current_app.config.get(key, default), key)


def calculate_totals(subtotal: Decimal, discount: Decimal) -> dict:
    """
    tax      = (subtotal - discount) * TAX_RATE
    shipping = 0 when subtotal > FREE_SHIPPING_THRESHOLD, else FLAT_SHIPPING_FEE
    total    = subtotal - discount + tax + shipping
    """
    taxable = max(subtotal - discount, ZERO)
    tax = quantize(taxable * _config_decimal("TAX_RATE", "0.18"))
    if subtotal > _config_decimal("FREE_SHIPPING_THRESHOLD", "999"):
        shipping = ZERO
    else:
        shipping = quantize(_config_decimal("FLAT_SHIPPING_FEE", "99"))
    return {
        "subtotal": quantize(subtotal),
        "discount_amount": quantize(discount),
        "tax_amount": tax,
        "shipping_amount": shipping,
        "total_amount": quantize(taxable + tax + shipping),
    }


def _validate_address(address, label: str) -> dict:
    if not isinstance(address, dict):
        raise ValidationError(f"{label} is required")
    missing = [f for f in ADDRESS_REQUIRED_FIELDS if not str(address.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"{label} missing fields: {', '.join(missing)}")
    # JSON round-trip keeps only serializable values in the snapshot
    return json.loads(json.dumps(address))


# =============================================================================
# CHECKOUT
# =============================================================================

def checkout_from_cart(
    user_id: str,
    *,
    shipping_address: dict,
    billing_address: dict | None = None,
    coupon_code: str | None = None,
    notes: str | None = None,
    payment_method: str = "razorpay",
) -> Order:
    shipping = _validate_address(shipping_address, "shipping_address")
    billing = _validate_address(billing_address, "billing_address") if billing_address else shipping

    def _op():
        begin_write()
        cart = lock_for_update(db.session.query(Cart).filter_by(user_id=user_id)).first()
        if cart is None or not cart.items:
            raise ValidationError("Cart is empty")

        lines: list[OrderLine] = []
        for item in sorted(cart.items, key=lambda i: i.product_id):
            product = lock_for_update(db.session.query(Product).filter_by(id=item.product_id)).first()
            if product is None or not product.is_active:
                raise ConflictError("A product in your cart is no longer available")
            if product.stock_quantity < item.quantity:
                raise ConflictError(
                    f"Insufficient stock for {product.name}",
                    details={"product_id": product.id, "available": product.stock_quantity},
                )
            lines.append(OrderLine(product=product, quantity=item.quantity, unit_price=item.price_at_time))

        subtotal = sum((line.total_price for line in lines), ZERO)

        coupon = None
        discount = ZERO
        if coupon_code:
            result = coupon_service.validate_coupon(coupon_code, user_id, subtotal, include_open_orders=True)
            if not result.valid:
                raise ConflictError(f"Coupon error: {result.message}")
            coupon = result.coupon
            discount = result.discount_amount

        totals = calculate_totals(subtotal, discount)
        order = order_service.create_order_record(
            user_id=user_id,
            lines=lines,
            shipping_address=shipping,
            billing_address=billing,
            coupon=coupon,
            payment_method=payment_method,
            notes=notes,
            **totals,
        )

        updates = [
            inventory_service.apply_stock_change(
                line.product,
                -line.quantity,
                inventory_service.CHANGE_SALE,
                notes=f"Sold in order {order.order_number}",
                user_id=user_id,
                order_id=order.id,
            )
            for line in lines
        ]

        cart_service.empty_cart(cart)
        abandonment_service.mark_cart_recovered(user_id)
        db.session.commit()
        return order, updates

    order, updates = run_with_retry(_op)
    current_app.logger.info("Order %s created for user %s", order.order_number, user_id)
    inventory_service.notify_low_stock(updates)
    return order


# =============================================================================
# PAYMENT
# =============================================================================

def _payment_order_info(order: Order, gateway_order_id: str, amount: int, currency: str) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "gateway_order_id": gateway_order_id,
        "amount": amount,
        "currency": currency,
        "key_id": current_app.config.get("PAYMENT_KEY_ID"),
    }


def create_payment_order(order_id: str, user_id: str) -> dict:
    """
    Register the order with the gateway.

    An unpaid order keeps its first gateway order, so a payment completed in
    an earlier checkout window still verifies against the stored id.
    """
    order = order_service.get_order(order_id, user_id=user_id)
    if order.payment_status == PAYMENT_PAID:
        raise ConflictError("Order already paid")
    if order.status == STATUS_CANCELLED:
        raise ConflictError("Order has been cancelled")
    if order.gateway_order_id:
        return _payment_order_info(
            order, order.gateway_order_id, to_minor_units(order.total_amount), order.currency
        )

    gateway = get_integrations().payments
    gateway_order = gateway.create_order(
        to_minor_units(order.total_amount),
        order.currency,
        order.order_number,
        {"order_id": order.id, "user_id": user_id},
    )

    def _op():
        begin_write()
        locked = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if locked.payment_status == PAYMENT_PAID:
            raise ConflictError("Order already paid")
        if locked.gateway_order_id:
            # A concurrent call registered first; keep its gateway order
            db.session.rollback()
            return locked, False
        locked.gateway_order_id = gateway_order.gateway_order_id
        db.session.commit()
        return locked, True

    order, stored = run_with_retry(_op)
    if not stored:
        return _payment_order_info(
            order, order.gateway_order_id, to_minor_units(order.total_amount), order.currency
        )
    return _payment_order_info(order, gateway_order.gateway_order_id, gateway_order.amount, gateway_order.currency)


# Outcomes of _confirm_paid_order
CONFIRMED = "confirmed"
ALREADY_CONFIRMED = "already_confirmed"
CAPTURED_AFTER_CANCEL = "captured_after_cancel"


def _confirm_paid_order(order_id: str, gateway_order_id: str, gateway_payment_id: str) -> tuple[Order, str]:
    """
    Mark paid + confirmed + redeem coupon in one transaction.

    Returns (order, outcome). A replay with the same payment id is
    ALREADY_CONFIRMED; a different payment id against a paid order is a
    conflict. A capture that lands on a cancelled order is still recorded
    (paid, refund pending) and reported as CAPTURED_AFTER_CANCEL so the
    caller can refund it.
    """
    def _op():
        begin_write()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError("Order not found")
        if order.gateway_order_id != gateway_order_id:
            raise ConflictError("Order ID mismatch")
        if order.payment_status in (PAYMENT_PAID, PAYMENT_REFUNDED):
            if order.gateway_payment_id == gateway_payment_id:
                db.session.rollback()
                return order, ALREADY_CONFIRMED
            raise ConflictError("Order already paid")

        order_service.transition_payment(order, PAYMENT_PAID, gateway_payment_id=gateway_payment_id)
        if order.status == STATUS_CANCELLED:
            order.refund_status = "pending"
            db.session.commit()
            return order, CAPTURED_AFTER_CANCEL

        if order.status == STATUS_PENDING:
            order_service.transition_status(order, STATUS_CONFIRMED)
        coupon_service.redeem_for_order(order)
        db.session.commit()
        return order, CONFIRMED

    return run_with_retry(_op)


def _refund_late_capture(order: Order) -> None:
    current_app.logger.warning(
        "Payment %s captured after order %s was cancelled; refunding",
        order.gateway_payment_id, order.order_number,
    )
    best_effort(f"refund for {order.order_number}", order_service.refund_order_payment, order.id)


def _after_payment_confirmed(order_id: str) -> None:
    """Post-commit fulfilment. Each step is independent and best-effort."""
    best_effort(f"shipment for order {order_id}", shipping_service.create_shipment_for_order, order_id)

    order = order_service.get_order(order_id)
    if order.user is not None:
        best_effort(
            f"confirmation email for {order.order_number}",
            get_integrations().notifier.send_order_confirmation,
            order,
            order.user,
        )


def verify_payment(
    user_id: str,
    order_id: str,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> Order:
    if not all([order_id, gateway_order_id, gateway_payment_id, signature]):
        raise ValidationError("Missing payment verification fields")

    gateway = get_integrations().payments
    if not gateway.verify_payment_signature(gateway_order_id, gateway_payment_id, signature):
        current_app.logger.warning("Invalid payment signature for order %s", order_id)
        raise PaymentSignatureError()

    # Ownership check before any mutation
    order_service.get_order(order_id, user_id=user_id)

    order, outcome = _confirm_paid_order(order_id, gateway_order_id, gateway_payment_id)
    if outcome == CAPTURED_AFTER_CANCEL:
        _refund_late_capture(order)
        raise ConflictError("Order has been cancelled; the payment will be refunded")
    if outcome == CONFIRMED:
        current_app.logger.info("Payment %s confirmed order %s", gateway_payment_id, order.order_number)
        _after_payment_confirmed(order_id)
    return order_service.get_order(order_id)


def handle_webhook(raw_body: bytes, signature: str | None) -> dict:
    """
    Verify and dispatch a gateway webhook.

    payment.captured confirms the order exactly as verify_payment does;
    payment.failed marks payment_status=failed unless already paid. A capture
    on a cancelled order is recorded and refunded. Unknown events, unknown
    orders, and captures without a payment id are acknowledged unhandled so
    the gateway stops retrying.
    """
    gateway = get_integrations().payments
    if not gateway.verify_webhook_signature(raw_body, signature):
        raise PaymentSignatureError("Invalid webhook signature")

    try:
        event = json.loads(raw_body or b"{}")
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")

    event_type = event.get("event")
    payment = (((event.get("payload") or {}).get("payment") or {}).get("entity")) or {}
    gateway_order_id = payment.get("order_id")
    gateway_payment_id = payment.get("id")

    if event_type not in (WEBHOOK_PAYMENT_CAPTURED, WEBHOOK_PAYMENT_FAILED):
        current_app.logger.info("Ignoring webhook event %s", event_type)
        return {"event": event_type, "handled": False}

    order = None
    if gateway_order_id:
        order = db.session.query(Order).filter_by(gateway_order_id=gateway_order_id).first()
    if order is None:
        current_app.logger.warning("Webhook %s for unknown gateway order %s", event_type, gateway_order_id)
        return {"event": event_type, "handled": False}

    if event_type == WEBHOOK_PAYMENT_CAPTURED:
        if not gateway_payment_id:
            current_app.logger.warning("Captured webhook for %s carries no payment id", order.order_number)
            return {"event": event_type, "handled": False, "order_id": order.id}
        order, outcome = _confirm_paid_order(order.id, gateway_order_id, gateway_payment_id)
        if outcome == CAPTURED_AFTER_CANCEL:
            _refund_late_capture(order)
            return {"event": event_type, "handled": True, "order_id": order.id, "confirmed": False, "refunded": True}
        if outcome == CONFIRMED:
            current_app.logger.info("Webhook confirmed order %s", order.order_number)
            _after_payment_confirmed(order.id)
        return {"event": event_type, "handled": True, "order_id": order.id, "confirmed": outcome == CONFIRMED}

    if order.payment_status not in (PAYMENT_PAID, PAYMENT_REFUNDED):
        order_service.update_payment_status(order.id, PAYMENT_FAILED)
    current_app.logger.info(
        "Payment failed for order %s: %s", order.order_number, payment.get("error_description")
    )
    return {"event": event_type, "handled": True, "order_id": order.id}


def fetch_payment(payment_id: str) -> dict:
    if not payment_id:
        raise ValidationError("payment_id is required")
    return get_integrations().payments.fetch_payment(payment_id).to_dict()


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order(order_id: str, user_id: str | None, reason: str, *, is_admin: bool = False) -> Order:
    """
    Cancel an order that has not shipped.

    Shipped orders go through order_service.request_return instead.
    """
    if not reason or not reason.strip():
        raise ValidationError("Cancellation reason is required")

    def _op():
        begin_write()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None or (not is_admin and order.user_id != user_id):
            raise NotFoundError("Order not found")
        if order.status == STATUS_CANCELLED:
            raise ConflictError("Order is already cancelled")
        if order.status == STATUS_DELIVERED:
            raise ConflictError("Delivered orders cannot be cancelled")
        if order.shipping_status in UNCANCELLABLE_SHIPPING:
            raise ConflictError("Order has already shipped; request a return instead")

        updates = order_service.transition_status(
            order, STATUS_CANCELLED, actor_user_id=user_id, reason=reason.strip()
        )
        was_paid = order.payment_status == PAYMENT_PAID
        if was_paid:
            order.refund_status = "pending"
        db.session.commit()
        return order, updates, was_paid

    order, updates, was_paid = run_with_retry(_op)
    current_app.logger.info("Order %s cancelled", order.order_number)
    inventory_service.notify_low_stock(updates)

    if was_paid:
        best_effort(f"refund for {order.order_number}", order_service.refund_order_payment, order_id)
    best_effort(f"carrier cancellation for {order.order_number}", shipping_service.cancel_carrier_shipment, order_id)

    order = order_service.get_order(order_id)
    if order.user is not None:
        best_effort(
            f"cancellation email for {order.order_number}",
            get_integrations().notifier.send_cancellation_notice,
            order,
            order.user,
        )
    return order
