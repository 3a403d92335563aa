"""
Checkout, payment confirmation, webhook, and cancellation flows against the fake integrations.
"""

import json
from decimal import Decimal

import pytest

from storefront.errors import (
    ConflictError,
    IntegrationError,
    NotFoundError,
    PaymentSignatureError,
    ValidationError,
)
from storefront.extensions import db
from storefront.models import Cart, Coupon, CouponUsage, InventoryHistoryEntry, Order, Product
from storefront.services import cart_service, checkout_service, inventory_service, order_service


def _reload(order_id):
    db.session.expire_all()
    return db.session.get(Order, order_id)


@pytest.fixture
def widget(make_product):
    return make_product(name="Widget", price="500.00", stock=10)


@pytest.fixture
def placed_order(user, widget, fill_cart, address):
    fill_cart(user, (widget, 3))
    return checkout_service.checkout_from_cart(user.id, shipping_address=address)


def _pay(user, order, integrations):
    info = checkout_service.create_payment_order(order.id, user.id)
    payment_id, signature = integrations.payments.capture(info["gateway_order_id"], info["amount"])
    checkout_service.verify_payment(user.id, order.id, info["gateway_order_id"], payment_id, signature)
    return info, payment_id


def _webhook(integrations, event, gateway_order_id, payment_id="pay_webhook_1"):
    body = json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "order_id": gateway_order_id,
            "error_description": "Card declined",
        }}},
    }).encode("utf-8")
    return body, integrations.payments.sign_webhook(body)


# =============================================================================
# PRICING
# =============================================================================

def test_totals_with_discount_and_free_shipping(app):
    totals = checkout_service.calculate_totals(Decimal("1500.00"), Decimal("200.00"))
    assert totals == {
        "subtotal": Decimal("1500.00"),
        "discount_amount": Decimal("200.00"),
        "tax_amount": Decimal("234.00"),
        "shipping_amount": Decimal("0"),
        "total_amount": Decimal("1534.00"),
    }


def test_flat_shipping_at_or_below_threshold(app):
    totals = checkout_service.calculate_totals(Decimal("999.00"), Decimal("0"))
    assert totals["shipping_amount"] == Decimal("99.00")
    assert totals["tax_amount"] == Decimal("179.82")
    assert totals["total_amount"] == Decimal("1277.82")


# =============================================================================
# CHECKOUT
# =============================================================================

def test_checkout_with_coupon(user, widget, fill_cart, address, save20):
    fill_cart(user, (widget, 3))

    order = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="save20")

    order = _reload(order.id)
    assert order.subtotal == Decimal("1500.00")
    assert order.discount_amount == Decimal("200.00")
    assert order.tax_amount == Decimal("234.00")
    assert order.shipping_amount == Decimal("0.00")
    assert order.total_amount == Decimal("1534.00")
    assert order.coupon_code == "SAVE20"
    assert order.billing_address == order.shipping_address
    assert order.status == "pending"
    assert order.payment_status == "pending"

    assert db.session.get(Product, widget.id).stock_quantity == 7
    [sale] = db.session.query(InventoryHistoryEntry).filter_by(order_id=order.id).all()
    assert sale.change_type == "sale"
    assert sale.quantity_change == -3
    assert sale.notes == f"Sold in order {order.order_number}"

    assert db.session.query(Cart).filter_by(user_id=user.id).one().items == []
    # Redemption is recorded when payment is confirmed, not at checkout
    assert db.session.query(CouponUsage).count() == 0


def test_checkout_uses_price_captured_in_cart(user, make_product, fill_cart, address):
    product = make_product(price="600.00", discount_price="450.00")
    fill_cart(user, (product, 2))
    product.price = Decimal("700.00")
    product.discount_price = None
    db.session.commit()

    order = checkout_service.checkout_from_cart(user.id, shipping_address=address)

    assert _reload(order.id).subtotal == Decimal("900.00")


def test_empty_cart_cannot_check_out(user, address):
    with pytest.raises(ValidationError, match="Cart is empty"):
        checkout_service.checkout_from_cart(user.id, shipping_address=address)


def test_insufficient_stock_leaves_everything_untouched(user, widget, fill_cart, address):
    fill_cart(user, (widget, 3))
    inventory_service.update_stock(widget.id, -8, "adjustment")

    with pytest.raises(ConflictError, match="Insufficient stock for Widget"):
        checkout_service.checkout_from_cart(user.id, shipping_address=address)

    db.session.expire_all()
    assert db.session.query(Order).count() == 0
    assert db.session.get(Product, widget.id).stock_quantity == 2
    assert cart_service.get_cart_summary(cart_service.find_cart(user_id=user.id))["item_count"] == 3


def test_deactivated_product_blocks_checkout(user, widget, fill_cart, address):
    fill_cart(user, (widget, 1))
    widget.is_active = False
    db.session.commit()

    with pytest.raises(ConflictError, match="no longer available"):
        checkout_service.checkout_from_cart(user.id, shipping_address=address)


def test_invalid_coupon_blocks_checkout(user, widget, fill_cart, address):
    fill_cart(user, (widget, 1))

    with pytest.raises(ConflictError, match="Coupon error: Invalid coupon code"):
        checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="NOPE")

    assert db.session.query(Order).count() == 0


def test_unpaid_order_holding_coupon_blocks_second_checkout(user, widget, fill_cart, address, save20):
    fill_cart(user, (widget, 3))
    checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")
    fill_cart(user, (widget, 3))

    with pytest.raises(ConflictError, match=r"usage limit for this coupon \(1 uses per user\)"):
        checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")

    assert db.session.query(Order).count() == 1


def test_cancelled_order_frees_its_coupon_hold(user, widget, fill_cart, address, save20):
    fill_cart(user, (widget, 3))
    first = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")
    checkout_service.cancel_order(first.id, user.id, "Changed mind")
    fill_cart(user, (widget, 3))

    second = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")

    assert _reload(second.id).discount_amount == Decimal("200.00")


def test_payment_recounts_redemptions_under_limit(user, widget, fill_cart, address, save20, integrations):
    coupon_id = save20.id
    fill_cart(user, (widget, 3))
    first = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")
    # Limit raised while the first order is open, then lowered again
    db.session.get(Coupon, coupon_id).usage_limit = 2
    db.session.commit()
    fill_cart(user, (widget, 3))
    second = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")
    db.session.get(Coupon, coupon_id).usage_limit = 1
    db.session.commit()

    _pay(user, first, integrations)
    _pay(user, second, integrations)

    db.session.expire_all()
    [usage] = db.session.query(CouponUsage).all()
    assert usage.order_id == first.id
    assert db.session.get(Coupon, coupon_id).used_count == 1
    assert _reload(second.id).payment_status == "paid"
    assert _reload(second.id).status == "confirmed"


def test_address_is_validated(user, widget, fill_cart, address):
    fill_cart(user, (widget, 1))
    del address["city"]

    with pytest.raises(ValidationError, match="shipping_address missing fields: city"):
        checkout_service.checkout_from_cart(user.id, shipping_address=address)
    with pytest.raises(ValidationError, match="shipping_address is required"):
        checkout_service.checkout_from_cart(user.id, shipping_address=None)


def test_checkout_low_stock_alert(user, make_product, fill_cart, address, integrations):
    product = make_product(name="Last Few", stock=6)
    fill_cart(user, (product, 2))

    checkout_service.checkout_from_cart(user.id, shipping_address=address)

    assert integrations.notifier.kinds() == ["low_stock_alert"]


# =============================================================================
# PAYMENT
# =============================================================================

def test_create_payment_order(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)

    order = _reload(placed_order.id)
    assert info["gateway_order_id"] == order.gateway_order_id
    assert info["amount"] == 177000
    assert info["currency"] == "INR"
    assert info["key_id"] == "rzp_test_key"
    [call] = integrations.payments.calls
    assert call["receipt"] == order.order_number
    assert call["notes"] == {"order_id": order.id, "user_id": user.id}


def test_create_payment_order_gateway_failure(user, placed_order, integrations):
    integrations.payments.fail_on.add("create_order")

    with pytest.raises(IntegrationError):
        checkout_service.create_payment_order(placed_order.id, user.id)

    assert _reload(placed_order.id).gateway_order_id is None


def test_create_payment_order_for_someone_else(other_user, placed_order):
    with pytest.raises(NotFoundError):
        checkout_service.create_payment_order(placed_order.id, other_user.id)


def test_verified_payment_confirms_ships_and_mails(user, placed_order, integrations):
    _, payment_id = _pay(user, placed_order, integrations)

    order = _reload(placed_order.id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.gateway_payment_id == payment_id
    assert order.carrier_order_id.startswith("SR")
    assert order.tracking_number.startswith("AWB")
    assert order.shipping_status == "processing"
    assert integrations.notifier.kinds() == ["order_confirmation"]

    [shipment] = integrations.shipping.calls
    assert shipment["payload"]["order_id"] == order.order_number
    assert shipment["payload"]["shipping_city"] == "Bengaluru"


def test_payment_records_coupon_redemption(user, widget, fill_cart, address, save20, integrations):
    fill_cart(user, (widget, 3))
    order = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")

    _pay(user, order, integrations)

    db.session.expire_all()
    [usage] = db.session.query(CouponUsage).all()
    assert usage.order_id == order.id
    assert usage.discount_amount == Decimal("200.00")
    assert db.session.get(Coupon, save20.id).used_count == 1


def test_tampered_signature_is_rejected(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    payment_id, signature = integrations.payments.capture(info["gateway_order_id"], info["amount"])

    with pytest.raises(PaymentSignatureError, match="Invalid payment signature"):
        checkout_service.verify_payment(
            user.id, placed_order.id, info["gateway_order_id"], payment_id, "0" * len(signature)
        )

    order = _reload(placed_order.id)
    assert order.payment_status == "pending"
    assert order.status == "pending"


def test_missing_verification_fields(user, placed_order):
    with pytest.raises(ValidationError, match="Missing payment verification fields"):
        checkout_service.verify_payment(user.id, placed_order.id, "order_x", "", "sig")


def test_signature_for_another_gateway_order_is_a_mismatch(user, placed_order, integrations):
    checkout_service.create_payment_order(placed_order.id, user.id)
    signature = integrations.payments.sign_payment("order_other", "pay_1")

    with pytest.raises(ConflictError, match="Order ID mismatch"):
        checkout_service.verify_payment(user.id, placed_order.id, "order_other", "pay_1", signature)


def test_replayed_verification_is_a_no_op(user, placed_order, integrations):
    info, payment_id = _pay(user, placed_order, integrations)
    signature = integrations.payments.sign_payment(info["gateway_order_id"], payment_id)

    order = checkout_service.verify_payment(
        user.id, placed_order.id, info["gateway_order_id"], payment_id, signature
    )

    assert order.payment_status == "paid"
    assert len(integrations.shipping.calls) == 1
    assert integrations.notifier.kinds() == ["order_confirmation"]


def test_second_payment_for_paid_order_is_a_conflict(user, placed_order, integrations):
    info, _ = _pay(user, placed_order, integrations)
    other_payment, signature = integrations.payments.capture(info["gateway_order_id"], info["amount"])

    with pytest.raises(ConflictError, match="Order already paid"):
        checkout_service.verify_payment(
            user.id, placed_order.id, info["gateway_order_id"], other_payment, signature
        )
    with pytest.raises(ConflictError, match="Order already paid"):
        checkout_service.create_payment_order(placed_order.id, user.id)


def test_create_payment_order_reuses_open_gateway_order(user, placed_order, integrations):
    first = checkout_service.create_payment_order(placed_order.id, user.id)
    payment_id, signature = integrations.payments.capture(first["gateway_order_id"], first["amount"])

    second = checkout_service.create_payment_order(placed_order.id, user.id)

    assert second == first
    assert [c["method"] for c in integrations.payments.calls] == ["create_order"]

    # Payment made against the first window still verifies
    checkout_service.verify_payment(user.id, placed_order.id, first["gateway_order_id"], payment_id, signature)
    assert _reload(placed_order.id).payment_status == "paid"


def test_verification_after_cancellation_refunds_the_capture(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    checkout_service.cancel_order(placed_order.id, user.id, "Changed mind")
    payment_id, signature = integrations.payments.capture(info["gateway_order_id"], info["amount"])

    with pytest.raises(ConflictError, match="the payment will be refunded"):
        checkout_service.verify_payment(user.id, placed_order.id, info["gateway_order_id"], payment_id, signature)

    order = _reload(placed_order.id)
    assert order.status == "cancelled"
    assert order.gateway_payment_id == payment_id
    assert order.payment_status == "refunded"
    assert order.refund_status == "completed"
    [refund] = [c for c in integrations.payments.calls if c["method"] == "refund_payment"]
    assert refund == {"method": "refund_payment", "payment_id": payment_id, "amount": 177000}


def test_carrier_failure_does_not_fail_payment(user, placed_order, integrations):
    integrations.shipping.fail_on.add("create_shipment_order")

    _pay(user, placed_order, integrations)

    order = _reload(placed_order.id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.carrier_order_id is None
    assert integrations.notifier.kinds() == ["order_confirmation"]


def test_email_failure_does_not_fail_payment(user, placed_order, integrations):
    integrations.notifier.fail = True

    _pay(user, placed_order, integrations)

    order = _reload(placed_order.id)
    assert order.status == "confirmed"
    assert order.carrier_order_id is not None


def test_fetch_payment(user, placed_order, integrations):
    _, payment_id = _pay(user, placed_order, integrations)

    record = checkout_service.fetch_payment(payment_id)
    assert record["status"] == "captured"
    assert record["amount"] == 177000

    with pytest.raises(IntegrationError):
        checkout_service.fetch_payment("pay_missing")


# =============================================================================
# WEBHOOKS
# =============================================================================

def test_webhook_capture_confirms_order(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    body, signature = _webhook(integrations, "payment.captured", info["gateway_order_id"])

    result = checkout_service.handle_webhook(body, signature)

    assert result == {
        "event": "payment.captured",
        "handled": True,
        "order_id": placed_order.id,
        "confirmed": True,
    }
    order = _reload(placed_order.id)
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.gateway_payment_id == "pay_webhook_1"

    # Gateway retries the same delivery
    assert checkout_service.handle_webhook(body, signature)["confirmed"] is False
    assert integrations.notifier.kinds() == ["order_confirmation"]


def test_webhook_after_client_verification_is_a_no_op(user, placed_order, integrations):
    info, payment_id = _pay(user, placed_order, integrations)
    body, signature = _webhook(integrations, "payment.captured", info["gateway_order_id"], payment_id)

    assert checkout_service.handle_webhook(body, signature)["confirmed"] is False
    assert len(integrations.shipping.calls) == 1


def test_capture_on_cancelled_order_is_recorded_and_refunded(user, widget, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    checkout_service.cancel_order(placed_order.id, user.id, "Changed mind")
    payment_id, _ = integrations.payments.capture(info["gateway_order_id"], info["amount"])
    body, signature = _webhook(integrations, "payment.captured", info["gateway_order_id"], payment_id)

    result = checkout_service.handle_webhook(body, signature)

    assert result == {
        "event": "payment.captured",
        "handled": True,
        "order_id": placed_order.id,
        "confirmed": False,
        "refunded": True,
    }
    order = _reload(placed_order.id)
    assert order.status == "cancelled"
    assert order.gateway_payment_id == payment_id
    assert order.payment_status == "refunded"
    assert order.refund_status == "completed"
    assert order.refund_amount == Decimal("1770.00")
    assert db.session.get(Product, widget.id).stock_quantity == 10
    assert not [c for c in integrations.shipping.calls if c["method"] == "create_shipment_order"]

    # Redelivery does not refund twice
    assert checkout_service.handle_webhook(body, signature)["confirmed"] is False
    refunds = [c for c in integrations.payments.calls if c["method"] == "refund_payment"]
    assert [r["payment_id"] for r in refunds] == [payment_id]


def test_captured_webhook_without_payment_id_is_ignored(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"order_id": info["gateway_order_id"]}}},
    }).encode("utf-8")

    result = checkout_service.handle_webhook(body, integrations.payments.sign_webhook(body))

    assert result == {"event": "payment.captured", "handled": False, "order_id": placed_order.id}
    assert _reload(placed_order.id).payment_status == "pending"

    # The customer's signed confirmation still completes the payment
    payment_id, signature = integrations.payments.capture(info["gateway_order_id"], info["amount"])
    checkout_service.verify_payment(user.id, placed_order.id, info["gateway_order_id"], payment_id, signature)
    order = _reload(placed_order.id)
    assert order.payment_status == "paid"
    assert order.gateway_payment_id == payment_id


def test_webhook_payment_failed(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    body, signature = _webhook(integrations, "payment.failed", info["gateway_order_id"])

    result = checkout_service.handle_webhook(body, signature)

    assert result["handled"] is True
    order = _reload(placed_order.id)
    assert order.payment_status == "failed"
    assert order.status == "pending"


def test_webhook_with_bad_signature(user, placed_order, integrations):
    info = checkout_service.create_payment_order(placed_order.id, user.id)
    body, _ = _webhook(integrations, "payment.captured", info["gateway_order_id"])

    with pytest.raises(PaymentSignatureError, match="Invalid webhook signature"):
        checkout_service.handle_webhook(body, "deadbeef")
    with pytest.raises(PaymentSignatureError):
        checkout_service.handle_webhook(body, None)

    assert _reload(placed_order.id).payment_status == "pending"


def test_webhook_unknown_event_and_order(db_session, integrations):
    body, signature = _webhook(integrations, "refund.processed", "order_x")
    assert checkout_service.handle_webhook(body, signature) == {"event": "refund.processed", "handled": False}

    body, signature = _webhook(integrations, "payment.captured", "order_unknown")
    assert checkout_service.handle_webhook(body, signature)["handled"] is False


def test_webhook_body_must_be_json(db_session, integrations):
    body = b"not json"
    with pytest.raises(ValidationError, match="not valid JSON"):
        checkout_service.handle_webhook(body, integrations.payments.sign_webhook(body))


# =============================================================================
# CANCELLATION
# =============================================================================

def test_cancel_unpaid_order(user, widget, placed_order, integrations):
    checkout_service.cancel_order(placed_order.id, user.id, "Ordered by mistake")

    order = _reload(placed_order.id)
    assert order.status == "cancelled"
    assert order.cancellation_reason == "Ordered by mistake"
    assert order.cancelled_at is not None
    assert order.refund_status == "none"
    assert db.session.get(Product, widget.id).stock_quantity == 10
    assert integrations.notifier.kinds() == ["cancellation_notice"]
    assert not [c for c in integrations.payments.calls if c["method"] == "refund_payment"]


def test_cancel_paid_order_refunds_and_cancels_shipment(user, widget, fill_cart, address, save20, integrations):
    fill_cart(user, (widget, 3))
    order = checkout_service.checkout_from_cart(user.id, shipping_address=address, coupon_code="SAVE20")
    _pay(user, order, integrations)
    tracking = _reload(order.id).tracking_number

    checkout_service.cancel_order(order.id, user.id, "Found it cheaper")

    order = _reload(order.id)
    assert order.status == "cancelled"
    assert order.payment_status == "refunded"
    assert order.refund_status == "completed"
    assert order.refund_amount == Decimal("1534.00")
    assert db.session.get(Product, widget.id).stock_quantity == 10
    assert db.session.query(CouponUsage).count() == 0

    assert {"method": "cancel_shipment", "awbs": [tracking]} in integrations.shipping.calls
    assert integrations.notifier.kinds() == ["order_confirmation", "cancellation_notice"]


def test_refund_failure_is_recorded(user, placed_order, integrations):
    _pay(user, placed_order, integrations)
    integrations.payments.fail_on.add("refund_payment")

    checkout_service.cancel_order(placed_order.id, user.id, "Changed mind")

    order = _reload(placed_order.id)
    assert order.status == "cancelled"
    assert order.payment_status == "paid"
    assert order.refund_status == "failed"


def test_shipped_order_cannot_be_cancelled(user, placed_order, integrations):
    _pay(user, placed_order, integrations)
    order_service.update_shipping_status(placed_order.id, "shipped")

    with pytest.raises(ConflictError, match="request a return instead"):
        checkout_service.cancel_order(placed_order.id, user.id, "Too late")


def test_cancel_rules(user, other_user, admin, placed_order):
    with pytest.raises(ValidationError, match="Cancellation reason is required"):
        checkout_service.cancel_order(placed_order.id, user.id, "  ")
    with pytest.raises(NotFoundError):
        checkout_service.cancel_order(placed_order.id, other_user.id, "Not mine")

    checkout_service.cancel_order(placed_order.id, admin.id, "Fraud check", is_admin=True)
    with pytest.raises(ConflictError, match="Order is already cancelled"):
        checkout_service.cancel_order(placed_order.id, user.id, "Again")
