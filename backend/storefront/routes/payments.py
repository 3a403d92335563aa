# Overview: Flask API routes for online payments; gateway orders, verification, and webhooks.

# backend/storefront/routes/payments.py
"""
Payment API Routes

Flow:
1. POST /api/payments/create-order  -> gateway order id + amount for the checkout widget
2. Customer pays in the widget
3. POST /api/payments/verify        -> signature check, order confirmed
4. POST /api/payments/webhook       -> gateway-to-server confirmation (no user auth)

SECURITY:
- /verify rejects a bad signature before reading the order.
- /webhook authenticates with the X-Razorpay-Signature HMAC over the raw body;
  the body is read once, unparsed, so the signature covers exactly what was sent.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth
from ..errors import StorefrontError
from ..responses import error, from_exception, success
from ..services import checkout_service


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"


@payments_bp.post("/create-order")
@require_auth
def create_payment_order_route():
    """
    Request body:
    {
        "order_id": "uuid"
    }

    Returns:
        200: {gateway_order_id, amount (minor units), currency, key_id}
        409: Order already paid or cancelled
        502: Gateway unavailable
    """
    try:
        data = request.get_json(silent=True) or {}
        order_id = data.get("order_id")
        if not order_id:
            return error("order_id is required", 400)

        payment_order = checkout_service.create_payment_order(order_id, g.current_user.id)
        return success(payment_order, "Payment order created")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to create payment order")
        return error("Internal server error", 500)


@payments_bp.post("/verify")
@require_auth
def verify_payment_route():
    """
    Request body (fields as returned by the checkout widget):
    {
        "order_id": "uuid",
        "razorpay_order_id": "order_...",
        "razorpay_payment_id": "pay_...",
        "razorpay_signature": "hex"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        order = checkout_service.verify_payment(
            g.current_user.id,
            data.get("order_id"),
            data.get("razorpay_order_id"),
            data.get("razorpay_payment_id"),
            data.get("razorpay_signature"),
        )
        return success(order.to_dict(), "Payment verified successfully")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return error("Internal server error", 500)


@payments_bp.get("/status/<payment_id>")
@require_auth
def payment_status_route(payment_id: str):
    try:
        return success(checkout_service.fetch_payment(payment_id))
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to fetch payment status")
        return error("Internal server error", 500)


@payments_bp.post("/webhook")
def webhook_route():
    try:
        raw_body = request.get_data(cache=False)
        result = checkout_service.handle_webhook(raw_body, request.headers.get(WEBHOOK_SIGNATURE_HEADER))
        return success(result, "Webhook processed")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to process webhook")
        return error("Internal server error", 500)
