# Overview: Flask API routes for customer orders; checkout, listing, cancellation, and returns.

# backend/storefront/routes/orders.py
"""
Customer Order API Routes

- POST /api/orders/                 checkout the caller's cart
- GET  /api/orders/                 list the caller's orders (paged, sortable)
- GET  /api/orders/<id>             order detail
- POST /api/orders/<id>/cancel      cancel before shipment
- POST /api/orders/<id>/return      request a return after shipment

Another user's order reads as 404, never 403, so ids cannot be probed.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth
from ..errors import StorefrontError
from ..responses import error, from_exception, success
from ..services import checkout_service, order_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    return int(raw)


@orders_bp.post("/")
@require_auth
def checkout_route():
    """
    Create an order from the caller's cart.

    Request body:
    {
        "shipping_address": {"first_name": "...", "last_name": "...", "address_line_1": "...",
                             "city": "...", "state": "...", "postal_code": "...", "country": "..."},
        "billing_address": {...},   (optional, defaults to shipping)
        "coupon_code": "SAVE20",    (optional)
        "notes": "Leave at door"    (optional)
    }

    Returns:
        201: Order created (status pending, payment pending)
        400: Empty cart or bad address
        409: Insufficient stock or coupon rejected
    """
    try:
        data = request.get_json(silent=True) or {}
        order = checkout_service.checkout_from_cart(
            g.current_user.id,
            shipping_address=data.get("shipping_address"),
            billing_address=data.get("billing_address"),
            coupon_code=data.get("coupon_code"),
            notes=data.get("notes"),
            payment_method=data.get("payment_method") or "razorpay",
        )
        return success(order.to_dict(), "Order created", 201)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return error("Internal server error", 500)


@orders_bp.get("/")
@require_auth
def list_orders_route():
    try:
        orders, pagination = order_service.list_orders(
            user_id=g.current_user.id,
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            page=_int_arg("page", 1),
            limit=_int_arg("limit", 10),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order"),
        )
        return success({
            "orders": [o.to_dict(include_items=False) for o in orders],
            "pagination": pagination,
        })
    except StorefrontError as e:
        return from_exception(e)
    except ValueError:
        return error("page and limit must be integers", 400)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return error("Internal server error", 500)


@orders_bp.get("/<order_id>")
@require_auth
def get_order_route(order_id: str):
    try:
        order = order_service.get_order(order_id, user_id=g.current_user.id)
        return success(order.to_dict())
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return error("Internal server error", 500)


@orders_bp.post("/<order_id>/cancel")
@require_auth
def cancel_order_route(order_id: str):
    """
    Cancel an order that has not shipped.

    Request body:
    {
        "reason": "Changed my mind"
    }

    Returns:
        200: Order cancelled; stock restored; refund queued when paid
        409: Already cancelled, delivered, or shipped
    """
    try:
        data = request.get_json(silent=True) or {}
        order = checkout_service.cancel_order(order_id, g.current_user.id, data.get("reason") or "")
        return success(order.to_dict(), "Order cancelled")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return error("Internal server error", 500)


@orders_bp.post("/<order_id>/return")
@require_auth
def request_return_route(order_id: str):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.request_return(order_id, g.current_user.id, data.get("reason") or "")
        return success(order.to_dict(), "Return requested")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to request return")
        return error("Internal server error", 500)
