# Overview: Flask API routes for administrators; order state management, statistics, and account erasure.

# backend/storefront/routes/admin.py
"""
Admin API Routes

All endpoints require an authenticated admin (role == "admin").

Order state is changed one axis at a time; each endpoint goes through the
same transition rules the customer flows use, so an admin cannot move an
order backwards or skip the stock/coupon bookkeeping tied to cancellation
and completed returns.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_admin, require_auth
from ..errors import StorefrontError
from ..responses import error, from_exception, success
from ..services import abandonment_service, account_service, checkout_service, order_service


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _field(data: dict, name: str):
    value = data.get(name)
    if not value:
        raise KeyError(name)
    return value


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/orders")
@require_auth
@require_admin
def list_all_orders_route():
    try:
        orders, pagination = order_service.list_orders(
            user_id=request.args.get("user_id") or None,
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order"),
        )
        return success({
            "orders": [o.to_dict(include_items=False) for o in orders],
            "pagination": pagination,
        })
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return error("Internal server error", 500)


@admin_bp.put("/orders/<order_id>/status")
@require_auth
@require_admin
def update_order_status_route(order_id: str):
    """
    Request body:
    {
        "status": "processing",
        "reason": "..."          (used when cancelling)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        new_status = _field(data, "status")
        if new_status == order_service.STATUS_CANCELLED:
            order = checkout_service.cancel_order(
                order_id, g.current_user.id, data.get("reason") or "Cancelled by admin", is_admin=True
            )
        else:
            order = order_service.update_status(order_id, new_status, actor_user_id=g.current_user.id)
        current_app.logger.info("Admin %s set order %s status to %s", g.current_user.id, order_id, new_status)
        return success(order.to_dict(), "Order status updated")
    except KeyError as e:
        return error(f"{e.args[0]} is required", 400)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return error("Internal server error", 500)


@admin_bp.put("/orders/<order_id>/payment-status")
@require_auth
@require_admin
def update_payment_status_route(order_id: str):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_payment_status(
            order_id,
            _field(data, "payment_status"),
            gateway_payment_id=data.get("gateway_payment_id"),
        )
        return success(order.to_dict(), "Payment status updated")
    except KeyError as e:
        return error(f"{e.args[0]} is required", 400)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to update payment status")
        return error("Internal server error", 500)


@admin_bp.put("/orders/<order_id>/shipping-status")
@require_auth
@require_admin
def update_shipping_status_route(order_id: str):
    """
    Request body:
    {
        "shipping_status": "shipped",
        "tracking_number": "AWB123",   (optional)
        "courier_name": "Delhivery"    (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_shipping_status(
            order_id,
            _field(data, "shipping_status"),
            tracking_number=data.get("tracking_number"),
            courier_name=data.get("courier_name"),
        )
        return success(order.to_dict(), "Shipping status updated")
    except KeyError as e:
        return error(f"{e.args[0]} is required", 400)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to update shipping status")
        return error("Internal server error", 500)


@admin_bp.put("/orders/<order_id>/return-status")
@require_auth
@require_admin
def update_return_status_route(order_id: str):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_return_status(
            order_id,
            _field(data, "return_status"),
            return_awb=data.get("return_awb"),
            return_courier=data.get("return_courier"),
        )
        return success(order.to_dict(), "Return status updated")
    except KeyError as e:
        return error(f"{e.args[0]} is required", 400)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to update return status")
        return error("Internal server error", 500)


@admin_bp.post("/orders/bulk-update")
@require_auth
@require_admin
def bulk_update_route():
    """
    Request body:
    {
        "order_ids": ["uuid", ...],
        "status": "processing",          (any of the three is enough)
        "payment_status": "paid",
        "shipping_status": "shipped"
    }

    Returns per-order outcome; one failing order does not block the others.
    """
    try:
        data = request.get_json(silent=True) or {}
        order_ids = data.get("order_ids")
        if not isinstance(order_ids, list):
            return error("order_ids must be a list", 400)
        result = order_service.bulk_update_orders(
            order_ids,
            status=data.get("status"),
            payment_status=data.get("payment_status"),
            shipping_status=data.get("shipping_status"),
            actor_user_id=g.current_user.id,
        )
        return success(result, f"Updated {len(result['updated'])} orders")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to bulk update orders")
        return error("Internal server error", 500)


@admin_bp.post("/orders/<order_id>/refund")
@require_auth
@require_admin
def refund_order_route(order_id: str):
    """
    Request body (optional):
    {
        "amount": 250.00   // partial refund; omit to refund the remaining balance
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.refund_order_payment(order_id, data.get("amount"))
        return success(order.to_dict(), f"Refund status: {order.refund_status}")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return error("Internal server error", 500)


@admin_bp.get("/orders/stats")
@require_auth
@require_admin
def order_stats_route():
    try:
        return success(order_service.get_order_statistics())
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load order statistics")
        return error("Internal server error", 500)


# =============================================================================
# CARTS AND ACCOUNTS
# =============================================================================

@admin_bp.get("/carts/abandonment-stats")
@require_auth
@require_admin
def abandonment_stats_route():
    try:
        return success(abandonment_service.get_abandonment_statistics())
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load abandonment statistics")
        return error("Internal server error", 500)


@admin_bp.delete("/users/<user_id>")
@require_auth
@require_admin
def anonymize_user_route(user_id: str):
    """
    Erase a user account. Orders are kept, detached from the account.

    Request body (optional):
    {
        "reason": "GDPR erasure request"
    }
    """
    try:
        if user_id == g.current_user.id:
            return error("Admins cannot erase their own account", 409)
        data = request.get_json(silent=True) or {}
        tombstone = account_service.anonymize_user(user_id, reason=data.get("reason"))
        current_app.logger.info("User %s anonymized by %s", user_id, g.current_user.id)
        return success(tombstone.to_dict(), "User anonymized")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to anonymize user")
        return error("Internal server error", 500)
