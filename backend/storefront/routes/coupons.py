# Overview: Flask API routes for coupons; customer validation and admin management.

from flask import Blueprint, current_app, g, request

from ..decorators import require_admin, require_auth
from ..errors import StorefrontError
from ..responses import error, from_exception, success
from ..services import cart_service, coupon_service


coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


def _cart_subtotal(user_id: str):
    summary = cart_service.get_cart_summary(cart_service.find_cart(user_id=user_id))
    return summary["subtotal"]


# =============================================================================
# CUSTOMER
# =============================================================================

@coupons_bp.post("/validate")
@require_auth
def validate_coupon_route():
    """
    Check a code against an order amount without redeeming it.

    Request body:
    {
        "code": "SAVE20",
        "order_amount": 1500     (optional, defaults to the caller's cart subtotal)
    }

    Returns:
        200: {valid: true, discount_amount, coupon}
        400: {valid: false} with the rejection reason as message
    """
    try:
        data = request.get_json(silent=True) or {}
        amount = data.get("order_amount")
        if amount is None:
            amount = _cart_subtotal(g.current_user.id)

        result = coupon_service.validate_coupon(data.get("code"), g.current_user.id, amount)
        if not result.valid:
            return error(result.message, 400)
        return success(result.to_dict(), result.message)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to validate coupon")
        return error("Internal server error", 500)


@coupons_bp.get("/")
def list_public_coupons_route():
    try:
        coupons = coupon_service.get_active_coupons(public_only=True)
        return success([c.to_dict() for c in coupons])
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to list coupons")
        return error("Internal server error", 500)


@coupons_bp.get("/best")
@require_auth
def best_coupon_route():
    try:
        amount = request.args.get("order_amount")
        if amount is None:
            amount = _cart_subtotal(g.current_user.id)

        best = coupon_service.get_best_coupon_for_order(g.current_user.id, amount)
        return success(best.to_dict() if best else None)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to find best coupon")
        return error("Internal server error", 500)


# =============================================================================
# ADMIN
# =============================================================================

@coupons_bp.get("/admin")
@require_auth
@require_admin
def list_all_coupons_route():
    try:
        coupons = coupon_service.get_active_coupons()
        return success([c.to_dict() for c in coupons])
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to list coupons")
        return error("Internal server error", 500)


@coupons_bp.post("/admin")
@require_auth
@require_admin
def create_coupon_route():
    """
    Request body:
    {
        "code": "SAVE20",
        "name": "20% off",
        "type": "percentage",
        "value": 20,
        "minimum_order_amount": 1000,      (optional)
        "maximum_discount_amount": 200,    (optional)
        "usage_limit": 1,                  (optional, per user)
        "valid_from": "2026-01-01T00:00:00Z",
        "valid_until": "2026-12-31T23:59:59Z"
    }
    """
    try:
        coupon = coupon_service.create_coupon(request.get_json(silent=True) or {})
        current_app.logger.info("Coupon %s created by %s", coupon.code, g.current_user.id)
        return success(coupon.to_dict(), "Coupon created", 201)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return error("Internal server error", 500)


@coupons_bp.put("/admin/<coupon_id>")
@require_auth
@require_admin
def update_coupon_route(coupon_id: str):
    try:
        coupon = coupon_service.update_coupon(coupon_id, request.get_json(silent=True) or {})
        return success(coupon.to_dict(), "Coupon updated")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to update coupon")
        return error("Internal server error", 500)


@coupons_bp.delete("/admin/<coupon_id>")
@require_auth
@require_admin
def delete_coupon_route(coupon_id: str):
    try:
        hard = request.args.get("hard", "").lower() in ("1", "true", "yes")
        coupon_service.delete_coupon(coupon_id, hard=hard)
        return success(None, "Coupon deleted" if hard else "Coupon deactivated")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to delete coupon")
        return error("Internal server error", 500)


@coupons_bp.get("/admin/<coupon_id>/stats")
@require_auth
@require_admin
def coupon_stats_route(coupon_id: str):
    try:
        return success(coupon_service.get_coupon_stats(coupon_id))
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load coupon stats")
        return error("Internal server error", 500)


@coupons_bp.get("/admin/stats")
@require_auth
@require_admin
def overall_coupon_stats_route():
    try:
        return success(coupon_service.get_overall_coupon_stats())
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load coupon stats")
        return error("Internal server error", 500)
