# Overview: Flask API routes for the shopping cart; signed-in users and guest sessions.

from flask import Blueprint, current_app, g, request

from ..decorators import cart_owner, optional_auth, require_auth
from ..errors import StorefrontError
from ..responses import error, from_exception, success
from ..services import cart_service


cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("/")
@optional_auth
def get_cart_route():
    try:
        cart = cart_service.find_cart(**cart_owner())
        return success(cart_service.get_cart_summary(cart))
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return error("Internal server error", 500)


@cart_bp.post("/items")
@optional_auth
def add_item_route():
    """
    Add a product to the cart.

    Request body:
    {
        "product_id": "uuid",
        "quantity": 2
    }

    Returns:
        201: Updated cart
        404: Product not found or inactive
        409: Insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        if not product_id:
            return error("product_id is required", 400)

        cart = cart_service.add_item(product_id, data.get("quantity", 1), **cart_owner())
        return success(cart_service.get_cart_summary(cart), "Item added to cart", 201)
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return error("Internal server error", 500)


@cart_bp.put("/items/<product_id>")
@optional_auth
def update_item_route(product_id: str):
    try:
        data = request.get_json(silent=True) or {}
        if "quantity" not in data:
            return error("quantity is required", 400)

        cart = cart_service.update_item_quantity(product_id, data.get("quantity"), **cart_owner())
        return success(cart_service.get_cart_summary(cart), "Cart updated")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return error("Internal server error", 500)


@cart_bp.delete("/items/<product_id>")
@optional_auth
def remove_item_route(product_id: str):
    try:
        cart = cart_service.remove_item(product_id, **cart_owner())
        return success(cart_service.get_cart_summary(cart), "Item removed from cart")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return error("Internal server error", 500)


@cart_bp.delete("/")
@optional_auth
def clear_cart_route():
    try:
        cart_service.clear_cart(**cart_owner())
        return success(None, "Cart cleared")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return error("Internal server error", 500)


@cart_bp.post("/merge")
@require_auth
def merge_cart_route():
    """
    Fold a guest cart into the signed-in user's cart.

    Request body:
    {
        "session_id": "guest-session-id"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        session_id = data.get("session_id") or request.headers.get("X-Session-Id")
        if not session_id:
            return error("session_id is required", 400)

        cart = cart_service.merge_guest_cart(session_id, g.current_user.id)
        return success(cart_service.get_cart_summary(cart), "Cart merged")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to merge cart")
        return error("Internal server error", 500)
