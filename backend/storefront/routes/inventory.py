# Overview: Flask API routes for stock levels; admin adjustments, history, and reports.

from flask import Blueprint, current_app, g, request

from ..decorators import require_admin, require_auth
from ..errors import StorefrontError
from ..responses import error, from_exception, success
from ..services import inventory_service


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/products/<product_id>/stock")
def available_stock_route(product_id: str):
    try:
        stock = inventory_service.get_available_stock(product_id)
        return success({"product_id": product_id, "stock_quantity": stock})
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load stock")
        return error("Internal server error", 500)


@inventory_bp.post("/products/<product_id>/adjust")
@require_auth
@require_admin
def adjust_stock_route(product_id: str):
    """
    Apply a signed stock change.

    Request body:
    {
        "quantity_change": -3,
        "change_type": "adjustment",   (adjustment | restock | sale | return)
        "notes": "Cycle count"         (optional)
    }

    Stock never goes below zero; a larger negative change clamps to 0 and the
    history row records both the requested change and the result.
    """
    try:
        data = request.get_json(silent=True) or {}
        if "quantity_change" not in data:
            return error("quantity_change is required", 400)

        update = inventory_service.update_stock(
            product_id,
            data.get("quantity_change"),
            data.get("change_type") or inventory_service.CHANGE_ADJUSTMENT,
            notes=data.get("notes"),
            user_id=g.current_user.id,
        )
        return success(update.to_dict(), "Stock updated")
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return error("Internal server error", 500)


@inventory_bp.get("/history")
@require_auth
@require_admin
def history_route():
    try:
        entries = inventory_service.get_inventory_history(
            request.args.get("product_id") or None,
            limit=int(request.args.get("limit", 50)),
            offset=int(request.args.get("offset", 0)),
        )
        return success([e.to_dict() for e in entries])
    except StorefrontError as e:
        return from_exception(e)
    except ValueError:
        return error("limit and offset must be integers", 400)
    except Exception:
        current_app.logger.exception("Failed to load inventory history")
        return error("Internal server error", 500)


@inventory_bp.get("/low-stock")
@require_auth
@require_admin
def low_stock_route():
    try:
        threshold = request.args.get("threshold", type=int)
        products = inventory_service.get_low_stock_products(threshold)
        return success([p.to_dict() for p in products])
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load low-stock products")
        return error("Internal server error", 500)


@inventory_bp.get("/stats")
@require_auth
@require_admin
def stock_stats_route():
    try:
        return success(inventory_service.get_stock_statistics())
    except StorefrontError as e:
        return from_exception(e)
    except Exception:
        current_app.logger.exception("Failed to load stock statistics")
        return error("Internal server error", 500)
