# Overview: Stock ledger; owns Product.stock_quantity and the inventory_history audit trail.

# backend/storefront/services/inventory_service.py
"""
Stock Ledger Invariants (authoritative)

Quantity model:
- Product.stock_quantity is the authoritative on-hand quantity.
- Every change appends exactly one InventoryHistoryEntry in the same DB
  transaction as the product write. Either both land or neither does.
- new = max(0, previous + change). Negative deltas past zero clamp silently;
  the history row records the requested change and the clamped result.

Locking:
- Writers lock the product row (SELECT ... FOR UPDATE, BEGIN IMMEDIATE on
  SQLite) before reading stock, so concurrent updates serialize and each one
  sees the previous writer's committed value.

Side effects:
- Low-stock alerts (0 < new <= LOW_STOCK_THRESHOLD) go out after commit and
  are best-effort; a failed alert never rolls back a stock change.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import case, func

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..integrations import get_integrations
from ..models import InventoryHistoryEntry, Order, Product
from ..money import quantize, to_decimal
from storefront.time_utils import utcnow
from .concurrency import begin_write, best_effort, lock_for_update, run_with_retry


# =============================================================================
# CHANGE TYPES
# =============================================================================

CHANGE_ADJUSTMENT = "adjustment"
CHANGE_SALE = "sale"
CHANGE_RETURN = "return"
CHANGE_RESTOCK = "restock"

VALID_CHANGE_TYPES = {CHANGE_ADJUSTMENT, CHANGE_SALE, CHANGE_RETURN, CHANGE_RESTOCK}

MAX_HISTORY_PAGE = 500


@dataclass(frozen=True)
class StockUpdate:
    product_id: str
    product_name: str
    previous_stock: int
    new_stock: int

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
        }


def low_stock_threshold() -> int:
    return int(current_app.config.get("LOW_STOCK_THRESHOLD", 5))


def _get_product(product_id: str, *, require_active: bool = False, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None or (require_active and not product.is_active):
        raise NotFoundError("Product not found or inactive" if require_active else "Product not found")
    return product


def get_available_stock(product_id: str) -> int:
    product = _get_product(product_id, require_active=True)
    return product.stock_quantity


def apply_stock_change(
    product: Product,
    quantity_change: int,
    change_type: str,
    *,
    notes: str | None = None,
    user_id: str | None = None,
    order_id: str | None = None,
) -> StockUpdate:
    """
    Write the clamped quantity and its history row. Flushes, never commits.

    The caller must already hold the product row lock inside its own
    transaction; checkout and cancellation compose several of these into one
    commit.
    """
    if change_type not in VALID_CHANGE_TYPES:
        raise ValidationError(
            f"change_type must be one of: {', '.join(sorted(VALID_CHANGE_TYPES))}"
        )
    if isinstance(quantity_change, bool) or not isinstance(quantity_change, int):
        raise ValidationError("quantity_change must be an integer")
    if quantity_change == 0:
        raise ValidationError("quantity_change must be non-zero")

    previous = product.stock_quantity
    new_stock = max(0, previous + quantity_change)

    product.stock_quantity = new_stock
    db.session.add(InventoryHistoryEntry(
        product_id=product.id,
        change_type=change_type,
        quantity_change=quantity_change,
        previous_quantity=previous,
        new_quantity=new_stock,
        notes=notes,
        user_id=user_id,
        order_id=order_id,
    ))
    db.session.flush()

    return StockUpdate(
        product_id=product.id,
        product_name=product.name,
        previous_stock=previous,
        new_stock=new_stock,
    )


def notify_low_stock(updates: list[StockUpdate]) -> None:
    """Post-commit: alert the admin for every update that landed in the low band."""
    threshold = low_stock_threshold()
    notifier = get_integrations().notifier
    for update in updates:
        if 0 < update.new_stock <= threshold:
            best_effort(
                f"low-stock alert for {update.product_id}",
                notifier.send_low_stock_alert,
                update.product_name,
                update.new_stock,
                current_app.config.get("ADMIN_EMAIL"),
            )


def update_stock(
    product_id: str,
    quantity_change: int,
    change_type: str,
    *,
    notes: str | None = None,
    user_id: str | None = None,
    order_id: str | None = None,
) -> StockUpdate:
    """
    Apply a signed stock change in its own transaction.

    Returns the previous and new quantities. Raises NotFoundError for an
    unknown product and ValidationError for a bad change type or delta.
    """
    def _op():
        begin_write()
        product = _get_product(product_id, lock=True)
        update = apply_stock_change(
            product,
            quantity_change,
            change_type,
            notes=notes,
            user_id=user_id,
            order_id=order_id,
        )
        db.session.commit()
        return update

    update = run_with_retry(_op)
    notify_low_stock([update])
    return update


def restore_order_stock(order: Order, *, notes: str | None = None, user_id: str | None = None) -> list[StockUpdate]:
    """
    Put every item of ``order`` back on the shelf as a 'return' entry. Flushes only.

    Items whose product has since been deleted are skipped. There is no guard
    against running twice for one order; callers gate it on the order's
    status transition.
    """
    updates: list[StockUpdate] = []
    for item in order.items:
        if item.product_id is None:
            continue
        product = db.session.query(Product).filter_by(id=item.product_id)
        product = lock_for_update(product).first()
        if product is None:
            continue
        updates.append(apply_stock_change(
            product,
            item.quantity,
            CHANGE_RETURN,
            notes=notes or f"Stock restored from cancelled order {order.order_number}",
            user_id=user_id,
            order_id=order.id,
        ))
    return updates


def handle_order_cancellation(order_id: str, *, user_id: str | None = None) -> list[StockUpdate]:
    """Restore stock for every item of an order in one transaction."""
    def _op():
        begin_write()
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        updates = restore_order_stock(order, user_id=user_id)
        db.session.commit()
        return updates

    updates = run_with_retry(_op)
    notify_low_stock(updates)
    return updates


# =============================================================================
# REPORTING
# =============================================================================

def get_inventory_history(product_id: str | None = None, *, limit: int = 50, offset: int = 0) -> list[InventoryHistoryEntry]:
    if limit < 1 or limit > MAX_HISTORY_PAGE:
        raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_PAGE}")
    if offset < 0:
        raise ValidationError("offset must be >= 0")

    query = db.session.query(InventoryHistoryEntry)
    if product_id is not None:
        query = query.filter(InventoryHistoryEntry.product_id == product_id)
    return (
        query.order_by(InventoryHistoryEntry.created_at.desc(), InventoryHistoryEntry.id)
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_low_stock_products(threshold: int | None = None) -> list[Product]:
    if threshold is None:
        threshold = low_stock_threshold()
    return (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.stock_quantity > 0,
            Product.stock_quantity <= threshold,
        )
        .order_by(Product.stock_quantity.asc(), Product.name.asc())
        .all()
    )


def get_stock_statistics() -> dict:
    threshold = low_stock_threshold()
    row = db.session.query(
        func.count(Product.id).label("total"),
        func.coalesce(func.sum(case((Product.stock_quantity > threshold, 1), else_=0)), 0).label("in_stock"),
        func.coalesce(func.sum(case(
            ((Product.stock_quantity > 0) & (Product.stock_quantity <= threshold), 1),
            else_=0,
        )), 0).label("low_stock"),
        func.coalesce(func.sum(case((Product.stock_quantity == 0, 1), else_=0)), 0).label("out_of_stock"),
        func.coalesce(func.sum(Product.price * Product.stock_quantity), 0).label("total_value"),
    ).filter(Product.is_active.is_(True)).one()

    return {
        "total_products": int(row.total or 0),
        "in_stock": int(row.in_stock or 0),
        "low_stock": int(row.low_stock or 0),
        "out_of_stock": int(row.out_of_stock or 0),
        "total_value": str(quantize(to_decimal(row.total_value or 0))),
    }


def cleanup_old_inventory_history(*, retention_days: int = 365) -> int:
    """Delete history rows older than the retention window. Returns rows removed."""
    if retention_days < 1:
        raise ValidationError("retention_days must be >= 1")
    cutoff = utcnow() - timedelta(days=retention_days)

    def _op():
        deleted = (
            db.session.query(InventoryHistoryEntry)
            .filter(InventoryHistoryEntry.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.session.commit()
        return deleted

    return run_with_retry(_op)
