# Overview: Cart operations for signed-in users and guest sessions.

from __future__ import annotations

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Cart, CartItem, Product
from ..money import ZERO, money_str, quantize
from ..validation import require_quantity
from . import abandonment_service
from .concurrency import begin_write, run_with_retry


def _owner_filter(user_id: str | None, session_id: str | None) -> dict:
    if bool(user_id) == bool(session_id):
        raise ValidationError("A cart belongs to either a user or a guest session")
    return {"user_id": user_id} if user_id else {"session_id": session_id}


def find_cart(*, user_id: str | None = None, session_id: str | None = None) -> Cart | None:
    return db.session.query(Cart).filter_by(**_owner_filter(user_id, session_id)).first()


def _get_or_create(owner: dict) -> Cart:
    cart = db.session.query(Cart).filter_by(**owner).first()
    if cart is None:
        cart = Cart(**owner)
        db.session.add(cart)
        db.session.flush()
    return cart


def get_or_create_cart(*, user_id: str | None = None, session_id: str | None = None) -> Cart:
    owner = _owner_filter(user_id, session_id)

    def _op():
        cart = _get_or_create(owner)
        db.session.commit()
        return cart

    return run_with_retry(_op)


def _active_product(product_id: str) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or not product.is_active:
        raise NotFoundError("Product not found or inactive")
    return product


def _item(cart: Cart, product_id: str) -> CartItem | None:
    return db.session.query(CartItem).filter_by(cart_id=cart.id, product_id=product_id).first()


def _after_change(user_id: str | None) -> None:
    if user_id:
        abandonment_service.touch_activity(user_id)


def add_item(
    product_id: str,
    quantity,
    *,
    user_id: str | None = None,
    session_id: str | None = None,
) -> Cart:
    """
    Add ``quantity`` units; re-adding a product accumulates onto the existing line.

    The unit price is captured on first add (discount price when present) and
    kept until the line is removed. Stock is checked, not reserved.
    """
    qty = require_quantity(quantity)
    owner = _owner_filter(user_id, session_id)

    def _op():
        begin_write()
        cart = _get_or_create(owner)
        product = _active_product(product_id)
        item = _item(cart, product_id)
        new_quantity = qty + (item.quantity if item else 0)
        if new_quantity > product.stock_quantity:
            raise ConflictError("Insufficient stock", details={"available": product.stock_quantity})
        if item is None:
            db.session.add(CartItem(
                cart_id=cart.id,
                product_id=product.id,
                quantity=new_quantity,
                price_at_time=quantize(product.effective_price),
            ))
        else:
            item.quantity = new_quantity
        _after_change(user_id)
        db.session.commit()
        db.session.refresh(cart)
        return cart

    return run_with_retry(_op)


def update_item_quantity(
    product_id: str,
    quantity,
    *,
    user_id: str | None = None,
    session_id: str | None = None,
) -> Cart:
    """Set a line's quantity; 0 removes the line."""
    qty = require_quantity(quantity, allow_zero=True)
    owner = _owner_filter(user_id, session_id)

    def _op():
        begin_write()
        cart = db.session.query(Cart).filter_by(**owner).first()
        item = _item(cart, product_id) if cart else None
        if item is None:
            raise NotFoundError("Item not found in cart")
        if qty == 0:
            db.session.delete(item)
        else:
            product = _active_product(product_id)
            if qty > product.stock_quantity:
                raise ConflictError("Insufficient stock", details={"available": product.stock_quantity})
            item.quantity = qty
        _after_change(user_id)
        db.session.commit()
        db.session.refresh(cart)
        return cart

    return run_with_retry(_op)


def remove_item(product_id: str, *, user_id: str | None = None, session_id: str | None = None) -> Cart:
    return update_item_quantity(product_id, 0, user_id=user_id, session_id=session_id)


def empty_cart(cart: Cart) -> int:
    """Delete every line of ``cart``. Flushes only; used by checkout."""
    removed = db.session.query(CartItem).filter_by(cart_id=cart.id).delete(synchronize_session=False)
    db.session.flush()
    db.session.expire(cart, ["items"])
    return removed


def clear_cart(*, user_id: str | None = None, session_id: str | None = None) -> None:
    owner = _owner_filter(user_id, session_id)

    def _op():
        cart = db.session.query(Cart).filter_by(**owner).first()
        if cart is not None:
            empty_cart(cart)
        db.session.commit()

    run_with_retry(_op)


def merge_guest_cart(session_id: str, user_id: str) -> Cart:
    """
    Fold a guest cart into the user's cart after sign-in.

    Quantities are summed and capped at current stock; the guest cart is
    deleted. Lines for products that went inactive are dropped.
    """
    if not session_id or not user_id:
        raise ValidationError("session_id and user_id are required")

    def _op():
        begin_write()
        user_cart = _get_or_create({"user_id": user_id})
        guest = db.session.query(Cart).filter_by(session_id=session_id).first()
        if guest is None:
            db.session.commit()
            return user_cart

        for guest_item in list(guest.items):
            product = db.session.get(Product, guest_item.product_id)
            if product is None or not product.is_active:
                continue
            item = _item(user_cart, product.id)
            wanted = guest_item.quantity + (item.quantity if item else 0)
            merged = min(wanted, product.stock_quantity)
            if merged <= 0:
                continue
            if item is None:
                db.session.add(CartItem(
                    cart_id=user_cart.id,
                    product_id=product.id,
                    quantity=merged,
                    price_at_time=guest_item.price_at_time,
                ))
            else:
                item.quantity = merged
        db.session.delete(guest)
        _after_change(user_id)
        db.session.commit()
        db.session.refresh(user_cart)
        return user_cart

    return run_with_retry(_op)


def get_cart_summary(cart: Cart | None) -> dict:
    if cart is None:
        return {"cart_id": None, "items": [], "item_count": 0, "subtotal": money_str(ZERO)}
    subtotal = sum((item.line_total for item in cart.items), ZERO)
    return {
        "cart_id": cart.id,
        "items": [item.to_dict() for item in cart.items],
        "item_count": sum(item.quantity for item in cart.items),
        "subtotal": money_str(subtotal),
    }
