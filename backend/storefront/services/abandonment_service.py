# Overview: Cart abandonment tracking and the scheduled reminder/cleanup jobs.

"""
Cart abandonment

Request paths call touch_activity() whenever a signed-in user's cart changes
and mark_cart_recovered() when checkout succeeds. The maintenance CLI runs the
jobs below from the operator's scheduler:

    detect-abandoned-carts   every 2h
    send-cart-reminders      hourly
    cleanup-abandonment      daily

Jobs use conditional UPDATEs (e.g. "reminder_count = :seen") so they can run
concurrently with request traffic, or with another copy of themselves,
without double-sending or undoing a recovery.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..integrations import get_integrations
from ..models import Cart, CartActivity, CartItem
from storefront.time_utils import as_utc_naive, days_ago, hours_ago, utcnow
from .concurrency import run_with_retry


def touch_activity(user_id: str) -> None:
    """Record cart activity for ``user_id``. Flushes only."""
    now = utcnow()
    activity = db.session.query(CartActivity).filter_by(user_id=user_id).first()
    if activity is not None:
        activity.last_activity = now
        activity.is_abandoned = False
        db.session.flush()
        return
    try:
        with db.session.begin_nested():
            db.session.add(CartActivity(user_id=user_id, last_activity=now))
    except IntegrityError:
        db.session.query(CartActivity).filter_by(user_id=user_id).update(
            {CartActivity.last_activity: now, CartActivity.is_abandoned: False},
            synchronize_session=False,
        )


def track_cart_activity(user_id: str) -> None:
    def _op():
        touch_activity(user_id)
        db.session.commit()

    run_with_retry(_op)


def mark_cart_recovered(user_id: str) -> None:
    """Checkout completed for an abandoned cart. Flushes only."""
    db.session.query(CartActivity).filter(
        CartActivity.user_id == user_id,
        CartActivity.is_abandoned.is_(True),
    ).update(
        {CartActivity.is_recovered: True, CartActivity.recovered_at: utcnow()},
        synchronize_session=False,
    )


def mark_abandoned_carts(threshold_hours: int | None = None) -> int:
    """Flag idle, non-empty carts as abandoned. Returns how many were flagged."""
    if threshold_hours is None:
        threshold_hours = current_app.config.get("CART_ABANDONMENT_HOURS", 2)
    if threshold_hours < 1:
        raise ValidationError("threshold_hours must be >= 1")
    cutoff = hours_ago(threshold_hours)

    non_empty = (
        select(Cart.user_id)
        .join(CartItem, CartItem.cart_id == Cart.id)
        .where(Cart.user_id.isnot(None))
    )

    def _op():
        flagged = (
            db.session.query(CartActivity)
            .filter(
                CartActivity.last_activity < cutoff,
                CartActivity.is_abandoned.is_(False),
                CartActivity.user_id.in_(non_empty),
            )
            .update(
                {
                    CartActivity.is_abandoned: True,
                    CartActivity.abandoned_at: utcnow(),
                    CartActivity.reminder_count: 0,
                    CartActivity.is_recovered: False,
                    CartActivity.recovered_at: None,
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
        return flagged

    flagged = run_with_retry(_op)
    current_app.logger.info("Marked %s carts as abandoned", flagged)
    return flagged


def _cart_lines(user_id: str) -> list[dict]:
    cart = db.session.query(Cart).filter_by(user_id=user_id).first()
    if cart is None:
        return []
    return [
        {"product_name": item.product.name, "quantity": item.quantity}
        for item in cart.items
        if item.product is not None
    ]


def _record_reminder(activity_id: str, seen_count: int) -> bool:
    def _op():
        updated = (
            db.session.query(CartActivity)
            .filter(
                CartActivity.id == activity_id,
                CartActivity.reminder_count == seen_count,
                CartActivity.is_recovered.is_(False),
            )
            .update(
                {
                    CartActivity.reminder_count: seen_count + 1,
                    CartActivity.last_reminder_sent: utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
        return bool(updated)

    return run_with_retry(_op)


def process_abandonment_reminders(*, now=None) -> dict:
    """
    Send the next due reminder for each abandoned cart.

    Reminder N is due CART_REMINDER_HOURS[N-1] hours after abandonment. A
    failed send is logged and counted; the row is left as-is so the next run
    retries it.
    """
    intervals = list(current_app.config.get("CART_REMINDER_HOURS", (24, 72, 168)))
    now = now or utcnow()
    notifier = get_integrations().notifier

    candidates = (
        db.session.query(CartActivity)
        .filter(
            CartActivity.is_abandoned.is_(True),
            CartActivity.is_recovered.is_(False),
            CartActivity.reminder_count < len(intervals),
        )
        .order_by(CartActivity.abandoned_at)
        .all()
    )

    sent = failed = 0
    for activity in candidates:
        abandoned_at = as_utc_naive(activity.abandoned_at)
        seen = activity.reminder_count
        if abandoned_at is None or now < abandoned_at + timedelta(hours=intervals[seen]):
            continue
        lines = _cart_lines(activity.user_id)
        if not lines:
            continue
        try:
            notifier.send_cart_reminder(activity.user, lines, seen + 1)
        except Exception:
            current_app.logger.exception("Failed to send cart reminder to user %s", activity.user_id)
            failed += 1
            continue
        if _record_reminder(activity.id, seen):
            sent += 1

    current_app.logger.info("Processed abandonment reminders: %s sent, %s failed", sent, failed)
    return {"sent": sent, "failed": failed}


def cleanup_old_records(*, retention_days: int = 90) -> int:
    if retention_days < 1:
        raise ValidationError("retention_days must be >= 1")
    cutoff = days_ago(retention_days)

    def _op():
        deleted = (
            db.session.query(CartActivity)
            .filter(CartActivity.abandoned_at.isnot(None), CartActivity.abandoned_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.session.commit()
        return deleted

    return run_with_retry(_op)


def get_abandonment_statistics() -> dict:
    rows = db.session.query(CartActivity.is_abandoned, CartActivity.is_recovered).all()
    abandoned = sum(1 for is_abandoned, _ in rows if is_abandoned)
    recovered = sum(1 for is_abandoned, is_recovered in rows if is_abandoned and is_recovered)
    return {
        "tracked_users": len(rows),
        "abandoned": abandoned,
        "recovered": recovered,
        "recovery_rate": round(recovered / abandoned * 100, 2) if abandoned else 0.0,
    }
