"""
Cart abandonment jobs: detection, reminder cadence, recovery, cleanup.
"""

from datetime import timedelta

import pytest

from storefront.errors import ValidationError
from storefront.extensions import db
from storefront.models import CartActivity
from storefront.services import abandonment_service, cart_service, checkout_service
from storefront.time_utils import days_ago, hours_ago


def _activity(user):
    db.session.expire_all()
    return db.session.query(CartActivity).filter_by(user_id=user.id).one()


def _idle_cart(user, product, hours=3):
    cart_service.add_item(product.id, 1, user_id=user.id)
    activity = _activity(user)
    activity.last_activity = hours_ago(hours)
    db.session.commit()
    return activity


def _abandon(user, product):
    _idle_cart(user, product)
    abandonment_service.mark_abandoned_carts(2)
    return _activity(user)


def test_idle_non_empty_cart_is_flagged(user, other_user, make_product):
    product = make_product()
    _idle_cart(user, product)
    cart_service.add_item(product.id, 1, user_id=other_user.id)

    assert abandonment_service.mark_abandoned_carts(2) == 1

    activity = _activity(user)
    assert activity.is_abandoned is True
    assert activity.abandoned_at is not None
    assert activity.reminder_count == 0
    assert _activity(other_user).is_abandoned is False


def test_idle_empty_cart_is_not_flagged(user, make_product):
    product = make_product()
    _idle_cart(user, product)
    cart_service.clear_cart(user_id=user.id)

    assert abandonment_service.mark_abandoned_carts(2) == 0


def test_threshold_must_be_positive(db_session):
    with pytest.raises(ValidationError):
        abandonment_service.mark_abandoned_carts(0)


def test_new_activity_clears_abandoned_flag(user, make_product):
    product = make_product()
    _abandon(user, product)

    cart_service.add_item(product.id, 1, user_id=user.id)

    assert _activity(user).is_abandoned is False


def test_reminders_follow_the_schedule(user, make_product, integrations):
    product = make_product(name="Denim Jacket")
    activity = _abandon(user, product)
    abandoned_at = activity.abandoned_at

    result = abandonment_service.process_abandonment_reminders(now=abandoned_at + timedelta(hours=1))
    assert result == {"sent": 0, "failed": 0}

    result = abandonment_service.process_abandonment_reminders(now=abandoned_at + timedelta(hours=25))
    assert result == {"sent": 1, "failed": 0}
    [message] = integrations.notifier.sent
    assert message.kind == "cart_reminder"
    assert message.to == user.email
    assert message.subject == "You left something in your cart"
    assert "Denim Jacket" in message.body

    # Second reminder is not due until 72h
    result = abandonment_service.process_abandonment_reminders(now=abandoned_at + timedelta(hours=30))
    assert result["sent"] == 0

    abandonment_service.process_abandonment_reminders(now=abandoned_at + timedelta(hours=73))
    abandonment_service.process_abandonment_reminders(now=abandoned_at + timedelta(hours=200))
    abandonment_service.process_abandonment_reminders(now=abandoned_at + timedelta(hours=400))

    assert [m.subject for m in integrations.notifier.sent] == [
        "You left something in your cart",
        "Your cart is still waiting",
        "Last chance to complete your order",
    ]
    activity = _activity(user)
    assert activity.reminder_count == 3
    assert activity.last_reminder_sent is not None


def test_failed_reminder_is_retried_next_run(user, make_product, integrations):
    activity = _abandon(user, make_product())
    due = activity.abandoned_at + timedelta(hours=25)
    integrations.notifier.fail = True

    assert abandonment_service.process_abandonment_reminders(now=due) == {"sent": 0, "failed": 1}
    assert _activity(user).reminder_count == 0

    integrations.notifier.fail = False
    assert abandonment_service.process_abandonment_reminders(now=due) == {"sent": 1, "failed": 0}


def test_checkout_recovers_abandoned_cart(user, make_product, address, integrations):
    activity = _abandon(user, make_product())

    checkout_service.checkout_from_cart(user.id, shipping_address=address)

    activity = _activity(user)
    assert activity.is_recovered is True
    assert activity.recovered_at is not None

    result = abandonment_service.process_abandonment_reminders(now=activity.abandoned_at + timedelta(hours=25))
    assert result == {"sent": 0, "failed": 0}

    stats = abandonment_service.get_abandonment_statistics()
    assert stats == {"tracked_users": 1, "abandoned": 1, "recovered": 1, "recovery_rate": 100.0}


def test_cleanup_removes_old_abandonment_rows(user, other_user, make_product):
    product = make_product()
    _abandon(user, product)
    cart_service.add_item(product.id, 1, user_id=other_user.id)

    activity = _activity(user)
    activity.abandoned_at = days_ago(100)
    db.session.commit()

    assert abandonment_service.cleanup_old_records(retention_days=90) == 1
    assert db.session.query(CartActivity).count() == 1

    with pytest.raises(ValidationError):
        abandonment_service.cleanup_old_records(retention_days=0)
