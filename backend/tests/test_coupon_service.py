from datetime import timedelta
from decimal import Decimal

import pytest

from storefront.errors import ConflictError, ValidationError
from storefront.extensions import db
from storefront.models import Coupon, CouponUsage
from storefront.services import coupon_service, order_service
from storefront.services.order_service import OrderLine
from storefront.time_utils import utcnow


def _coupon(code, type_="fixed", value="100", **kw):
    coupon = Coupon(code=code, name=code, type=type_, value=Decimal(value), is_active=True, **kw)
    db.session.add(coupon)
    db.session.commit()
    return coupon


def _order_for(user, product, coupon=None):
    order = order_service.create_order_record(
        user_id=user.id,
        lines=[OrderLine(product=product, quantity=1, unit_price=product.price)],
        subtotal=product.price,
        discount_amount=0,
        tax_amount=0,
        shipping_amount=0,
        total_amount=product.price,
        shipping_address={"first_name": "Asha"},
        coupon=coupon,
    )
    db.session.commit()
    return order


def test_save20_on_1500_is_capped_at_200(user, save20):
    result = coupon_service.validate_coupon("save20", user.id, Decimal("1500"))

    assert result.valid
    assert result.message == "Coupon applied successfully"
    assert result.discount_amount == Decimal("200.00")


def test_percentage_below_cap(user, save20):
    result = coupon_service.validate_coupon("SAVE20", user.id, "1000")
    assert result.discount_amount == Decimal("200.00")

    result = coupon_service.validate_coupon("SAVE20", user.id, "1001.50")
    assert result.discount_amount == Decimal("200.00")


def test_fixed_discount_never_exceeds_order_amount(db_session):
    coupon = _coupon("FLAT500", value="500")

    assert coupon_service.calculate_discount(coupon, Decimal("120")) == Decimal("120.00")
    assert coupon_service.calculate_discount(coupon, Decimal("900")) == Decimal("500.00")


def test_percentage_rounds_half_up(db_session):
    coupon = _coupon("TEN", type_="percentage", value="10")
    assert coupon_service.calculate_discount(coupon, Decimal("0.05")) == Decimal("0.01")


@pytest.mark.parametrize("code, expected", [
    ("", "Invalid coupon code"),
    ("NOPE", "Invalid coupon code"),
])
def test_unknown_codes_are_invalid(user, code, expected):
    result = coupon_service.validate_coupon(code, user.id, 500)
    assert not result.valid
    assert result.message == expected


def test_inactive_coupon_is_invalid(user):
    coupon = _coupon("OLD")
    coupon.is_active = False
    db.session.commit()

    assert coupon_service.validate_coupon("OLD", user.id, 500).message == "Invalid coupon code"


def test_date_window_messages(user):
    _coupon("SOON", valid_from=utcnow() + timedelta(days=2))
    _coupon("GONE", valid_until=utcnow() - timedelta(days=2))

    assert coupon_service.validate_coupon("SOON", user.id, 500).message == "Coupon is not yet active"
    assert coupon_service.validate_coupon("GONE", user.id, 500).message == "Coupon has expired"


def test_minimum_order_message(user, save20):
    result = coupon_service.validate_coupon("SAVE20", user.id, 999)
    assert not result.valid
    assert result.message == "Minimum order amount of ₹1000.00 required"


def test_negative_amount_is_a_validation_error(user, save20):
    with pytest.raises(ValidationError):
        coupon_service.validate_coupon("SAVE20", user.id, -1)


def test_per_user_usage_limit(user, other_user, save20, make_product):
    product = make_product(price="1500.00")
    order = _order_for(user, product, save20)

    assert coupon_service.apply_coupon(save20.id, user.id, order.id, Decimal("200"))

    result = coupon_service.validate_coupon("SAVE20", user.id, 1500)
    assert not result.valid
    assert result.message == "You have reached the usage limit for this coupon (1 uses per user)"

    # The limit is per user, not global
    assert coupon_service.validate_coupon("SAVE20", other_user.id, 1500).valid


def test_apply_is_idempotent_per_order(user, save20, make_product):
    order = _order_for(user, make_product(price="1500.00"), save20)

    assert coupon_service.apply_coupon(save20.id, user.id, order.id, 200) is True
    assert coupon_service.apply_coupon(save20.id, user.id, order.id, 200) is False

    db.session.expire_all()
    assert db.session.query(CouponUsage).count() == 1
    assert db.session.get(Coupon, save20.id).used_count == 1


def test_release_redemption_on_cancel(user, save20, make_product):
    order = _order_for(user, make_product(price="1500.00"), save20)
    coupon_service.apply_coupon(save20.id, user.id, order.id, 200)

    order_service.update_status(order.id, "cancelled", reason="Changed mind")

    db.session.expire_all()
    assert db.session.query(CouponUsage).count() == 0
    assert db.session.get(Coupon, save20.id).used_count == 0
    assert coupon_service.validate_coupon("SAVE20", user.id, 1500).valid


def test_best_coupon_prefers_largest_discount_then_oldest(user, save20):
    _coupon("FLAT150", value="150", is_public=True)
    _coupon("FLAT200", value="200", is_public=True)
    _coupon("SECRET", value="900", is_public=False)

    best = coupon_service.get_best_coupon_for_order(user.id, 1500)
    assert best.coupon.code == "SAVE20"
    assert best.discount_amount == Decimal("200.00")

    best = coupon_service.get_best_coupon_for_order(user.id, 500)
    assert best.coupon.code == "FLAT200"


def test_best_coupon_none_when_nothing_applies(user, save20):
    assert coupon_service.get_best_coupon_for_order(user.id, 10) is None


# =============================================================================
# ADMIN
# =============================================================================

def test_create_coupon_uppercases_and_rejects_duplicates(db_session):
    coupon = coupon_service.create_coupon({
        "code": "welcome10",
        "name": "Welcome",
        "type": "percentage",
        "value": "10",
    })
    assert coupon.code == "WELCOME10"

    with pytest.raises(ConflictError, match="Coupon code already exists"):
        coupon_service.create_coupon({"code": "Welcome10", "name": "Dup", "type": "fixed", "value": "5"})


@pytest.mark.parametrize("payload, message", [
    ({"type": "bogus", "value": "10"}, "Coupon type must be either percentage or fixed"),
    ({"type": "percentage", "value": "150"}, "Percentage discount must be between 0 and 100"),
    ({"type": "fixed", "value": "0"}, "Fixed discount must be a positive amount"),
])
def test_create_coupon_rules(db_session, payload, message):
    with pytest.raises(ValidationError, match=message):
        coupon_service.create_coupon({"code": "X1", "name": "X", **payload})


def test_update_and_soft_delete(db_session):
    coupon = _coupon("EDIT", value="50")

    updated = coupon_service.update_coupon(coupon.id, {"value": "75", "name": "Edited"})
    assert updated.value == Decimal("75.00")
    assert updated.name == "Edited"

    coupon_service.delete_coupon(coupon.id)
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).is_active is False


def test_hard_delete_keeps_order_coupon_code(user, make_product):
    coupon = _coupon("GONE100")
    order = _order_for(user, make_product(price="900.00"), coupon)
    coupon_service.apply_coupon(coupon.id, user.id, order.id, 100)

    coupon_service.delete_coupon(coupon.id, hard=True)

    db.session.expire_all()
    refreshed = order_service.get_order(order.id)
    assert refreshed.coupon_id is None
    assert refreshed.coupon_code == "GONE100"
    assert db.session.get(Coupon, coupon.id) is None


def test_coupon_stats(user, save20, make_product):
    order = _order_for(user, make_product(price="1500.00"), save20)
    coupon_service.apply_coupon(save20.id, user.id, order.id, 200)

    stats = coupon_service.get_coupon_stats(save20.id)
    assert stats["total_usage"] == 1
    assert stats["unique_users"] == 1
    assert stats["total_discount"] == "200.00"
    assert stats["revenue_generated"] == "0.00"

    overall = coupon_service.get_overall_coupon_stats()
    assert overall["total_coupons"] == 1
    assert overall["total_redemptions"] == 1
