from datetime import timedelta

from storefront.extensions import db
from storefront.models import CartActivity, Coupon, Product, User
from storefront.services import cart_service


def test_seed_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "seed"])
    assert result.exit_code == 0
    assert "DONE Seed complete." in result.output

    result = runner.invoke(args=["system", "seed"])
    assert "WARN  User 'admin@storefront.local' already exists" in result.output

    db.session.expire_all()
    assert db.session.query(User).count() == 2
    assert db.session.query(Product).count() == 4
    assert db.session.query(Coupon).filter_by(code="SAVE20").count() == 1


def test_low_stock_report(app, make_product):
    make_product(name="Almost Gone", stock=2)
    make_product(name="Plenty", stock=40)

    result = app.test_cli_runner().invoke(args=["maintenance", "low-stock-report"])

    assert "Almost Gone" in result.output
    assert "Plenty" not in result.output


def test_users_create_and_anonymize(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["users", "create", "--email", "Ops@Example.com", "--name", "Ops", "--role", "admin"])
    assert "PASS Created user: ops@example.com with role 'admin'" in result.output

    result = runner.invoke(args=["users", "create", "--email", "ops@example.com", "--name", "Ops"])
    assert "FAIL Failed to create user: A user with this email already exists" in result.output

    user_id = db.session.query(User.id).filter_by(email="ops@example.com").scalar()
    result = runner.invoke(args=["users", "anonymize", user_id, "--yes"])
    assert "PASS Anonymized" in result.output


def test_detect_abandoned_carts(app, user, make_product):
    product = make_product()
    cart_service.add_item(product.id, 1, user_id=user.id)
    activity = db.session.query(CartActivity).filter_by(user_id=user.id).one()
    activity.last_activity = activity.last_activity - timedelta(hours=5)
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["maintenance", "detect-abandoned-carts", "--hours", "2"])

    assert "Marked 1 carts as abandoned." in result.output
