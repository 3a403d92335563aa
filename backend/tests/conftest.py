"""
Pytest fixtures for storefront backend tests.

Provides an in-memory database, fake integrations, and common catalog data.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.integrations import get_integrations, init_integrations
from storefront.models import Coupon, Product, User
from storefront.services import cart_service
from storefront.time_utils import utcnow


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'PAYMENT_GATEWAY': 'fake',
    'PAYMENT_KEY_ID': 'rzp_test_key',
    'PAYMENT_KEY_SECRET': 'test-key-secret',
    'PAYMENT_WEBHOOK_SECRET': 'test-webhook-secret',
    'SHIPPING_CARRIER': 'fake',
    'NOTIFIER': 'fake',
    'ADMIN_EMAIL': 'admin@storefront.test',
}

ADDRESS = {
    "first_name": "Asha",
    "last_name": "Rao",
    "address_line_1": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560001",
    "country": "India",
    "phone": "9876543210",
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Empty every table and install fresh fake integrations."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        init_integrations(app)

        yield db.session

        db.session.rollback()


@pytest.fixture
def integrations(db_session):
    return get_integrations()


@pytest.fixture
def address():
    return dict(ADDRESS)


def _make_user(email, name, role="customer"):
    user = User(email=email, name=name, role=role)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def user(db_session):
    return _make_user("asha@example.com", "Asha Rao")


@pytest.fixture
def other_user(db_session):
    return _make_user("vikram@example.com", "Vikram Shah")


@pytest.fixture
def admin(db_session):
    return _make_user("admin@example.com", "Store Admin", role="admin")


@pytest.fixture
def make_product(db_session):
    counter = {"n": 0}

    def _make(name="Widget", price="500.00", stock=10, discount_price=None, is_active=True):
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:03d}",
            name=name,
            price=Decimal(price),
            discount_price=Decimal(discount_price) if discount_price else None,
            stock_quantity=stock,
            is_active=is_active,
        )
        db.session.add(product)
        db.session.commit()
        return product

    return _make


@pytest.fixture
def save20(db_session):
    """20% off, min 1000, capped at 200, once per user."""
    coupon = Coupon(
        code="SAVE20",
        name="Save 20%",
        type="percentage",
        value=Decimal("20"),
        minimum_order_amount=Decimal("1000"),
        maximum_discount_amount=Decimal("200"),
        usage_limit=1,
        is_active=True,
        is_public=True,
        valid_from=utcnow() - timedelta(days=1),
        valid_until=utcnow() + timedelta(days=30),
    )
    db.session.add(coupon)
    db.session.commit()
    return coupon


@pytest.fixture
def fill_cart(db_session):
    def _fill(user, *lines):
        for product, quantity in lines:
            cart_service.add_item(product.id, quantity, user_id=user.id)
    return _fill


@pytest.fixture
def user_headers(user):
    return {"X-User-Id": user.id}


@pytest.fixture
def admin_headers(admin):
    return {"X-User-Id": admin.id}
