"""
Concurrent checkout and stock updates against a file-backed SQLite database.

In-memory SQLite shares one connection, so these tests use a temp file to get
real lock contention between threads.
"""

import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from storefront import create_app
from storefront.errors import ConflictError
from storefront.extensions import db
from storefront.models import InventoryHistoryEntry, Order, Product, User
from storefront.services import cart_service, checkout_service, inventory_service


ADDRESS = {
    "first_name": "Load",
    "last_name": "Test",
    "address_line_1": "1 Test Street",
    "city": "Pune",
    "state": "MH",
    "postal_code": "411001",
    "country": "India",
}


class ConcurrencyTestCase(unittest.TestCase):

    def setUp(self):
        fd, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{self.db_path}",
            "PAYMENT_GATEWAY": "fake",
            "SHIPPING_CARRIER": "fake",
            "NOTIFIER": "fake",
        })
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
        self.ctx.pop()
        os.remove(self.db_path)

    def _product(self, stock):
        product = Product(sku="CONC-1", name="Limited Print", price=Decimal("1200.00"), stock_quantity=stock)
        db.session.add(product)
        db.session.commit()
        return product.id

    def _run_in_threads(self, func, args_list):
        def _call(args):
            with self.app.app_context():
                return func(*args)

        with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
            return list(pool.map(_call, args_list))

    def test_checkout_never_oversells(self):
        """Five buyers, three units: exactly three orders, stock ends at zero."""
        product_id = self._product(stock=3)
        user_ids = []
        for n in range(5):
            user = User(email=f"buyer{n}@example.com", name=f"Buyer {n}")
            db.session.add(user)
            db.session.commit()
            cart_service.add_item(product_id, 1, user_id=user.id)
            user_ids.append(user.id)

        def _checkout(user_id):
            try:
                checkout_service.checkout_from_cart(user_id, shipping_address=ADDRESS)
                return "ok"
            except ConflictError as exc:
                return exc.message

        results = self._run_in_threads(_checkout, [(uid,) for uid in user_ids])

        self.assertEqual(results.count("ok"), 3)
        self.assertEqual(results.count("Insufficient stock for Limited Print"), 2)

        db.session.expire_all()
        self.assertEqual(db.session.get(Product, product_id).stock_quantity, 0)
        self.assertEqual(db.session.query(Order).count(), 3)
        sales = db.session.query(InventoryHistoryEntry).filter_by(change_type="sale").count()
        self.assertEqual(sales, 3)

    def test_parallel_adjustments_keep_history_consistent(self):
        product_id = self._product(stock=10)

        self._run_in_threads(
            inventory_service.update_stock,
            [(product_id, -1, "sale") for _ in range(10)],
        )

        db.session.expire_all()
        self.assertEqual(db.session.get(Product, product_id).stock_quantity, 0)

        entries = db.session.query(InventoryHistoryEntry).filter_by(product_id=product_id).all()
        self.assertEqual(len(entries), 10)
        # Every decrement saw a distinct starting level
        self.assertEqual(sorted(e.previous_quantity for e in entries), list(range(1, 11)))
        self.assertTrue(all(e.new_quantity == e.previous_quantity - 1 for e in entries))


if __name__ == "__main__":
    unittest.main()
