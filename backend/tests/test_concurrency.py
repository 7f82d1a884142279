"""
Threaded concurrency checks against a file-backed SQLite database.

Each worker runs in its own app context, so it gets its own scoped
session and connection.
"""
import os
import tempfile
import threading
import unittest

from marketplace import create_app
from marketplace.errors import InsufficientStock
from marketplace.extensions import db
from marketplace.models import InventoryRecord, Product, Store, User
from marketplace.services import inventory_service, order_service
from marketplace.services.order_service import CreateOrderRequest, OrderLineRequest


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "DB_RETRY_ATTEMPTS": 5,
            "DB_RETRY_BACKOFF_SECONDS": 0.05,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            store = Store(name="Concurrency Store")
            user = User(email="concurrent@example.com")
            product = Product(name="Concurrent Product", price_cents=1000)
            db.session.add_all([store, user, product])
            db.session.commit()

            record = InventoryRecord(store_id=store.id, name="Shelf", available_quantity=5)
            record.products = [product]
            db.session.add(record)
            db.session.commit()

            self.store_id = store.id
            self.user_id = user.id
            self.product_id = product.id
            self.inventory_id = record.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, count):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(count)

        def worker():
            with self.app.app_context():
                try:
                    barrier.wait()
                    value = target()
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_concurrent_reserve_allows_exactly_one(self):
        results = self._run_threads(lambda: inventory_service.reserve(self.inventory_id, 5) and "reserved", 2)

        self.assertEqual(results.count("reserved"), 1)
        failures = [r for r in results if r != "reserved"]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InsufficientStock)

        with self.app.app_context():
            record = db.session.get(InventoryRecord, self.inventory_id)
            self.assertEqual(record.available_quantity, 0)
            self.assertEqual(record.reserved_quantity, 5)

    def test_concurrent_orders_get_unique_numbers(self):
        def place():
            order = order_service.create_order(CreateOrderRequest(
                user_id=self.user_id,
                store_id=self.store_id,
                delivery_address="Pickup counter",
                items=[OrderLineRequest(product_id=self.product_id, quantity=1)],
                delivery_method="pickup",
            ))
            return order.order_number

        results = self._run_threads(place, 5)

        errors = [r for r in results if isinstance(r, Exception)]
        self.assertFalse(errors)
        self.assertEqual(len(set(results)), 5)

        with self.app.app_context():
            record = db.session.get(InventoryRecord, self.inventory_id)
            self.assertEqual(record.available_quantity, 0)
            self.assertEqual(record.reserved_quantity, 5)


if __name__ == "__main__":
    unittest.main()
