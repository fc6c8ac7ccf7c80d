"""
Concurrency tests against a file-backed SQLite database.

Real threads share only the database, as independent request handlers do.
The interleaving tests force a competing commit between a unit's read and
its write to show the retry path deterministically.
"""
import os
import tempfile
import threading
import unittest
from datetime import date

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from gasledger import create_app
from gasledger.extensions import db
from gasledger.models import Employee, Product, ReturnTransaction, StockAssignment
from gasledger.models.catalog import CATEGORY_GAS
from gasledger.models.stock import ASSIGNMENT_RECEIVED
from gasledger.services import aggregation_service, return_service, sales_service
from gasledger.services.aggregation_service import AggregateDelta, get_daily_aggregate, upsert_daily_aggregate
from gasledger.services.assignment_service import consume_assignment
from gasledger.services.concurrency import run_with_retry
from gasledger.services.invoice_service import next_invoice_number
from gasledger.validation import ConflictError, InsufficientStockError


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30, "check_same_thread": False}},
            "DB_RETRY_ATTEMPTS": 8,
            "DB_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            product = Product(name="LPG 12kg", category=CATEGORY_GAS, current_stock=10, least_price_cents=4500)
            employee = Employee(name="Driver One")
            db.session.add_all([product, employee])
            db.session.commit()
            self.product_id = product.id
            self.employee_id = employee.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, count, *args):
        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    value = target(*args)
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

    def _stock(self):
        with self.app.app_context():
            return db.session.get(Product, self.product_id).current_stock

    def test_concurrent_invoice_numbers_are_contiguous(self):
        results = self._run_threads(next_invoice_number, 12)

        self.assertFalse([r for r in results if isinstance(r, Exception)])
        self.assertEqual(sorted(results), [str(n) for n in range(10000, 10012)])

    def test_concurrent_sales_cannot_oversell(self):
        def sell():
            return sales_service.create_sale([{"product_id": self.product_id, "quantity": 6}]).invoice_number

        results = self._run_threads(sell, 2)

        posted = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(posted), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InsufficientStockError)
        self.assertEqual(self._stock(), 4)

    def test_concurrent_consumption_never_double_draws(self):
        with self.app.app_context():
            for _ in range(2):
                db.session.add(StockAssignment(
                    employee_id=self.employee_id,
                    product_id=self.product_id,
                    quantity=5,
                    remaining_quantity=5,
                    least_price_cents=4500,
                    status=ASSIGNMENT_RECEIVED,
                ))
            db.session.commit()

        results = self._run_threads(consume_assignment, 4, self.employee_id, self.product_id, 2)

        self.assertFalse([r for r in results if isinstance(r, Exception)])
        self.assertEqual(sum(r.consumed for r in results), 8)
        with self.app.app_context():
            remaining = sum(a.remaining_quantity for a in db.session.query(StockAssignment))
        self.assertEqual(remaining, 2)

    def test_concurrent_rollup_increments_are_not_lost(self):
        day = date(2024, 5, 1)

        def bump():
            return upsert_daily_aggregate(day, self.product_id, None, "gas_sale", AggregateDelta(1, 100)).id

        results = self._run_threads(bump, 10)

        self.assertFalse([r for r in results if isinstance(r, Exception)])
        with self.app.app_context():
            row = get_daily_aggregate(day, self.product_id)
            self.assertEqual((row.gas_sales_qty, row.gas_sales_cents, row.event_count), (10, 1000, 10))

    def test_only_one_admin_accepts_a_return(self):
        with self.app.app_context():
            ret = ReturnTransaction(
                employee_id=self.employee_id,
                product_id=self.product_id,
                stock_type="gas",
                quantity=3,
            )
            db.session.add(ret)
            db.session.commit()
            return_id = ret.id

        results = self._run_threads(return_service.accept_return, 3, return_id)

        accepted = [r for r in results if isinstance(r, ReturnTransaction)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        self.assertEqual((len(accepted), len(conflicts)), (1, 2))
        self.assertEqual(self._stock(), 13)

    def test_stale_stock_write_is_retried(self):
        """A competing commit between read and write forces a fresh re-check."""
        original = sales_service._load_product
        calls = {"count": 0}

        def load_then_compete(product_id, *, lock=False):
            product = original(product_id, lock=lock)
            calls["count"] += 1
            # Call 1 is the read-time precheck; call 2 is the first read inside the unit
            if calls["count"] == 2:
                # Another handler sells 5 units after this unit read stock=10
                with Session(db.engine) as other:
                    competitor = other.get(Product, product_id)
                    competitor.current_stock -= 5
                    other.commit()
            return product

        with self.app.app_context():
            sales_service._load_product = load_then_compete
            try:
                with self.assertRaises(InsufficientStockError):
                    sales_service.create_sale([{"product_id": self.product_id, "quantity": 6}])
            finally:
                sales_service._load_product = original

        # The unit read 10, lost to the competitor, re-read 5 and refused
        self.assertEqual(calls["count"], 3)
        self.assertEqual(self._stock(), 5)

    def test_retry_gives_up_after_budget(self):
        attempts = {"count": 0}

        def always_stale():
            attempts["count"] += 1
            raise StaleDataError("row changed underneath")

        with self.app.app_context():
            with self.assertRaises(StaleDataError):
                run_with_retry(always_stale, attempts=3, backoff_base=0)
        self.assertEqual(attempts["count"], 3)

    def test_soft_rollup_failure_keeps_sale(self):
        original = aggregation_service.upsert_daily_aggregate

        def broken(*args, **kwargs):
            raise RuntimeError("rollup store down")

        with self.app.app_context():
            aggregation_service.upsert_daily_aggregate = broken
            try:
                sale = sales_service.create_sale([{"product_id": self.product_id, "quantity": 1}])
            finally:
                aggregation_service.upsert_daily_aggregate = original
            self.assertIsNotNone(sale.id)
        self.assertEqual(self._stock(), 9)


if __name__ == "__main__":
    unittest.main(verbosity=2)
