# Overview: Threaded concurrency tests for the stock ledger and transfer transitions.

"""
Concurrency tests run against a temporary SQLite file so every worker thread
gets its own connection (an in-memory database would share one).
"""
import os
import tempfile
import threading
import unittest

from backoffice import create_app
from backoffice.errors import InvalidStateTransition
from backoffice.extensions import db
from backoffice.models import Location, Organization, Product, ReferenceType, StockMovement, TransferStatus
from backoffice.services import stock_ledger, transfer_service
from backoffice.services.stock_ledger import MovementMeta


ACTOR = "concurrency"


class LedgerConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 15}},
            "LEDGER_RETRY_ATTEMPTS": 10,
            "LEDGER_RETRY_BACKOFF": 0.05,
            "MARKETPLACE_SYNC_ENABLED": False,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            org = Organization(name="Concurrency Org", code="CONC")
            db.session.add(org)
            db.session.flush()

            loc_a = Location(org_id=org.id, name="A", is_main=True)
            loc_b = Location(org_id=org.id, name="B")
            db.session.add_all([loc_a, loc_b])

            product = Product(org_id=org.id, sku="CONCUR-1", name="Concurrent Product", price_cents=1000)
            db.session.add(product)
            db.session.commit()

            self.loc_a_id = loc_a.id
            self.loc_b_id = loc_b.id
            self.product_id = product.id

            stock_ledger.apply_stock_delta(self.product_id, self.loc_a_id, 10, self._meta("Seed inventory"))

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    @staticmethod
    def _meta(reason="Concurrent adjustment"):
        return MovementMeta(reason=reason, reference_type=ReferenceType.ADJUSTMENT, actor=ACTOR)

    def _run_threads(self, targets):
        threads = [threading.Thread(target=t) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_concurrent_deltas_sum_exactly(self):
        errors = []
        lock = threading.Lock()

        def worker(delta):
            def _run():
                with self.app.app_context():
                    try:
                        stock_ledger.apply_stock_delta(self.product_id, self.loc_a_id, delta, self._meta())
                    except Exception as exc:
                        with lock:
                            errors.append(exc)
                    finally:
                        db.session.remove()
            return _run

        self._run_threads([worker(5), worker(-3), worker(2)])

        self.assertFalse(errors)
        with self.app.app_context():
            self.assertEqual(stock_ledger.get_quantity(self.product_id, self.loc_a_id), 14)
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 14)
            self.assertEqual(db.session.query(StockMovement).count(), 4)
            self.assertEqual(stock_ledger.find_drift(), [])

    def test_many_small_deltas_across_locations(self):
        errors = []
        lock = threading.Lock()

        def worker(location_id):
            def _run():
                with self.app.app_context():
                    try:
                        for _ in range(5):
                            stock_ledger.apply_stock_delta(self.product_id, location_id, 1, self._meta())
                    except Exception as exc:
                        with lock:
                            errors.append(exc)
                    finally:
                        db.session.remove()
            return _run

        self._run_threads([worker(self.loc_a_id), worker(self.loc_b_id), worker(self.loc_b_id)])

        self.assertFalse(errors)
        with self.app.app_context():
            self.assertEqual(stock_ledger.get_quantity(self.product_id, self.loc_a_id), 15)
            self.assertEqual(stock_ledger.get_quantity(self.product_id, self.loc_b_id), 10)
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 25)
            self.assertEqual(stock_ledger.find_drift(), [])

    def test_concurrent_receipt_applies_once(self):
        with self.app.app_context():
            transfer = transfer_service.create_transfer(
                self.loc_a_id, self.loc_b_id, [{"product_id": self.product_id, "quantity": 4}], ACTOR
            )
            transfer_id = transfer.id

        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    transfer_service.receive_transfer(
                        transfer_id, [{"product_id": self.product_id, "quantity": 4}], ACTOR
                    )
                    with lock:
                        results.append("received")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([worker, worker])

        self.assertEqual(results.count("received"), 1)
        failures = [r for r in results if r != "received"]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InvalidStateTransition)

        with self.app.app_context():
            self.assertEqual(stock_ledger.get_quantity(self.product_id, self.loc_b_id), 4)
            self.assertEqual(stock_ledger.get_quantity(self.product_id, self.loc_a_id), 6)
            self.assertEqual(transfer_service.get_transfer(transfer_id).status, TransferStatus.RECEIVED)
            self.assertEqual(stock_ledger.find_drift(), [])

    def test_receive_and_cancel_race_has_one_winner(self):
        with self.app.app_context():
            transfer = transfer_service.create_transfer(
                self.loc_a_id, self.loc_b_id, [{"product_id": self.product_id, "quantity": 3}], ACTOR
            )
            transfer_id = transfer.id

        results = []
        lock = threading.Lock()

        def receive():
            with self.app.app_context():
                try:
                    transfer_service.receive_transfer(
                        transfer_id, [{"product_id": self.product_id, "quantity": 3}], ACTOR
                    )
                    with lock:
                        results.append("received")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        def cancel():
            with self.app.app_context():
                try:
                    transfer_service.cancel_transfer(transfer_id, ACTOR)
                    with lock:
                        results.append("cancelled")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([receive, cancel])

        winners = [r for r in results if isinstance(r, str)]
        self.assertEqual(len(winners), 1)
        self.assertTrue(all(isinstance(r, InvalidStateTransition) for r in results if not isinstance(r, str)))

        with self.app.app_context():
            qty_a = stock_ledger.get_quantity(self.product_id, self.loc_a_id)
            qty_b = stock_ledger.get_quantity(self.product_id, self.loc_b_id)
            if winners[0] == "received":
                self.assertEqual((qty_a, qty_b), (7, 3))
            else:
                self.assertEqual((qty_a, qty_b), (10, 0))
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 10)
            self.assertEqual(stock_ledger.find_drift(), [])


if __name__ == "__main__":
    unittest.main()
