# Overview: Threaded concurrency tests for wallet deductions and the billing cycle.

"""
Concurrency tests against a file-backed SQLite database.

Each worker thread runs in its own app context (own session), the way
parallel billing workers do.
"""
import os
import tempfile
import threading
import unittest
from datetime import datetime, timedelta

from billing_core import create_app
from billing_core.errors import InsufficientFundsError
from billing_core.extensions import db
from billing_core.models import Company
from billing_core.services import catalog_service, subscription_service, wallet_service
from billing_core.services.ledger_service import reconcile_wallet

NOW = datetime(2026, 1, 10, 9, 0, 0)
TRIAL_END = NOW + timedelta(days=14)


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()
            catalog_service.create_app_listing("crm", "CRM", "SUBSCRIPTION", 15000)

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _company_with_trial(self, name, deposit_cents):
        with self.app.app_context():
            company = Company(name=name, is_active=True)
            db.session.add(company)
            db.session.commit()
            wallet_service.deposit(company.id, deposit_cents)
            subscription_service.install_app(company.id, "crm", now=NOW)
            return company.id

    def _run_threads(self, targets):
        threads = [threading.Thread(target=t) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_concurrent_deductions_never_overdraw(self):
        with self.app.app_context():
            company = Company(name="Deduct Co", is_active=True)
            db.session.add(company)
            db.session.commit()
            company_id = company.id
            # 100.00 without a bonus tier: 90.00 paid in plus a 10.00 credit
            wallet_service.deposit(company_id, 9000)
            wallet_service.adjust(company_id, 1000, "Opening credit", actor_id=1)

        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    wallet_service.deduct(company_id, 1000, "Concurrent charge")
                    with lock:
                        results.append("deducted")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([worker] * 50)

        declined = [r for r in results if isinstance(r, InsufficientFundsError)]
        self.assertEqual(results.count("deducted"), 10)
        self.assertEqual(len(declined), 40)

        with self.app.app_context():
            wallet = wallet_service.get_balance(company_id)
            self.assertEqual(wallet.balance_cents, 0)
            self.assertEqual(wallet.total_spent_cents, 10000)
            self.assertTrue(reconcile_wallet(wallet)["ok"])

    def test_parallel_cycle_bills_each_company_once(self):
        company_ids = [self._company_with_trial(f"Tenant {i}", 50000) for i in range(4)]

        with self.app.app_context():
            outcomes = subscription_service.run_billing_cycle(TRIAL_END, max_workers=4, settle_usage=False)

            charged = sorted(o.company_id for o in outcomes if o.result == subscription_service.RESULT_CHARGED)
            self.assertEqual(charged, sorted(company_ids))
            for company_id in company_ids:
                wallet = wallet_service.get_balance(company_id)
                self.assertEqual(wallet.balance_cents, 57500 - 15000)
                self.assertTrue(reconcile_wallet(wallet)["ok"])

    def test_overlapping_cycles_charge_once(self):
        company_id = self._company_with_trial("Overlap Co", 50000)

        outcomes = []
        errors = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    result = subscription_service.run_billing_cycle(TRIAL_END, settle_usage=False)
                    with lock:
                        outcomes.extend(result)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([worker, worker])

        self.assertFalse(errors)
        charged = [o for o in outcomes if o.result == subscription_service.RESULT_CHARGED]
        self.assertEqual(len(charged), 1)

        with self.app.app_context():
            wallet = wallet_service.get_balance(company_id)
            self.assertEqual(wallet.balance_cents, 57500 - 15000)
            self.assertTrue(reconcile_wallet(wallet)["ok"])


if __name__ == "__main__":
    unittest.main()
