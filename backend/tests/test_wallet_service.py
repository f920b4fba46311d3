# Overview: Pytest coverage for wallet operations, deposit bonuses, and the ledger invariants.

"""
Wallet Service Tests

Covers:
- Bonus tiers on deposits (floored to a whole major unit)
- Idempotent deposits on reference
- Deduct with insufficient funds leaves the wallet untouched
- Refunds and administrative adjustments
- Replaying the ledger reproduces the stored counters
- Invariant violations are flagged and raised
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from billing_core.errors import InsufficientFundsError, InvariantViolationError, NotFoundError, ValidationError
from billing_core.models import CompanyWallet, ReconciliationFlag, WalletTransaction
from billing_core.models.wallet import TXN_BONUS, TXN_DEDUCT, TXN_DEPOSIT
from billing_core.money import Money
from billing_core.services import wallet_service
from billing_core.services.ledger_service import reconcile_all_wallets, reconcile_wallet, replay_wallet
from billing_core.time_utils import utcnow


class TestBonusTiers:
    """Tier percent applied to the deposited amount, rounded down to a major unit."""

    @pytest.mark.parametrize("amount_cents,expected_bonus", [
        (9_999, 0),          # 99.99: below the first tier
        (10_000, 1_000),     # 100.00 at 10%
        (45_000, 4_500),     # 450.00 at 10%
        (50_000, 7_500),     # 500.00 at 15%
        (99_900, 14_900),    # 999.00 at 15% = 149.85 -> 149.00
        (100_000, 20_000),   # 1000.00 at 20%
        (500_000, 150_000),  # 5000.00 at 30%
    ])
    def test_calculate_bonus(self, amount_cents, expected_bonus):
        assert wallet_service.calculate_bonus(Money(amount_cents)).cents == expected_bonus

    def test_deposit_writes_bonus_transaction(self, db_session, company):
        result = wallet_service.deposit(company.id, 100_000, payment_method="CARD", reference="r1")

        assert not result.duplicate
        assert result.bonus_cents == 20_000
        assert result.bonus_transaction.type == TXN_BONUS
        assert result.bonus_transaction.related_transaction_id == result.transaction.id
        assert result.transaction.metadata_json == {"bonus_cents": 20_000, "bonus_percent": 20}

        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == 120_000
        assert wallet.total_deposited_cents == 100_000
        assert wallet.total_bonus_cents == 20_000

    def test_small_deposit_has_no_bonus(self, db_session, company):
        result = wallet_service.deposit(company.id, 5_000)
        assert result.bonus_transaction is None
        assert wallet_service.get_balance(company.id).balance_cents == 5_000


class TestDeposits:
    def test_duplicate_reference_is_idempotent(self, db_session, company):
        """Second call with the same reference returns the first transaction."""
        first = wallet_service.deposit(company.id, 45_000, reference="gw-123")
        second = wallet_service.deposit(company.id, 45_000, reference="gw-123")

        assert second.duplicate
        assert second.transaction.id == first.transaction.id
        assert second.bonus_transaction.id == first.bonus_transaction.id

        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == 49_500
        assert db_session.query(WalletTransaction).filter_by(type=TXN_DEPOSIT).count() == 1

    def test_same_reference_in_other_company_is_independent(self, db_session, company, other_company):
        wallet_service.deposit(company.id, 1_000, reference="shared")
        result = wallet_service.deposit(other_company.id, 1_000, reference="shared")
        assert not result.duplicate

    @pytest.mark.parametrize("amount", [0, -100, 10.5, "100"])
    def test_rejects_invalid_amounts(self, db_session, company, amount):
        with pytest.raises(ValidationError):
            wallet_service.deposit(company.id, amount)

    def test_unknown_company(self, db_session):
        with pytest.raises(NotFoundError):
            wallet_service.deposit(99_999, 1_000)

    def test_archived_wallet_rejects_deposits(self, db_session, company):
        wallet_service.deposit(company.id, 1_000)
        wallet_service.archive_wallet(company.id)
        with pytest.raises(ValidationError):
            wallet_service.deposit(company.id, 1_000)


class TestDeduct:
    def test_deduct_updates_counters(self, db_session, company):
        wallet_service.deposit(company.id, 10_000)  # +1000 bonus
        txn = wallet_service.deduct(company.id, 2_500, "Feature charge")

        assert txn.type == TXN_DEDUCT
        assert txn.balance_before_cents == 11_000
        assert txn.balance_after_cents == 8_500

        wallet = wallet_service.get_balance(company.id)
        assert wallet.total_spent_cents == 2_500

    def test_insufficient_funds_leaves_wallet_unchanged(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        version_before = wallet_service.get_balance(company.id).version_id

        with pytest.raises(InsufficientFundsError) as exc_info:
            wallet_service.deduct(company.id, 5_001, "Too much")

        assert exc_info.value.required_cents == 5_001
        assert exc_info.value.available_cents == 5_000

        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == 5_000
        assert wallet.version_id == version_before
        assert db_session.query(WalletTransaction).filter_by(type=TXN_DEDUCT).count() == 0

    def test_deduct_exact_balance(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        wallet_service.deduct(company.id, 5_000, "All of it")
        assert wallet_service.get_balance(company.id).balance_cents == 0

    def test_deduct_from_new_wallet_fails(self, db_session, company):
        with pytest.raises(InsufficientFundsError):
            wallet_service.deduct(company.id, 1, "Nothing there")


class TestRefundAndAdjust:
    def test_refund_links_original(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        charge = wallet_service.deduct(company.id, 3_000, "Charge")
        refund = wallet_service.refund(company.id, 1_000, original_transaction_id=charge.id)

        assert refund.related_transaction_id == charge.id
        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == 3_000
        assert wallet.total_refunded_cents == 1_000

    def test_refund_of_foreign_transaction_rejected(self, db_session, company, other_company):
        wallet_service.deposit(other_company.id, 5_000)
        foreign = wallet_service.deduct(other_company.id, 1_000, "Charge")
        with pytest.raises(NotFoundError):
            wallet_service.refund(company.id, 500, original_transaction_id=foreign.id)

    def test_adjustment_requires_actor(self, db_session, company):
        with pytest.raises(ValidationError):
            wallet_service.adjust(company.id, 500, "Goodwill", actor_id=None)
        with pytest.raises(ValidationError):
            wallet_service.adjust(company.id, 500, "", actor_id=7)

    def test_adjustment_moves_balance_only(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        wallet_service.adjust(company.id, 700, "Goodwill credit", actor_id=7)
        wallet_service.adjust(company.id, -200, "Correction", actor_id=7)

        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == 5_500
        assert wallet.total_adjusted_cents == 500
        assert wallet.total_deposited_cents == 5_000
        assert wallet.total_spent_cents == 0

    def test_negative_adjustment_can_go_below_zero(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        txn = wallet_service.adjust(company.id, -6_000, "Reverse mistaken credit", actor_id=7)
        assert txn.balance_after_cents == -1_000

        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == -1_000
        assert wallet.total_adjusted_cents == -6_000
        assert reconcile_wallet(wallet)["ok"]

        # Nothing can be charged until the company recharges
        with pytest.raises(InsufficientFundsError):
            wallet_service.deduct(company.id, 100, "Subscription")


class TestLedgerInvariants:
    def _activity(self, company_id):
        wallet_service.deposit(company_id, 100_000, reference="a")
        wallet_service.deduct(company_id, 15_000, "Subscription")
        wallet_service.refund(company_id, 5_000)
        wallet_service.adjust(company_id, -2_500, "Correction", actor_id=1)
        wallet_service.deposit(company_id, 45_000, reference="b")

    def test_replay_reproduces_counters(self, db_session, company):
        self._activity(company.id)
        wallet = wallet_service.get_balance(company.id)

        totals = replay_wallet(wallet.id)
        assert totals.matches(wallet)
        assert totals.balance_cents == 100_000 + 20_000 - 15_000 + 5_000 - 2_500 + 45_000 + 4_500
        assert wallet.balance_cents == wallet.expected_balance_cents()
        assert reconcile_wallet(wallet)["ok"]

    def test_snapshots_chain(self, db_session, company):
        self._activity(company.id)
        rows = wallet_service.list_transactions(company.id, per_page=100, newest_first=False)["items"]
        for prev, cur in zip(rows, rows[1:]):
            assert cur["balance_before_cents"] == prev["balance_after_cents"]

    def test_counter_mismatch_is_flagged_and_raised(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        db_session.execute(
            update(CompanyWallet)
            .where(CompanyWallet.company_id == company.id)
            .values(balance_cents=CompanyWallet.balance_cents + 1)
        )
        db_session.commit()

        with pytest.raises(InvariantViolationError) as exc_info:
            wallet_service.get_balance(company.id)

        assert exc_info.value.public_message() != str(exc_info.value)
        flag = db_session.query(ReconciliationFlag).one()
        assert flag.check_name == "COUNTERS"
        assert flag.expected_cents == 5_000
        assert flag.actual_cents == 5_001

    def test_replay_mismatch_is_flagged_not_corrected(self, db_session, company):
        wallet_service.deposit(company.id, 5_000)
        # Counters still add up, but no transaction backs the extra 10.00
        db_session.execute(
            update(CompanyWallet)
            .where(CompanyWallet.company_id == company.id)
            .values(
                balance_cents=CompanyWallet.balance_cents + 1_000,
                total_deposited_cents=CompanyWallet.total_deposited_cents + 1_000,
            )
        )
        db_session.commit()

        results = reconcile_all_wallets()
        assert [r["ok"] for r in results] == [False]
        assert results[0]["replayed"]["balance_cents"] == 5_000

        wallet = wallet_service.get_balance(company.id)
        assert wallet.balance_cents == 6_000
        assert db_session.query(ReconciliationFlag).filter_by(check_name="REPLAY").count() == 1


class TestListTransactions:
    def test_pagination_and_filters(self, db_session, company):
        for i in range(5):
            wallet_service.deposit(company.id, 10_000, reference=f"dep-{i}")
        wallet_service.deduct(company.id, 1_000, "Charge")

        page1 = wallet_service.list_transactions(company.id, page=1, per_page=4)
        assert page1["count"] == 4
        assert page1["pagination"]["total"] == 11
        assert page1["pagination"]["total_pages"] == 3
        assert page1["pagination"]["has_next"]
        assert not page1["pagination"]["has_prev"]
        assert page1["items"][0]["type"] == TXN_DEDUCT

        deposits = wallet_service.list_transactions(company.id, txn_type=TXN_DEPOSIT)
        assert deposits["pagination"]["total"] == 5

        future = wallet_service.list_transactions(company.id, start=utcnow() + timedelta(days=1))
        assert future["count"] == 0

    def test_invalid_type_rejected(self, db_session, company):
        with pytest.raises(ValidationError):
            wallet_service.list_transactions(company.id, txn_type="GIFT")

    def test_no_wallet_returns_empty_page(self, db_session, company):
        result = wallet_service.list_transactions(company.id)
        assert result["items"] == []
        assert result["pagination"]["total"] == 0


class TestWalletStats:
    def test_archived_wallets_excluded(self, db_session, company, other_company):
        wallet_service.deposit(company.id, 10_000)
        wallet_service.deposit(other_company.id, 20_000)
        wallet_service.archive_wallet(other_company.id)

        stats = wallet_service.get_wallet_stats()
        assert stats["active_wallets"] == 1
        assert stats["total_balance_cents"] == 11_000
        assert stats["total_bonus_cents"] == 1_000
