# Overview: Ledger Store; the single writer of wallet rows and wallet transactions.

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app

from ..errors import InvariantViolationError, NotFoundError
from ..extensions import db
from ..models import Company, CompanyWallet, ReconciliationFlag, WalletTransaction
from ..models.wallet import (
    TXN_ADJUSTMENT,
    TXN_BONUS,
    TXN_DEDUCT,
    TXN_DEPOSIT,
    TXN_REFUND,
)
from ..time_utils import utcnow
from .concurrency import lock_for_update
"""
Ledger Invariants (authoritative)

- Wallet transactions are append-only; no updates, no deletes.
- A transaction row and the wallet row it changes are written in the same
  DB transaction (append_transaction never commits on its own).
- balance = deposited + bonus - spent + refunded + adjusted, always.
- Folding a wallet's transactions in (created_at, id) order from zero
  reproduces every counter exactly.
- Violations are flagged and raised, never silently corrected.
"""


@dataclass
class LedgerTotals:
    """Counters rebuilt by replaying a wallet's transactions."""
    balance_cents: int = 0
    total_deposited_cents: int = 0
    total_spent_cents: int = 0
    total_refunded_cents: int = 0
    total_bonus_cents: int = 0
    total_adjusted_cents: int = 0
    transaction_count: int = 0

    def apply(self, txn_type: str, amount_cents: int) -> None:
        if txn_type == TXN_DEPOSIT:
            self.total_deposited_cents += amount_cents
            self.balance_cents += amount_cents
        elif txn_type == TXN_BONUS:
            self.total_bonus_cents += amount_cents
            self.balance_cents += amount_cents
        elif txn_type == TXN_DEDUCT:
            self.total_spent_cents += amount_cents
            self.balance_cents -= amount_cents
        elif txn_type == TXN_REFUND:
            self.total_refunded_cents += amount_cents
            self.balance_cents += amount_cents
        elif txn_type == TXN_ADJUSTMENT:
            self.total_adjusted_cents += amount_cents
            self.balance_cents += amount_cents
        else:
            raise ValueError(f"Unknown transaction type: {txn_type}")
        self.transaction_count += 1

    def matches(self, wallet: CompanyWallet) -> bool:
        return (
            self.balance_cents == wallet.balance_cents
            and self.total_deposited_cents == wallet.total_deposited_cents
            and self.total_spent_cents == wallet.total_spent_cents
            and self.total_refunded_cents == wallet.total_refunded_cents
            and self.total_bonus_cents == wallet.total_bonus_cents
            and self.total_adjusted_cents == wallet.total_adjusted_cents
        )

    def to_dict(self) -> dict:
        return {
            "balance_cents": self.balance_cents,
            "total_deposited_cents": self.total_deposited_cents,
            "total_spent_cents": self.total_spent_cents,
            "total_refunded_cents": self.total_refunded_cents,
            "total_bonus_cents": self.total_bonus_cents,
            "total_adjusted_cents": self.total_adjusted_cents,
            "transaction_count": self.transaction_count,
        }


# =============================================================================
# WALLET ROWS
# =============================================================================

def get_wallet(company_id: int, *, lock: bool = False) -> Optional[CompanyWallet]:
    query = db.session.query(CompanyWallet).filter_by(company_id=company_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def ensure_wallet(company_id: int, *, lock: bool = False) -> CompanyWallet:
    """
    Ensure a company has exactly one wallet record.

    Safe to call repeatedly (idempotent). A concurrent first call for the
    same company loses on the unique constraint and is retried by the
    caller's run_with_retry, which then finds the winner's row.
    """
    wallet = get_wallet(company_id, lock=lock)
    if wallet:
        return wallet

    company = db.session.get(Company, company_id)
    if not company:
        raise NotFoundError(f"Company {company_id} not found")

    wallet = CompanyWallet(
        company_id=company_id,
        currency=current_app.config.get("WALLET_DEFAULT_CURRENCY", "EGP"),
        balance_cents=0,
        total_deposited_cents=0,
        total_spent_cents=0,
        total_refunded_cents=0,
        total_bonus_cents=0,
        total_adjusted_cents=0,
        is_archived=not company.is_active,
    )
    db.session.add(wallet)
    db.session.flush()
    return wallet


# =============================================================================
# APPEND-ONLY WRITES
# =============================================================================

def append_transaction(
    wallet: CompanyWallet,
    *,
    txn_type: str,
    amount_cents: int,
    description: str,
    payment_method: str | None = None,
    reference: str | None = None,
    related_transaction_id: int | None = None,
    source_type: str | None = None,
    source_id: int | None = None,
    actor_id: int | None = None,
    metadata: dict | None = None,
) -> WalletTransaction:
    """
    Append one ledger movement and apply its signed effect to the wallet.

    - No validation of business rules here (callers own those).
    - No commit; the caller commits wallet + transaction as one unit.
    - amount_cents is positive for every type except ADJUSTMENT (signed).
    """
    totals = LedgerTotals(
        balance_cents=wallet.balance_cents,
        total_deposited_cents=wallet.total_deposited_cents,
        total_spent_cents=wallet.total_spent_cents,
        total_refunded_cents=wallet.total_refunded_cents,
        total_bonus_cents=wallet.total_bonus_cents,
        total_adjusted_cents=wallet.total_adjusted_cents,
    )
    totals.apply(txn_type, amount_cents)

    txn = WalletTransaction(
        wallet_id=wallet.id,
        company_id=wallet.company_id,
        type=txn_type,
        amount_cents=amount_cents,
        balance_before_cents=wallet.balance_cents,
        balance_after_cents=totals.balance_cents,
        description=description,
        payment_method=payment_method,
        reference=reference,
        related_transaction_id=related_transaction_id,
        source_type=source_type,
        source_id=source_id,
        actor_id=actor_id,
        metadata_json=metadata,
        created_at=utcnow(),
    )

    wallet.balance_cents = totals.balance_cents
    wallet.total_deposited_cents = totals.total_deposited_cents
    wallet.total_spent_cents = totals.total_spent_cents
    wallet.total_refunded_cents = totals.total_refunded_cents
    wallet.total_bonus_cents = totals.total_bonus_cents
    wallet.total_adjusted_cents = totals.total_adjusted_cents

    db.session.add(txn)
    db.session.flush()  # ensures txn.id is assigned without committing
    return txn


# =============================================================================
# INVARIANTS & RECONCILIATION
# =============================================================================

def replay_wallet(wallet_id: int) -> LedgerTotals:
    """Fold every transaction of a wallet, oldest first, starting from zero."""
    totals = LedgerTotals()
    rows = (
        db.session.query(WalletTransaction.type, WalletTransaction.amount_cents)
        .filter(WalletTransaction.wallet_id == wallet_id)
        .order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())
    )
    for txn_type, amount_cents in rows:
        totals.apply(txn_type, amount_cents)
    return totals


def _flag_violation(wallet: CompanyWallet, *, check_name: str, expected: int, actual: int, detail: str) -> None:
    wallet_id = wallet.id
    # Discard whatever the caller had pending; the flag must persist on its own
    db.session.rollback()
    db.session.add(ReconciliationFlag(
        wallet_id=wallet_id,
        check_name=check_name,
        expected_cents=expected,
        actual_cents=actual,
        detail=detail[:512],
        detected_at=utcnow(),
    ))
    db.session.commit()
    current_app.logger.critical(
        "Wallet %s failed %s check (expected %s, stored %s): %s",
        wallet_id, check_name, expected, actual, detail,
    )


def check_wallet_invariant(wallet: CompanyWallet) -> None:
    """
    Verify the counter arithmetic of a wallet row.

    Raises InvariantViolationError (after persisting a ReconciliationFlag)
    instead of serving a balance that does not add up.
    """
    expected = wallet.expected_balance_cents()
    if expected != wallet.balance_cents:
        actual = wallet.balance_cents
        wallet_id = wallet.id
        _flag_violation(
            wallet,
            check_name="COUNTERS",
            expected=expected,
            actual=actual,
            detail="balance does not equal deposited + bonus - spent + refunded + adjusted",
        )
        raise InvariantViolationError(wallet_id, expected, actual)


def reconcile_wallet(wallet: CompanyWallet) -> dict:
    """
    Compare a wallet's stored counters with a full replay of its ledger.

    Mismatches are flagged for manual reconciliation; nothing is rewritten.
    """
    totals = replay_wallet(wallet.id)
    ok = totals.matches(wallet)
    result = {
        "wallet_id": wallet.id,
        "company_id": wallet.company_id,
        "ok": ok,
        "stored": {
            "balance_cents": wallet.balance_cents,
            "total_deposited_cents": wallet.total_deposited_cents,
            "total_spent_cents": wallet.total_spent_cents,
            "total_refunded_cents": wallet.total_refunded_cents,
            "total_bonus_cents": wallet.total_bonus_cents,
            "total_adjusted_cents": wallet.total_adjusted_cents,
        },
        "replayed": totals.to_dict(),
    }
    if not ok:
        _flag_violation(
            wallet,
            check_name="REPLAY",
            expected=totals.balance_cents,
            actual=result["stored"]["balance_cents"],
            detail=f"replayed {totals.to_dict()} vs stored {result['stored']}",
        )
    return result


def reconcile_all_wallets() -> list[dict]:
    wallet_ids = [row[0] for row in db.session.query(CompanyWallet.id).order_by(CompanyWallet.id).all()]
    results = []
    for wallet_id in wallet_ids:
        wallet = db.session.get(CompanyWallet, wallet_id)
        results.append(reconcile_wallet(wallet))
    return results
