# Overview: Service-layer operations for company wallets; funds in, funds out, and reads.

"""
Wallet Service

WHY: Owns every balance-changing operation (deposit, deduct, refund,
adjustment) and enforces the ledger invariants around them.

DESIGN PRINCIPLES:
- Every mutation is one DB transaction: lock/read the wallet row, validate
  against that read, append the transaction row(s), commit together.
- Optimistic concurrency: the wallet's version_id rejects stale writes;
  run_with_retry re-runs the whole operation with a fresh read.
- Deposits are idempotent on `reference` (duplicate gateway callbacks).
- Deduct is the only operation that fails on business state
  (InsufficientFundsError); callers decide what that means.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import func

from ..errors import InsufficientFundsError, NotFoundError, ValidationError
from ..extensions import db
from ..models import CompanyWallet, WalletTransaction
from ..models.wallet import (
    TRANSACTION_TYPES,
    TXN_ADJUSTMENT,
    TXN_BONUS,
    TXN_DEDUCT,
    TXN_DEPOSIT,
    TXN_REFUND,
)
from ..money import Money, require_cents
from ..time_utils import utcnow
from .concurrency import run_with_retry
from .ledger_service import append_transaction, check_wallet_invariant, ensure_wallet, get_wallet


# =============================================================================
# DEPOSIT BONUS TIERS
# =============================================================================

# (inclusive lower bound in major units, bonus percent), highest first
BONUS_TIERS = [
    (5000, 30),
    (1000, 20),
    (500, 15),
    (100, 10),
]

DESCRIPTION_MAX = 255


@dataclass
class DepositResult:
    """Outcome of a deposit; duplicate=True means the reference was already used."""
    transaction: WalletTransaction
    bonus_transaction: Optional[WalletTransaction]
    wallet: CompanyWallet
    duplicate: bool = False

    @property
    def bonus_cents(self) -> int:
        return self.bonus_transaction.amount_cents if self.bonus_transaction else 0

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "bonus": self.bonus_transaction.to_dict() if self.bonus_transaction else None,
            "wallet": self.wallet.to_dict(),
            "duplicate": self.duplicate,
        }


def bonus_percent_for(amount: Money) -> int:
    major = amount.major_units
    for threshold, percent in BONUS_TIERS:
        if major >= threshold:
            return percent
    return 0


def calculate_bonus(amount: Money) -> Money:
    """
    Bonus for a deposit: tier percent of the deposited amount, rounded down
    to a whole major unit (999.00 at 15% -> 149.00, not 149.85).
    """
    percent = bonus_percent_for(amount)
    if percent == 0:
        return Money.zero(amount.currency)
    return amount.percent_floor(percent).floor_to_major_unit()


def _clean_description(description: str | None, default: str) -> str:
    text = (description or "").strip() or default
    return text[:DESCRIPTION_MAX]


def _require_mutable(wallet: CompanyWallet) -> None:
    if wallet.is_archived:
        raise ValidationError(f"Wallet for company {wallet.company_id} is archived")


# =============================================================================
# FUNDS IN
# =============================================================================

def deposit(
    company_id: int,
    amount_cents: int,
    payment_method: str | None = None,
    reference: str | None = None,
    description: str | None = None,
) -> DepositResult:
    """
    Recharge a company wallet.

    Args:
        company_id: Owning company
        amount_cents: Amount paid in (minor units, > 0)
        payment_method: Gateway/tender label (optional)
        reference: Idempotency key from the payment gateway (optional)
        description: Ledger description (optional)

    Returns:
        DepositResult with the DEPOSIT transaction and, if earned, its BONUS.
        A repeated reference returns the original result with duplicate=True.

    Raises:
        ValidationError: amount not a positive integer, wallet archived
    """
    require_cents(amount_cents)
    if reference is not None:
        reference = str(reference).strip() or None

    def _op():
        wallet = ensure_wallet(company_id, lock=True)

        if reference:
            prior = db.session.query(WalletTransaction).filter_by(
                wallet_id=wallet.id, type=TXN_DEPOSIT, reference=reference
            ).first()
            if prior:
                bonus_txn = db.session.query(WalletTransaction).filter_by(
                    wallet_id=wallet.id, type=TXN_BONUS, related_transaction_id=prior.id
                ).first()
                db.session.commit()
                current_app.logger.info(
                    "Duplicate deposit reference %r for company %s; returning transaction %s",
                    reference, company_id, prior.id,
                )
                return DepositResult(prior, bonus_txn, wallet, duplicate=True)

        _require_mutable(wallet)

        amount = Money(amount_cents, wallet.currency)
        bonus = calculate_bonus(amount)
        percent = bonus_percent_for(amount) if bonus else 0

        txn = append_transaction(
            wallet,
            txn_type=TXN_DEPOSIT,
            amount_cents=amount.cents,
            description=_clean_description(description, f"Wallet recharge: {amount.format()}"),
            payment_method=payment_method,
            reference=reference,
            metadata={"bonus_cents": bonus.cents, "bonus_percent": percent},
        )

        bonus_txn = None
        if bonus:
            bonus_txn = append_transaction(
                wallet,
                txn_type=TXN_BONUS,
                amount_cents=bonus.cents,
                description=f"Recharge bonus ({percent}%)",
                related_transaction_id=txn.id,
            )

        db.session.commit()
        current_app.logger.info(
            "Deposit %s for company %s: %s cents (+%s bonus)",
            txn.id, company_id, amount.cents, bonus.cents,
        )
        return DepositResult(txn, bonus_txn, wallet)

    return run_with_retry(_op)


def refund(
    company_id: int,
    amount_cents: int,
    original_transaction_id: int | None = None,
    description: str | None = None,
) -> WalletTransaction:
    """
    Credit money back to a company.

    The ledger enforces arithmetic only; whether a refund is warranted (and
    how much of the original charge it may return) is the caller's policy.
    """
    require_cents(amount_cents)

    def _op():
        wallet = ensure_wallet(company_id, lock=True)
        _require_mutable(wallet)

        if original_transaction_id is not None:
            original = db.session.query(WalletTransaction).filter_by(
                id=original_transaction_id, wallet_id=wallet.id
            ).first()
            if not original:
                raise NotFoundError(
                    f"Transaction {original_transaction_id} not found for company {company_id}"
                )

        txn = append_transaction(
            wallet,
            txn_type=TXN_REFUND,
            amount_cents=amount_cents,
            description=_clean_description(description, "Refund"),
            related_transaction_id=original_transaction_id,
        )
        db.session.commit()
        current_app.logger.info("Refund %s for company %s: %s cents", txn.id, company_id, amount_cents)
        return txn

    return run_with_retry(_op)


def adjust(
    company_id: int,
    signed_amount_cents: int,
    description: str,
    actor_id: int | None,
) -> WalletTransaction:
    """
    Administrative correction.

    Moves the balance by signed_amount_cents without touching the
    deposited/spent/refunded counters. actor_id (who authorized it) is
    mandatory. A negative adjustment applies in full and may leave the
    balance below zero.
    """
    require_cents(signed_amount_cents, "signed_amount_cents", positive=False)
    if signed_amount_cents == 0:
        raise ValidationError("signed_amount_cents must not be zero")
    if actor_id is None or isinstance(actor_id, bool) or not isinstance(actor_id, int):
        raise ValidationError("actor_id is required for adjustments")
    if not (description or "").strip():
        raise ValidationError("description is required for adjustments")

    def _op():
        wallet = ensure_wallet(company_id, lock=True)
        _require_mutable(wallet)

        txn = append_transaction(
            wallet,
            txn_type=TXN_ADJUSTMENT,
            amount_cents=signed_amount_cents,
            description=_clean_description(description, "Adjustment"),
            actor_id=actor_id,
        )
        db.session.commit()
        current_app.logger.info(
            "Adjustment %s for company %s: %s cents by actor %s",
            txn.id, company_id, signed_amount_cents, actor_id,
        )
        return txn

    return run_with_retry(_op)


# =============================================================================
# FUNDS OUT
# =============================================================================

def _deduct_locked(
    wallet: CompanyWallet,
    amount_cents: int,
    description: str,
    *,
    source_type: str | None = None,
    source_id: int | None = None,
    metadata: dict | None = None,
) -> WalletTransaction:
    """
    Deduct from a wallet already read inside the caller's transaction.

    No commit: the Subscription Engine and Usage Meter use this to write the
    charge and their own state change as one unit.
    """
    _require_mutable(wallet)
    if wallet.balance_cents < amount_cents:
        raise InsufficientFundsError(amount_cents, wallet.balance_cents, wallet.currency)

    return append_transaction(
        wallet,
        txn_type=TXN_DEDUCT,
        amount_cents=amount_cents,
        description=_clean_description(description, "Charge"),
        source_type=source_type,
        source_id=source_id,
        metadata=metadata,
    )


def deduct(
    company_id: int,
    amount_cents: int,
    description: str,
    metadata: dict | None = None,
) -> WalletTransaction:
    """
    Charge a company wallet.

    Raises:
        ValidationError: amount not a positive integer
        InsufficientFundsError: balance < amount (balance left unchanged)
        ConflictError: concurrent writers exhausted the retry budget
    """
    require_cents(amount_cents)

    def _op():
        wallet = ensure_wallet(company_id, lock=True)
        try:
            txn = _deduct_locked(wallet, amount_cents, description, metadata=metadata)
        except InsufficientFundsError:
            # Nothing written; release the read (and any lazily created wallet)
            db.session.commit()
            raise
        db.session.commit()
        return txn

    return run_with_retry(_op)


def archive_wallet(company_id: int) -> CompanyWallet:
    """Soft-archive a wallet when its company is deactivated; rows are kept."""
    def _op():
        wallet = ensure_wallet(company_id, lock=True)
        if not wallet.is_archived:
            wallet.is_archived = True
            wallet.archived_at = utcnow()
        db.session.commit()
        return wallet

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def get_balance(company_id: int) -> CompanyWallet:
    """
    Current wallet for a company (created on first access).

    The counter invariant is verified on every read; a wallet that does not
    add up raises InvariantViolationError rather than being served.
    """
    wallet = get_wallet(company_id)
    if wallet is None:
        wallet = run_with_retry(lambda: _create_wallet_committed(company_id))
    check_wallet_invariant(wallet)
    return wallet


def _create_wallet_committed(company_id: int) -> CompanyWallet:
    wallet = ensure_wallet(company_id)
    db.session.commit()
    return wallet


def list_transactions(
    company_id: int,
    *,
    page: int = 1,
    per_page: int = 20,
    txn_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    newest_first: bool = True,
) -> dict:
    """
    Paginated transaction history for a company.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page (default 20, max 100)
        txn_type: Filter by transaction type
        start / end: Inclusive created_at range
        newest_first: created_at descending (default) or ascending

    Returns:
        Dict with 'items', 'count' and 'pagination' metadata.
    """
    if txn_type is not None and txn_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Invalid transaction type: {txn_type}. Must be one of {TRANSACTION_TYPES}")

    per_page = min(per_page or 20, 100)  # Default 20, max 100
    page = max(page or 1, 1)

    wallet = get_wallet(company_id)
    if wallet is None:
        return {
            "items": [],
            "count": 0,
            "pagination": {
                "page": page, "per_page": per_page, "total": 0,
                "total_pages": 1, "has_next": False, "has_prev": page > 1,
            },
        }

    query = db.session.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet.id)
    if txn_type:
        query = query.filter(WalletTransaction.type == txn_type)
    if start:
        query = query.filter(WalletTransaction.created_at >= start)
    if end:
        query = query.filter(WalletTransaction.created_at <= end)

    if newest_first:
        query = query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
    else:
        query = query.order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    rows = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [t.to_dict() for t in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_wallet_stats() -> dict:
    """Platform-wide totals across non-archived wallets (admin overview)."""
    row = db.session.query(
        func.count(CompanyWallet.id),
        func.coalesce(func.sum(CompanyWallet.balance_cents), 0),
        func.coalesce(func.sum(CompanyWallet.total_deposited_cents), 0),
        func.coalesce(func.sum(CompanyWallet.total_bonus_cents), 0),
        func.coalesce(func.sum(CompanyWallet.total_spent_cents), 0),
        func.coalesce(func.sum(CompanyWallet.total_refunded_cents), 0),
    ).filter(CompanyWallet.is_archived.is_(False)).one()

    return {
        "active_wallets": int(row[0]),
        "total_balance_cents": int(row[1]),
        "total_deposited_cents": int(row[2]),
        "total_bonus_cents": int(row[3]),
        "total_spent_cents": int(row[4]),
        "total_refunded_cents": int(row[5]),
    }
