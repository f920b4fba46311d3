from __future__ import annotations

from ..extensions import db
from ..money import Money
from ..time_utils import to_utc_z


# Transaction types
TXN_DEPOSIT = "DEPOSIT"
TXN_DEDUCT = "DEDUCT"
TXN_REFUND = "REFUND"
TXN_BONUS = "BONUS"
TXN_ADJUSTMENT = "ADJUSTMENT"

TRANSACTION_TYPES = [TXN_DEPOSIT, TXN_DEDUCT, TXN_REFUND, TXN_BONUS, TXN_ADJUSTMENT]


class CompanyWallet(db.Model):
    """
    Per-company monetary account.

    WHY: Single source of truth for a company's spendable balance. One row per
    company, created lazily on the first deposit or charge attempt and never
    deleted (archived when the company is deactivated).

    INVARIANT (checked, never re-derived):
        balance = total_deposited + total_bonus - total_spent
                  + total_refunded + total_adjusted

    CONCURRENCY: version_id is the optimistic concurrency token; every
    mutation bumps it and a stale write raises StaleDataError.
    """
    __tablename__ = "company_wallets"
    __table_args__ = (
        db.UniqueConstraint("company_id", name="uq_company_wallets_company"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    currency = db.Column(db.String(3), nullable=False, default="EGP")

    # All amounts in minor units
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    total_deposited_cents = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    total_refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    total_bonus_cents = db.Column(db.Integer, nullable=False, default=0)
    total_adjusted_cents = db.Column(db.Integer, nullable=False, default=0)  # Signed

    is_archived = db.Column(db.Boolean, nullable=False, default=False)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    company = db.relationship("Company", backref=db.backref("wallet", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance(self) -> Money:
        return Money(self.balance_cents, self.currency)

    def expected_balance_cents(self) -> int:
        return (
            self.total_deposited_cents
            + self.total_bonus_cents
            - self.total_spent_cents
            + self.total_refunded_cents
            + self.total_adjusted_cents
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "currency": self.currency,
            "balance_cents": self.balance_cents,
            "total_deposited_cents": self.total_deposited_cents,
            "total_spent_cents": self.total_spent_cents,
            "total_refunded_cents": self.total_refunded_cents,
            "total_bonus_cents": self.total_bonus_cents,
            "total_adjusted_cents": self.total_adjusted_cents,
            "is_archived": self.is_archived,
            "archived_at": to_utc_z(self.archived_at) if self.archived_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version": self.version_id,
        }


class WalletTransaction(db.Model):
    """
    Append-only ledger of wallet movements.

    TRANSACTION TYPES (amount is always positive; sign implied by type):
    - DEPOSIT: Funds in from a recharge (idempotent on reference)
    - BONUS: Deposit bonus, written in the same commit as its DEPOSIT
    - DEDUCT: Charge for a subscription, bundle or settled usage
    - REFUND: Credit back to the company
    - ADJUSTMENT: Administrative correction; amount_cents is SIGNED

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        db.UniqueConstraint("wallet_id", "reference", name="uq_wallet_txns_wallet_reference"),
        db.Index("ix_wallet_txns_wallet_created", "wallet_id", "created_at"),
        db.CheckConstraint("amount_cents <> 0", name="ck_wallet_txns_amount_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("company_wallets.id"), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    description = db.Column(db.String(255), nullable=False)
    payment_method = db.Column(db.String(32), nullable=True)
    # Deposit idempotency key (unique per wallet; NULLs never collide)
    reference = db.Column(db.String(128), nullable=True)

    # BONUS -> its DEPOSIT, REFUND -> the transaction being refunded
    related_transaction_id = db.Column(db.Integer, db.ForeignKey("wallet_transactions.id"), nullable=True, index=True)

    # What the money was for (APP_SUBSCRIPTION, BUNDLE_SUBSCRIPTION, PLATFORM_SUBSCRIPTION, USAGE)
    source_type = db.Column(db.String(32), nullable=True, index=True)
    source_id = db.Column(db.Integer, nullable=True)

    # Adjustment authorization
    actor_id = db.Column(db.Integer, nullable=True)

    metadata_json = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    wallet = db.relationship("CompanyWallet", backref=db.backref("transactions", lazy="dynamic"))
    related_transaction = db.relationship("WalletTransaction", remote_side=[id])

    def signed_amount_cents(self) -> int:
        if self.type == TXN_DEDUCT:
            return -self.amount_cents
        # ADJUSTMENT is stored signed; DEPOSIT/BONUS/REFUND are credits
        return self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "company_id": self.company_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "description": self.description,
            "payment_method": self.payment_method,
            "reference": self.reference,
            "related_transaction_id": self.related_transaction_id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "actor_id": self.actor_id,
            "metadata": self.metadata_json,
            "created_at": to_utc_z(self.created_at),
        }


class ReconciliationFlag(db.Model):
    """
    A detected wallet invariant violation awaiting manual reconciliation.

    Violations are never corrected automatically; a flag stays open until an
    operator resolves it (typically with an ADJUSTMENT).
    """
    __tablename__ = "reconciliation_flags"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("company_wallets.id"), nullable=False, index=True)

    check_name = db.Column(db.String(32), nullable=False)  # COUNTERS, REPLAY
    expected_cents = db.Column(db.Integer, nullable=False)
    actual_cents = db.Column(db.Integer, nullable=False)
    detail = db.Column(db.String(512), nullable=True)

    detected_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "check_name": self.check_name,
            "expected_cents": self.expected_cents,
            "actual_cents": self.actual_cents,
            "detail": self.detail,
            "detected_at": to_utc_z(self.detected_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
        }
