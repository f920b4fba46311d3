from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class UsageRecord(db.Model):
    """
    One metered consumption event.

    WHY: Pay-per-use features accrue cost at call time and are charged later
    in a single settlement deduction, which bounds wallet write amplification.

    SETTLEMENT: settled_at is stamped in the same commit as the DEDUCT that
    charged the record, so a record is never charged twice.
    """
    __tablename__ = "usage_records"
    __table_args__ = (
        db.Index("ix_usage_records_company_feature_occurred", "company_id", "feature", "occurred_at"),
        db.Index("ix_usage_records_company_settled", "company_id", "settled_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    app_id = db.Column(db.Integer, db.ForeignKey("marketplace_apps.id"), nullable=True, index=True)

    feature = db.Column(db.String(128), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)  # quantity * unit_cost_cents

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settlement_transaction_id = db.Column(db.Integer, db.ForeignKey("wallet_transactions.id"), nullable=True, index=True)

    app = db.relationship("MarketplaceApp")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "app_id": self.app_id,
            "feature": self.feature,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "occurred_at": to_utc_z(self.occurred_at),
            "settled_at": to_utc_z(self.settled_at) if self.settled_at else None,
            "settlement_transaction_id": self.settlement_transaction_id,
        }
