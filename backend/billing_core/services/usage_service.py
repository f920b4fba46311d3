# Overview: Service-layer operations for metered usage; accrual, period totals, and settlement.

"""
Usage Meter

WHY: Pay-per-use features record consumption as it happens and are charged
periodically in one deduction per company and period.

DESIGN:
- record_usage is a pure append; it never touches the wallet.
- Period queries are half-open: period_start <= occurred_at < period_end.
- settle_period_usage stamps settled_at on exactly the records it charged,
  in the same commit as the DEDUCT, so re-running it charges nothing twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import case, func

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Company, MarketplaceApp, UsageRecord, WalletTransaction
from ..money import Money, require_cents
from ..time_utils import month_bounds, utcnow
from .concurrency import run_with_retry
from .ledger_service import ensure_wallet
from .wallet_service import _deduct_locked


SOURCE_USAGE = "USAGE"


def _require_period(period_start: datetime, period_end: datetime) -> None:
    if period_start is None or period_end is None:
        raise ValidationError("period_start and period_end are required")
    if period_end <= period_start:
        raise ValidationError("period_end must be after period_start")


def record_usage(
    company_id: int,
    feature: str,
    quantity: int,
    unit_cost_cents: int,
    *,
    app_slug: str | None = None,
    occurred_at: datetime | None = None,
) -> UsageRecord:
    """
    Record one metered consumption event.

    total_cost = quantity * unit_cost, computed in integer minor units.
    A zero unit cost is allowed (free-tier metering); quantity must be > 0.
    """
    feature = (feature or "").strip()
    if not feature:
        raise ValidationError("feature is required")
    require_cents(quantity, "quantity")
    require_cents(unit_cost_cents, "unit_cost_cents", positive=False)
    if unit_cost_cents < 0:
        raise ValidationError("unit_cost_cents must not be negative")

    if not db.session.get(Company, company_id):
        raise NotFoundError(f"Company {company_id} not found")

    app_id = None
    if app_slug:
        app = db.session.query(MarketplaceApp).filter_by(slug=app_slug).first()
        if not app:
            raise NotFoundError(f"App {app_slug} not found")
        app_id = app.id

    total = Money(unit_cost_cents, current_app.config.get("WALLET_DEFAULT_CURRENCY", "EGP")).times(quantity)

    record = UsageRecord(
        company_id=company_id,
        app_id=app_id,
        feature=feature[:128],
        quantity=quantity,
        unit_cost_cents=unit_cost_cents,
        total_cost_cents=total.cents,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(record)
    db.session.commit()
    return record


def _period_query(company_id: int, period_start: datetime, period_end: datetime):
    return db.session.query(UsageRecord).filter(
        UsageRecord.company_id == company_id,
        UsageRecord.occurred_at >= period_start,
        UsageRecord.occurred_at < period_end,
    )


def get_monthly_usage(
    company_id: int,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> list[dict]:
    """
    Usage totals grouped by feature for a period (default: current month).

    Includes settled and unsettled records alike.
    """
    if period_start is None and period_end is None:
        period_start, period_end = month_bounds(utcnow())
    _require_period(period_start, period_end)

    rows = (
        db.session.query(
            UsageRecord.feature,
            func.count(UsageRecord.id),
            func.coalesce(func.sum(UsageRecord.quantity), 0),
            func.coalesce(func.sum(UsageRecord.total_cost_cents), 0),
        )
        .filter(
            UsageRecord.company_id == company_id,
            UsageRecord.occurred_at >= period_start,
            UsageRecord.occurred_at < period_end,
        )
        .group_by(UsageRecord.feature)
        .order_by(UsageRecord.feature.asc())
        .all()
    )
    return [
        {
            "feature": feature,
            "count": int(count),
            "quantity": int(quantity),
            "cost_cents": int(cost),
        }
        for feature, count, quantity, cost in rows
    ]


def settle_period_usage(
    company_id: int,
    period_start: datetime,
    period_end: datetime,
) -> Optional[WalletTransaction]:
    """
    Convert a period's unsettled usage into one wallet deduction.

    Returns:
        The DEDUCT transaction, or None when there was nothing to charge.
        Zero-cost records are stamped settled without a transaction.

    Raises:
        InsufficientFundsError: nothing is stamped; the records stay
            unsettled and are picked up by the next settlement.
    """
    _require_period(period_start, period_end)

    def _op():
        wallet = ensure_wallet(company_id, lock=True)

        records = (
            _period_query(company_id, period_start, period_end)
            .filter(UsageRecord.settled_at.is_(None))
            .order_by(UsageRecord.id.asc())
            .with_for_update()
            .all()
        )
        if not records:
            db.session.commit()
            return None

        total_cents = sum(r.total_cost_cents for r in records)
        now = utcnow()

        txn = None
        if total_cents > 0:
            txn = _deduct_locked(
                wallet,
                total_cents,
                f"Usage {period_start.date().isoformat()} to {period_end.date().isoformat()}",
                source_type=SOURCE_USAGE,
                metadata={
                    "record_count": len(records),
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )

        for record in records:
            record.settled_at = now
            record.settlement_transaction_id = txn.id if txn else None

        db.session.commit()
        current_app.logger.info(
            "Settled %d usage records for company %s: %s cents",
            len(records), company_id, total_cents,
        )
        return txn

    return run_with_retry(_op)


def get_usage_report(
    company_id: int,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    *,
    limit: int = 100,
) -> dict:
    """
    Detailed usage for a period: recent records, totals, and a breakdown by
    (feature, app). Defaults to the current month.
    """
    if period_start is None and period_end is None:
        period_start, period_end = month_bounds(utcnow())
    _require_period(period_start, period_end)
    limit = min(max(limit or 100, 1), 500)

    base = _period_query(company_id, period_start, period_end)
    recent = base.order_by(UsageRecord.occurred_at.desc(), UsageRecord.id.desc()).limit(limit).all()

    count, quantity, cost, unsettled = (
        db.session.query(
            func.count(UsageRecord.id),
            func.coalesce(func.sum(UsageRecord.quantity), 0),
            func.coalesce(func.sum(UsageRecord.total_cost_cents), 0),
            func.coalesce(
                func.sum(case((UsageRecord.settled_at.is_(None), UsageRecord.total_cost_cents), else_=0)),
                0,
            ),
        )
        .filter(
            UsageRecord.company_id == company_id,
            UsageRecord.occurred_at >= period_start,
            UsageRecord.occurred_at < period_end,
        )
        .one()
    )

    by_feature = (
        db.session.query(
            UsageRecord.feature,
            MarketplaceApp.slug,
            func.coalesce(func.sum(UsageRecord.quantity), 0),
            func.coalesce(func.sum(UsageRecord.total_cost_cents), 0),
        )
        .outerjoin(MarketplaceApp, MarketplaceApp.id == UsageRecord.app_id)
        .filter(
            UsageRecord.company_id == company_id,
            UsageRecord.occurred_at >= period_start,
            UsageRecord.occurred_at < period_end,
        )
        .group_by(UsageRecord.feature, MarketplaceApp.slug)
        .order_by(UsageRecord.feature.asc())
        .all()
    )

    return {
        "period": {"start": period_start.isoformat(), "end": period_end.isoformat()},
        "usage": [r.to_dict() for r in recent],
        "summary": {
            "count": int(count),
            "total_quantity": int(quantity),
            "total_cost_cents": int(cost),
            "unsettled_cost_cents": int(unsettled),
        },
        "by_feature": [
            {"feature": feature, "app_slug": slug, "quantity": int(q), "cost_cents": int(c)}
            for feature, slug, q, c in by_feature
        ],
    }


def companies_with_unsettled_usage(period_start: datetime, period_end: datetime) -> list[int]:
    rows = (
        db.session.query(UsageRecord.company_id)
        .filter(
            UsageRecord.settled_at.is_(None),
            UsageRecord.occurred_at >= period_start,
            UsageRecord.occurred_at < period_end,
        )
        .distinct()
        .order_by(UsageRecord.company_id.asc())
        .all()
    )
    return [row[0] for row in rows]


def unsettled_app_ids(company_id: int, period_start: datetime, period_end: datetime) -> list[int]:
    """Apps whose usage in the period is still waiting for settlement."""
    rows = (
        _period_query(company_id, period_start, period_end)
        .with_entities(UsageRecord.app_id)
        .filter(UsageRecord.settled_at.is_(None), UsageRecord.app_id.isnot(None))
        .distinct()
        .order_by(UsageRecord.app_id.asc())
        .all()
    )
    return [row[0] for row in rows]
