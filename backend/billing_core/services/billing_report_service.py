# Overview: Read-only billing summaries composed from wallet, usage, and subscription data.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import BundleSubscription, Company, CompanyAppSubscription, PlatformSubscription
from ..models.subscriptions import SUB_ACTIVE, SUB_TRIAL
from ..money import format_major
from ..time_utils import month_bounds, utcnow
from .ledger_service import get_wallet
from .usage_service import get_monthly_usage


@dataclass
class BillingSummary:
    company_id: int
    period_start: datetime
    period_end: datetime
    currency: str
    subscriptions_cost_cents: int
    usage_cost_cents: int
    wallet_balance_cents: int
    active_app_count: int
    usage_breakdown: list[dict] = field(default_factory=list)
    subscription_lines: list[dict] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return self.subscriptions_cost_cents + self.usage_cost_cents

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "period": {"start": self.period_start.isoformat(), "end": self.period_end.isoformat()},
            "currency": self.currency,
            "subscriptions_cost_cents": self.subscriptions_cost_cents,
            "usage_cost_cents": self.usage_cost_cents,
            "total_cents": self.total_cents,
            "total": format_major(self.total_cents, self.currency),
            "wallet_balance_cents": self.wallet_balance_cents,
            "active_app_count": self.active_app_count,
            "usage_breakdown": self.usage_breakdown,
            "subscription_lines": self.subscription_lines,
        }


def build_summary(
    company_id: int,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> BillingSummary:
    """
    Billing summary for a company and period (default: current month).

    subscriptions_cost: monthly fees of TRIAL/ACTIVE apps subscribed before
    the period ends (apps covered by a bundle count through the bundle's
    discounted price), plus the platform fee when it was billed in the period.
    usage_cost: every usage record in the period, settled or not.

    Pure read; creates no wallet and writes nothing.
    """
    if period_start is None and period_end is None:
        period_start, period_end = month_bounds(utcnow())
    if period_start is None or period_end is None or period_end <= period_start:
        raise ValidationError("A valid period_start < period_end is required")

    if not db.session.get(Company, company_id):
        raise NotFoundError(f"Company {company_id} not found")

    lines = []

    app_subs = (
        db.session.query(CompanyAppSubscription)
        .filter(
            CompanyAppSubscription.company_id == company_id,
            CompanyAppSubscription.status.in_((SUB_TRIAL, SUB_ACTIVE)),
            CompanyAppSubscription.subscribed_at < period_end,
        )
        .order_by(CompanyAppSubscription.id)
        .all()
    )
    for sub in app_subs:
        if sub.bundle_subscription_id is not None:
            continue
        lines.append({"kind": "APP", "name": sub.app.slug, "status": sub.status,
                      "amount_cents": sub.app.recurring_fee_cents})

    bundle_subs = (
        db.session.query(BundleSubscription)
        .filter(
            BundleSubscription.company_id == company_id,
            BundleSubscription.status == SUB_ACTIVE,
            BundleSubscription.subscribed_at < period_end,
        )
        .order_by(BundleSubscription.id)
        .all()
    )
    for sub in bundle_subs:
        lines.append({"kind": "BUNDLE", "name": sub.bundle.slug, "status": sub.status,
                      "amount_cents": sub.bundle.charge_cents})

    platform = db.session.query(PlatformSubscription).filter_by(company_id=company_id).first()
    if (
        platform is not None
        and platform.last_billing_date is not None
        and period_start.date() <= platform.last_billing_date < period_end.date()
    ):
        lines.append({"kind": "PLATFORM", "name": platform.plan, "status": platform.status,
                      "amount_cents": platform.monthly_fee_cents})

    usage = get_monthly_usage(company_id, period_start, period_end)

    wallet = get_wallet(company_id)
    currency = wallet.currency if wallet else current_app.config.get("WALLET_DEFAULT_CURRENCY", "EGP")

    return BillingSummary(
        company_id=company_id,
        period_start=period_start,
        period_end=period_end,
        currency=currency,
        subscriptions_cost_cents=sum(line["amount_cents"] for line in lines),
        usage_cost_cents=sum(row["cost_cents"] for row in usage),
        wallet_balance_cents=wallet.balance_cents if wallet else 0,
        active_app_count=len(app_subs),
        usage_breakdown=usage,
        subscription_lines=lines,
    )
