from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


# App / bundle subscription statuses
SUB_TRIAL = "TRIAL"
SUB_ACTIVE = "ACTIVE"
SUB_PAST_DUE = "PAST_DUE"
SUB_EXPIRED = "EXPIRED"
SUB_CANCELLED = "CANCELLED"

# Platform subscription statuses
PLATFORM_ACTIVE = "ACTIVE"
PLATFORM_PAST_DUE = "PAST_DUE"
PLATFORM_SUSPENDED = "SUSPENDED"
PLATFORM_CANCELLED = "CANCELLED"

PLAN_BASIC = "BASIC"
PLAN_PRO = "PRO"
PLAN_ENTERPRISE = "ENTERPRISE"
PLATFORM_PLANS = [PLAN_BASIC, PLAN_PRO, PLAN_ENTERPRISE]


class CompanyAppSubscription(db.Model):
    """
    A company's installation of a marketplace app.

    LIFECYCLE:
        install -> TRIAL -> ACTIVE (trial end charge, or explicit upgrade)
        ACTIVE -> PAST_DUE (charge failed) -> ACTIVE (retry paid) | EXPIRED
        TRIAL/ACTIVE/PAST_DUE -> CANCELLED
        CANCELLED/EXPIRED -> ACTIVE only via explicit re-subscribe

    BUNDLES: Apps activated through a bundle carry bundle_subscription_id and
    are never billed individually; the bundle subscription is billed instead.

    BILLING: next_billing_at is the due date of the period being charged.
    It only advances when that period is paid, which makes a re-run of the
    billing cycle for the same period a no-op.
    """
    __tablename__ = "company_app_subscriptions"
    __table_args__ = (
        db.UniqueConstraint("company_id", "app_id", name="uq_app_subs_company_app"),
        db.Index("ix_app_subs_status_next_billing", "status", "next_billing_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    app_id = db.Column(db.Integer, db.ForeignKey("marketplace_apps.id"), nullable=False, index=True)
    bundle_subscription_id = db.Column(db.Integer, db.ForeignKey("bundle_subscriptions.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=SUB_TRIAL, index=True)

    subscribed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    next_billing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_billing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    billing_anchor_day = db.Column(db.Integer, nullable=True)

    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    app = db.relationship("MarketplaceApp")
    bundle_subscription = db.relationship("BundleSubscription", backref=db.backref("app_subscriptions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "app_id": self.app_id,
            "app_slug": self.app.slug if self.app else None,
            "bundle_subscription_id": self.bundle_subscription_id,
            "status": self.status,
            "subscribed_at": to_utc_z(self.subscribed_at),
            "trial_ends_at": to_utc_z(self.trial_ends_at) if self.trial_ends_at else None,
            "next_billing_at": to_utc_z(self.next_billing_at) if self.next_billing_at else None,
            "last_billing_at": to_utc_z(self.last_billing_at) if self.last_billing_at else None,
            "failed_attempts": self.failed_attempts,
            "next_retry_at": to_utc_z(self.next_retry_at) if self.next_retry_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "total_spent_cents": self.total_spent_cents,
            "version_id": self.version_id,
        }


class BundleSubscription(db.Model):
    """
    A company's subscription to an app bundle.

    Shares the app subscription lifecycle minus the trial: a bundle is paid
    on subscribe and then monthly at the bundle's discounted price.
    """
    __tablename__ = "bundle_subscriptions"
    __table_args__ = (
        db.UniqueConstraint("company_id", "bundle_id", name="uq_bundle_subs_company_bundle"),
        db.Index("ix_bundle_subs_status_next_billing", "status", "next_billing_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    bundle_id = db.Column(db.Integer, db.ForeignKey("app_bundles.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=SUB_ACTIVE, index=True)

    subscribed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    next_billing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_billing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    billing_anchor_day = db.Column(db.Integer, nullable=True)

    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    bundle = db.relationship("AppBundle")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "bundle_id": self.bundle_id,
            "bundle_slug": self.bundle.slug if self.bundle else None,
            "status": self.status,
            "subscribed_at": to_utc_z(self.subscribed_at),
            "next_billing_at": to_utc_z(self.next_billing_at) if self.next_billing_at else None,
            "last_billing_at": to_utc_z(self.last_billing_at) if self.last_billing_at else None,
            "failed_attempts": self.failed_attempts,
            "next_retry_at": to_utc_z(self.next_retry_at) if self.next_retry_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "total_spent_cents": self.total_spent_cents,
            "version_id": self.version_id,
        }


class PlatformSubscription(db.Model):
    """
    Platform-level plan (BASIC / PRO / ENTERPRISE), one per company.

    billing_day (1-31) drives next_billing_date: the first occurrence of that
    day strictly after the last billing date, clamped to the month's length.
    """
    __tablename__ = "platform_subscriptions"
    __table_args__ = (
        db.UniqueConstraint("company_id", name="uq_platform_subs_company"),
        db.CheckConstraint("billing_day BETWEEN 1 AND 31", name="ck_platform_subs_billing_day"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    plan = db.Column(db.String(16), nullable=False)
    monthly_fee_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PLATFORM_ACTIVE, index=True)

    billing_day = db.Column(db.Integer, nullable=False)
    next_billing_date = db.Column(db.Date, nullable=False, index=True)
    last_billing_date = db.Column(db.Date, nullable=True)

    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "plan": self.plan,
            "monthly_fee_cents": self.monthly_fee_cents,
            "status": self.status,
            "billing_day": self.billing_day,
            "next_billing_date": to_iso_date(self.next_billing_date),
            "last_billing_date": to_iso_date(self.last_billing_date),
            "failed_attempts": self.failed_attempts,
            "next_retry_at": to_utc_z(self.next_retry_at) if self.next_retry_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
