# Overview: Service-layer operations for recurring billing; app, bundle and platform subscriptions.

"""
Subscription Engine

WHY: Runs every recurring charge the platform makes: the platform plan fee,
per-app subscription fees and bundle fees. Moves money only through the
Wallet Service, and turns failed charges into PAST_DUE -> EXPIRED/SUSPENDED
transitions instead of errors.

STATE MACHINE (apps and bundles):
    install -> TRIAL
    TRIAL  --trial over, no fee due-->           ACTIVE
    TRIAL  --trial over, charge paid-->          ACTIVE
    TRIAL  --explicit upgrade (paid)-->          ACTIVE
    TRIAL  --trial over, charge failed-->        PAST_DUE
    ACTIVE --cycle, charge paid-->               ACTIVE (next_billing_at + 1 month)
    ACTIVE --cycle, charge failed-->             PAST_DUE
    PAST_DUE --retry paid-->                     ACTIVE
    PAST_DUE --retries exhausted-->              EXPIRED
    TRIAL|ACTIVE --usage settlement failed-->    PAST_DUE (retried by the next settlement)
    PAST_DUE --usage settled-->                  ACTIVE
    TRIAL|ACTIVE|PAST_DUE --cancel-->            CANCELLED
    CANCELLED|EXPIRED --explicit re-subscribe--> ACTIVE

Platform subscriptions follow the same shape with SUSPENDED in place of
EXPIRED.

IDEMPOTENCE: a subscription is due when next_billing_at <= now (or, when
PAST_DUE, next_retry_at <= now). A successful charge moves next_billing_at
forward, so re-running the cycle for the same period finds nothing due.
Each charge first claims the subscription row (row lock + version check),
so two cycles can never bill the same subscription concurrently.
"""

from __future__ import annotations

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from ..errors import (
    FatalLedgerError,
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    PaymentRequiredError,
    PrerequisiteNotMetError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    AppBundle,
    BundleSubscription,
    Company,
    CompanyAppSubscription,
    MarketplaceApp,
    PlatformSubscription,
)
from ..models.subscriptions import (
    PLATFORM_ACTIVE,
    PLATFORM_CANCELLED,
    PLATFORM_PAST_DUE,
    PLATFORM_PLANS,
    PLATFORM_SUSPENDED,
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PAST_DUE,
    SUB_TRIAL,
)
from ..money import Money
from ..time_utils import (
    add_months,
    next_billing_date,
    previous_billing_date,
    previous_month_bounds,
    utcnow,
)
from . import usage_service
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import ensure_wallet
from .wallet_service import _deduct_locked


# =============================================================================
# CONSTANTS
# =============================================================================

SOURCE_APP = "APP_SUBSCRIPTION"
SOURCE_BUNDLE = "BUNDLE_SUBSCRIPTION"
SOURCE_PLATFORM = "PLATFORM_SUBSCRIPTION"

KIND_APP = "APP"
KIND_BUNDLE = "BUNDLE"
KIND_PLATFORM = "PLATFORM"
KIND_USAGE = "USAGE"

# Billing outcome results
RESULT_CHARGED = "CHARGED"
RESULT_NO_CHARGE = "NO_CHARGE"
RESULT_PAYMENT_FAILED = "PAYMENT_FAILED"
RESULT_EXPIRED = "EXPIRED"
RESULT_SUSPENDED = "SUSPENDED"
RESULT_SKIPPED = "SKIPPED"
RESULT_ERROR = "ERROR"

APP_TRANSITIONS = {
    SUB_TRIAL: {SUB_ACTIVE, SUB_PAST_DUE, SUB_CANCELLED},
    SUB_ACTIVE: {SUB_PAST_DUE, SUB_CANCELLED},
    SUB_PAST_DUE: {SUB_ACTIVE, SUB_EXPIRED, SUB_CANCELLED},
    SUB_CANCELLED: {SUB_ACTIVE},
    SUB_EXPIRED: {SUB_ACTIVE},
}

PLATFORM_TRANSITIONS = {
    PLATFORM_ACTIVE: {PLATFORM_PAST_DUE, PLATFORM_CANCELLED},
    PLATFORM_PAST_DUE: {PLATFORM_ACTIVE, PLATFORM_SUSPENDED, PLATFORM_CANCELLED},
    PLATFORM_SUSPENDED: {PLATFORM_ACTIVE, PLATFORM_CANCELLED},
    PLATFORM_CANCELLED: {PLATFORM_ACTIVE},
}

LIVE_APP_STATUSES = (SUB_TRIAL, SUB_ACTIVE)
CANCELLABLE_STATUSES = (SUB_TRIAL, SUB_ACTIVE, SUB_PAST_DUE)

TARGET_APP = "app"
TARGET_BUNDLE = "bundle"
TARGET_PLATFORM = "platform"


@dataclass
class BillingOutcome:
    """Result of one billing attempt inside a cycle."""
    kind: str
    company_id: int
    subscription_id: Optional[int]
    result: str
    amount_cents: int = 0
    transaction_id: Optional[int] = None
    status: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# HELPERS
# =============================================================================

def _transition(sub, new_status: str, table: dict) -> None:
    if sub.status == new_status:
        return
    allowed = table.get(sub.status, set())
    if new_status not in allowed:
        raise ValidationError(f"Cannot move subscription {sub.id} from {sub.status} to {new_status}")
    sub.status = new_status


def _retry_policy() -> tuple[int, timedelta]:
    attempts = current_app.config.get("BILLING_RETRY_ATTEMPTS", 3)
    interval = timedelta(days=current_app.config.get("BILLING_RETRY_INTERVAL_DAYS", 1))
    return attempts, interval


def _require_company(company_id: int) -> Company:
    company = db.session.get(Company, company_id)
    if not company:
        raise NotFoundError(f"Company {company_id} not found")
    if not company.is_active:
        raise ValidationError(f"Company {company_id} is deactivated")
    return company


def _get_app(app_slug: str) -> MarketplaceApp:
    app = db.session.query(MarketplaceApp).filter_by(slug=app_slug).first()
    if not app:
        raise NotFoundError(f"App {app_slug} not found")
    return app


def _get_bundle(bundle_slug: str) -> AppBundle:
    bundle = db.session.query(AppBundle).filter_by(slug=bundle_slug).first()
    if not bundle:
        raise NotFoundError(f"Bundle {bundle_slug} not found")
    return bundle


def _lock_app_subscription(company_id: int, app_id: int) -> Optional[CompanyAppSubscription]:
    return lock_for_update(
        db.session.query(CompanyAppSubscription).filter_by(company_id=company_id, app_id=app_id)
    ).first()


def _live_app_ids(company_id: int) -> set[int]:
    rows = db.session.query(CompanyAppSubscription.app_id).filter(
        CompanyAppSubscription.company_id == company_id,
        CompanyAppSubscription.status.in_(LIVE_APP_STATUSES),
    ).all()
    return {row[0] for row in rows}


def _missing_requirements(apps: list[MarketplaceApp], satisfied_app_ids: set[int]) -> dict[str, list[str]]:
    missing = {}
    for app in apps:
        unmet = sorted(
            req.required_app.slug for req in app.requirements
            if req.required_app_id not in satisfied_app_ids
        )
        if unmet:
            missing[app.slug] = unmet
    return missing


def _record_payment(sub, txn, amount_cents: int, now: datetime) -> None:
    """Mark the current period of an app/bundle subscription paid."""
    base = sub.next_billing_at or now
    sub.next_billing_at = add_months(base, 1, sub.billing_anchor_day)
    sub.last_billing_at = now
    sub.total_spent_cents += amount_cents
    sub.failed_attempts = 0
    sub.next_retry_at = None


def _record_failure(sub, now: datetime, table: dict, past_due: str, terminal: str) -> str:
    """Count a failed charge; returns the outcome result."""
    attempts, interval = _retry_policy()
    sub.failed_attempts += 1
    if sub.failed_attempts > attempts:
        _transition(sub, past_due, table)
        _transition(sub, terminal, table)
        sub.next_retry_at = None
        return RESULT_EXPIRED if terminal == SUB_EXPIRED else RESULT_SUSPENDED
    _transition(sub, past_due, table)
    sub.next_retry_at = now + interval
    return RESULT_PAYMENT_FAILED


def _reset_billing_fields(sub, now: datetime) -> None:
    sub.trial_ends_at = None
    sub.failed_attempts = 0
    sub.next_retry_at = None
    sub.cancelled_at = None
    sub.subscribed_at = now
    sub.billing_anchor_day = now.day


# =============================================================================
# APP LIFECYCLE
# =============================================================================

def install_app(company_id: int, app_slug: str, now: datetime | None = None) -> CompanyAppSubscription:
    """
    Install a marketplace app for a company, starting its trial.

    - Every app in the app's required list must already be TRIAL/ACTIVE.
    - Trial length comes from the app, else BILLING_DEFAULT_TRIAL_DAYS.
    - The first charge is due when the trial ends (next_billing_at).
    - An app with a zero-day trial is charged immediately.

    Raises:
        NotFoundError, ValidationError, PrerequisiteNotMetError,
        InsufficientFundsError (zero-day trial only)
    """
    now = now or utcnow()

    def _op():
        _require_company(company_id)
        app = _get_app(app_slug)
        if not app.is_active:
            raise ValidationError(f"App {app_slug} is not available")

        existing = _lock_app_subscription(company_id, app.id)
        if existing:
            raise ValidationError(
                f"App {app_slug} is already installed (status {existing.status})"
            )

        missing = _missing_requirements([app], _live_app_ids(company_id))
        if missing:
            raise PrerequisiteNotMetError(missing)

        wallet = ensure_wallet(company_id, lock=True)

        trial_days = app.trial_days
        if trial_days is None:
            trial_days = current_app.config.get("BILLING_DEFAULT_TRIAL_DAYS", 14)
        trial_ends_at = now + timedelta(days=trial_days)

        sub = CompanyAppSubscription(
            company_id=company_id,
            app_id=app.id,
            status=SUB_TRIAL,
            subscribed_at=now,
            trial_ends_at=trial_ends_at,
            next_billing_at=trial_ends_at,
            billing_anchor_day=trial_ends_at.day,
            failed_attempts=0,
            total_spent_cents=0,
        )
        db.session.add(sub)
        db.session.flush()

        if trial_days == 0:
            _activate_now(sub, app, wallet, now, f"Subscription: {app.name}")

        db.session.commit()
        current_app.logger.info(
            "Installed app %s for company %s (status %s, trial ends %s)",
            app.slug, company_id, sub.status, trial_ends_at.isoformat(),
        )
        return sub

    return run_with_retry(_op)


def _activate_now(sub: CompanyAppSubscription, app: MarketplaceApp, wallet, now: datetime, description: str):
    """Charge the first period immediately and make the subscription ACTIVE."""
    fee = app.recurring_fee_cents
    sub.billing_anchor_day = now.day
    sub.next_billing_at = now
    txn = None
    if fee > 0:
        txn = _deduct_locked(
            wallet, fee, description, source_type=SOURCE_APP, source_id=sub.id,
        )
        _record_payment(sub, txn, fee, now)
    else:
        # Free tier: nothing left to bill
        sub.next_billing_at = None
        sub.failed_attempts = 0
        sub.next_retry_at = None
    _transition(sub, SUB_ACTIVE, APP_TRANSITIONS)
    return txn


def upgrade_trial(company_id: int, app_slug: str, now: datetime | None = None) -> CompanyAppSubscription:
    """
    End a trial early by paying for the first period now.

    Raises InsufficientFundsError if the wallet cannot cover the fee; the
    subscription stays in TRIAL.
    """
    now = now or utcnow()

    def _op():
        app = _get_app(app_slug)
        sub = _lock_app_subscription(company_id, app.id)
        if not sub:
            raise NotFoundError(f"App {app_slug} is not installed")
        if sub.status != SUB_TRIAL:
            raise ValidationError(f"App {app_slug} is not in trial (status {sub.status})")

        wallet = ensure_wallet(company_id, lock=True)
        _activate_now(sub, app, wallet, now, f"Subscription: {app.name}")
        sub.trial_ends_at = now

        db.session.commit()
        current_app.logger.info("Upgraded trial of %s for company %s", app.slug, company_id)
        return sub

    return run_with_retry(_op)


def resubscribe_app(company_id: int, app_slug: str, now: datetime | None = None) -> CompanyAppSubscription:
    """
    Reactivate a CANCELLED or EXPIRED app subscription.

    Reuses the existing row, resets trial and billing fields and charges the
    first period immediately (no second trial).
    """
    now = now or utcnow()

    def _op():
        _require_company(company_id)
        app = _get_app(app_slug)
        if not app.is_active:
            raise ValidationError(f"App {app_slug} is not available")

        sub = _lock_app_subscription(company_id, app.id)
        if not sub:
            raise NotFoundError(f"App {app_slug} is not installed")
        if sub.status not in (SUB_CANCELLED, SUB_EXPIRED):
            raise ValidationError(f"App {app_slug} is already {sub.status}")

        missing = _missing_requirements([app], _live_app_ids(company_id))
        if missing:
            raise PrerequisiteNotMetError(missing)

        wallet = ensure_wallet(company_id, lock=True)
        _reset_billing_fields(sub, now)
        sub.bundle_subscription_id = None
        _activate_now(sub, app, wallet, now, f"Subscription: {app.name}")

        db.session.commit()
        current_app.logger.info("Re-subscribed company %s to app %s", company_id, app.slug)
        return sub

    return run_with_retry(_op)


# =============================================================================
# BUNDLES
# =============================================================================

def subscribe_to_bundle(company_id: int, bundle_slug: str, now: datetime | None = None) -> list[CompanyAppSubscription]:
    """
    Subscribe a company to an app bundle.

    - Every bundle app that is not already ACTIVE is created or moved to
      ACTIVE and linked to the bundle subscription (billed through it).
    - The bundle's discounted price is charged now as one deduction, then
      monthly by the billing cycle.
    - If any activated app has a required app that is neither live for the
      company nor part of the bundle, nothing is activated or charged.

    Returns:
        The app subscriptions activated by this call.

    Raises:
        NotFoundError, ValidationError, PrerequisiteNotMetError,
        InsufficientFundsError
    """
    now = now or utcnow()

    def _op():
        _require_company(company_id)
        bundle = _get_bundle(bundle_slug)
        if not bundle.is_active:
            raise ValidationError(f"Bundle {bundle_slug} is not available")
        apps = bundle.apps
        if not apps:
            raise ValidationError(f"Bundle {bundle_slug} contains no apps")

        bundle_sub = lock_for_update(
            db.session.query(BundleSubscription).filter_by(company_id=company_id, bundle_id=bundle.id)
        ).first()
        if bundle_sub and bundle_sub.status in (SUB_ACTIVE, SUB_PAST_DUE):
            raise ValidationError(f"Already subscribed to bundle {bundle_slug}")

        existing = {
            sub.app_id: sub
            for sub in lock_for_update(
                db.session.query(CompanyAppSubscription).filter(
                    CompanyAppSubscription.company_id == company_id,
                    CompanyAppSubscription.app_id.in_([a.id for a in apps]),
                )
            ).all()
        }
        to_activate = [
            app for app in apps
            if app.id not in existing or existing[app.id].status != SUB_ACTIVE
        ]

        satisfied = _live_app_ids(company_id) | {a.id for a in apps}
        missing = _missing_requirements(to_activate, satisfied)
        if missing:
            raise PrerequisiteNotMetError(missing)

        if bundle_sub is None:
            bundle_sub = BundleSubscription(
                company_id=company_id,
                bundle_id=bundle.id,
                status=SUB_ACTIVE,
                subscribed_at=now,
                failed_attempts=0,
                total_spent_cents=0,
            )
            db.session.add(bundle_sub)
        else:
            _transition(bundle_sub, SUB_ACTIVE, APP_TRANSITIONS)
            bundle_sub.failed_attempts = 0
            bundle_sub.next_retry_at = None
            bundle_sub.cancelled_at = None
            bundle_sub.subscribed_at = now
        bundle_sub.billing_anchor_day = now.day
        bundle_sub.next_billing_at = now
        db.session.flush()

        wallet = ensure_wallet(company_id, lock=True)
        charge = bundle.charge_cents
        txn = None
        if charge > 0:
            txn = _deduct_locked(
                wallet, charge, f"Bundle subscription: {bundle.name}",
                source_type=SOURCE_BUNDLE, source_id=bundle_sub.id,
                metadata={
                    "bundle_slug": bundle.slug,
                    "list_price_cents": bundle.monthly_price_cents,
                    "discount_cents": bundle.discount_cents,
                },
            )
        _record_payment(bundle_sub, txn, charge, now)

        activated = []
        for app in to_activate:
            sub = existing.get(app.id)
            if sub is None:
                sub = CompanyAppSubscription(
                    company_id=company_id,
                    app_id=app.id,
                    status=SUB_ACTIVE,
                    subscribed_at=now,
                    failed_attempts=0,
                    total_spent_cents=0,
                )
                db.session.add(sub)
            else:
                _transition(sub, SUB_ACTIVE, APP_TRANSITIONS)
                _reset_billing_fields(sub, now)
            sub.bundle_subscription_id = bundle_sub.id
            sub.billing_anchor_day = None
            sub.next_billing_at = None
            activated.append(sub)

        db.session.commit()
        current_app.logger.info(
            "Company %s subscribed to bundle %s (%d apps activated, %s cents charged)",
            company_id, bundle.slug, len(activated), charge,
        )
        return activated

    return run_with_retry(_op)


def _sync_bundle_members(bundle_sub: BundleSubscription, status: str, now: datetime) -> None:
    """Mirror a bundle subscription's status onto its member apps."""
    for sub in bundle_sub.app_subscriptions:
        if sub.status in (SUB_CANCELLED, SUB_EXPIRED) or sub.status == status:
            continue
        _transition(sub, status, APP_TRANSITIONS)
        if status == SUB_CANCELLED:
            sub.cancelled_at = now


# =============================================================================
# PLATFORM PLAN
# =============================================================================

def plan_fee_cents(plan: str) -> int:
    fees = current_app.config.get("PLATFORM_PLAN_FEES", {})
    if plan not in PLATFORM_PLANS or plan not in fees:
        raise ValidationError(f"Invalid plan: {plan}. Must be one of {PLATFORM_PLANS}")
    return int(fees[plan])


def create_platform_subscription(
    company_id: int,
    plan: str,
    billing_day: int | None = None,
    now: datetime | None = None,
) -> PlatformSubscription:
    """
    Start (or restart after cancellation/suspension) a company's platform plan.

    The first charge falls on the first billing_day strictly after today.
    """
    now = now or utcnow()
    fee = plan_fee_cents(plan)
    billing_day = billing_day or now.day
    if isinstance(billing_day, bool) or not isinstance(billing_day, int) or not 1 <= billing_day <= 31:
        raise ValidationError("billing_day must be an integer between 1 and 31")

    def _op():
        _require_company(company_id)
        sub = lock_for_update(
            db.session.query(PlatformSubscription).filter_by(company_id=company_id)
        ).first()
        if sub and sub.status in (PLATFORM_ACTIVE, PLATFORM_PAST_DUE):
            raise ValidationError(f"Company {company_id} already has an active platform plan")

        if sub is None:
            sub = PlatformSubscription(company_id=company_id, status=PLATFORM_ACTIVE)
            db.session.add(sub)
        else:
            _transition(sub, PLATFORM_ACTIVE, PLATFORM_TRANSITIONS)
            sub.cancelled_at = None
            sub.last_billing_date = None

        sub.plan = plan
        sub.monthly_fee_cents = fee
        sub.billing_day = billing_day
        sub.created_at = now
        sub.next_billing_date = next_billing_date(billing_day, now.date())
        sub.failed_attempts = 0
        sub.next_retry_at = None

        db.session.commit()
        current_app.logger.info(
            "Platform plan %s for company %s, first billing %s",
            plan, company_id, sub.next_billing_date.isoformat(),
        )
        return sub

    return run_with_retry(_op)


def calculate_proration(sub: PlatformSubscription, new_fee_cents: int, today) -> int:
    """
    (new_fee - old_fee) * remaining_days / days_in_period, rounded down.

    The period runs from the previous occurrence of billing_day to
    next_billing_date. Downgrades prorate to zero (no credit).
    """
    difference = new_fee_cents - sub.monthly_fee_cents
    if difference <= 0:
        return 0
    period_end = sub.next_billing_date
    period_start = previous_billing_date(sub.billing_day, period_end)
    days_in_period = (period_end - period_start).days
    remaining = min(max((period_end - today).days, 0), days_in_period)
    return Money(difference).prorate_floor(remaining, days_in_period).cents


def upgrade_plan(company_id: int, new_plan: str, now: datetime | None = None) -> PlatformSubscription:
    """
    Change a company's platform plan.

    The new monthly fee applies from the next billing date. With
    BILLING_PRORATE_UPGRADES enabled, an upgrade is charged the prorated
    difference for the rest of the current period immediately; if that
    charge fails the plan is left unchanged (PaymentRequiredError).
    """
    now = now or utcnow()
    new_fee = plan_fee_cents(new_plan)

    def _op():
        sub = lock_for_update(
            db.session.query(PlatformSubscription).filter_by(company_id=company_id)
        ).first()
        if not sub:
            raise NotFoundError(f"Company {company_id} has no platform plan")
        if sub.status != PLATFORM_ACTIVE:
            raise ValidationError(f"Platform plan is {sub.status}; settle it before changing plans")
        if sub.plan == new_plan:
            raise ValidationError(f"Already on plan {new_plan}")

        if current_app.config.get("BILLING_PRORATE_UPGRADES"):
            prorated = calculate_proration(sub, new_fee, now.date())
            if prorated > 0:
                wallet = ensure_wallet(company_id, lock=True)
                try:
                    _deduct_locked(
                        wallet, prorated, f"Plan upgrade {sub.plan} -> {new_plan} (prorated)",
                        source_type=SOURCE_PLATFORM, source_id=sub.id,
                        metadata={"from_plan": sub.plan, "to_plan": new_plan},
                    )
                except InsufficientFundsError as exc:
                    raise PaymentRequiredError(
                        f"Upgrade to {new_plan} requires a prorated payment; please recharge your wallet",
                        required_cents=exc.required_cents,
                    ) from exc

        old_plan = sub.plan
        sub.plan = new_plan
        sub.monthly_fee_cents = new_fee
        db.session.commit()
        current_app.logger.info("Company %s plan changed %s -> %s", company_id, old_plan, new_plan)
        return sub

    return run_with_retry(_op)


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_subscription(company_id: int, target: str, slug: str | None = None, now: datetime | None = None):
    """
    Cancel an app, bundle or platform subscription.

    Already-billed periods are not refunded and the wallet is not touched.
    Cancelling a bundle cancels the apps it activated.

    Args:
        target: "app", "bundle" or "platform"
        slug: App or bundle slug (not used for platform)
    """
    now = now or utcnow()
    if target not in (TARGET_APP, TARGET_BUNDLE, TARGET_PLATFORM):
        raise ValidationError("target must be app, bundle, or platform")
    if target != TARGET_PLATFORM and not slug:
        raise ValidationError(f"slug is required to cancel a {target} subscription")

    def _op():
        if target == TARGET_APP:
            app = _get_app(slug)
            sub = _lock_app_subscription(company_id, app.id)
            if not sub:
                raise NotFoundError(f"App {slug} is not installed")
            if sub.status not in CANCELLABLE_STATUSES:
                raise ValidationError(f"Cannot cancel app {slug} in status {sub.status}")
            _transition(sub, SUB_CANCELLED, APP_TRANSITIONS)
            sub.next_retry_at = None
        elif target == TARGET_BUNDLE:
            bundle = _get_bundle(slug)
            sub = lock_for_update(
                db.session.query(BundleSubscription).filter_by(company_id=company_id, bundle_id=bundle.id)
            ).first()
            if not sub:
                raise NotFoundError(f"Not subscribed to bundle {slug}")
            if sub.status not in CANCELLABLE_STATUSES:
                raise ValidationError(f"Cannot cancel bundle {slug} in status {sub.status}")
            _transition(sub, SUB_CANCELLED, APP_TRANSITIONS)
            sub.next_retry_at = None
            _sync_bundle_members(sub, SUB_CANCELLED, now)
        else:
            sub = lock_for_update(
                db.session.query(PlatformSubscription).filter_by(company_id=company_id)
            ).first()
            if not sub:
                raise NotFoundError(f"Company {company_id} has no platform plan")
            if sub.status == PLATFORM_CANCELLED:
                raise ValidationError("Platform plan is already cancelled")
            _transition(sub, PLATFORM_CANCELLED, PLATFORM_TRANSITIONS)
            sub.next_retry_at = None

        sub.cancelled_at = now
        db.session.commit()
        current_app.logger.info("Cancelled %s subscription %s for company %s", target, sub.id, company_id)
        return sub

    return run_with_retry(_op)


# =============================================================================
# BILLING CYCLE
# =============================================================================

def _due_filter(model, now: datetime):
    return db.or_(
        db.and_(model.status.in_((SUB_TRIAL, SUB_ACTIVE)), model.next_billing_at <= now),
        db.and_(model.status == SUB_PAST_DUE, model.next_retry_at <= now),
    )


def _is_due(sub, now: datetime) -> bool:
    if sub.status in (SUB_TRIAL, SUB_ACTIVE):
        return sub.next_billing_at is not None and sub.next_billing_at <= now
    if sub.status == SUB_PAST_DUE:
        return sub.next_retry_at is not None and sub.next_retry_at <= now
    return False


def _is_platform_due(sub: PlatformSubscription, now: datetime) -> bool:
    if sub.status == PLATFORM_ACTIVE:
        return sub.next_billing_date <= now.date()
    if sub.status == PLATFORM_PAST_DUE:
        return sub.next_retry_at is not None and sub.next_retry_at <= now
    return False


def _collect_due_work(now: datetime, settle_usage: bool) -> dict[int, list[tuple[str, Optional[int]]]]:
    work = defaultdict(list)

    platform_rows = db.session.query(PlatformSubscription.company_id, PlatformSubscription.id).filter(
        db.or_(
            db.and_(PlatformSubscription.status == PLATFORM_ACTIVE,
                    PlatformSubscription.next_billing_date <= now.date()),
            db.and_(PlatformSubscription.status == PLATFORM_PAST_DUE,
                    PlatformSubscription.next_retry_at <= now),
        )
    ).order_by(PlatformSubscription.id).all()
    for company_id, sub_id in platform_rows:
        work[company_id].append((KIND_PLATFORM, sub_id))

    bundle_rows = db.session.query(BundleSubscription.company_id, BundleSubscription.id).filter(
        _due_filter(BundleSubscription, now)
    ).order_by(BundleSubscription.id).all()
    for company_id, sub_id in bundle_rows:
        work[company_id].append((KIND_BUNDLE, sub_id))

    app_rows = db.session.query(CompanyAppSubscription.company_id, CompanyAppSubscription.id).filter(
        CompanyAppSubscription.bundle_subscription_id.is_(None),
        _due_filter(CompanyAppSubscription, now),
    ).order_by(CompanyAppSubscription.id).all()
    for company_id, sub_id in app_rows:
        work[company_id].append((KIND_APP, sub_id))

    if settle_usage:
        period_start, period_end = previous_month_bounds(now)
        for company_id in usage_service.companies_with_unsettled_usage(period_start, period_end):
            work[company_id].append((KIND_USAGE, None))

    # Deactivated companies have archived wallets; nothing of theirs is billed
    inactive = db.session.query(Company.id).filter(
        Company.id.in_(list(work)),
        Company.is_active.is_(False),
    ).all()
    for (company_id,) in inactive:
        del work[company_id]

    return work


def _bill_app_subscription(company_id: int, sub_id: int, now: datetime) -> BillingOutcome:
    def _op():
        sub = lock_for_update(db.session.query(CompanyAppSubscription).filter_by(id=sub_id)).first()
        if not sub or sub.bundle_subscription_id is not None or not _is_due(sub, now):
            db.session.commit()
            return BillingOutcome(KIND_APP, company_id, sub_id, RESULT_SKIPPED,
                                  status=sub.status if sub else None, message="not due")

        app = sub.app
        fee = app.recurring_fee_cents
        if fee == 0:
            # Free/usage-priced app: the trial simply ends
            _transition(sub, SUB_ACTIVE, APP_TRANSITIONS)
            sub.next_billing_at = None
            sub.failed_attempts = 0
            sub.next_retry_at = None
            db.session.commit()
            return BillingOutcome(KIND_APP, company_id, sub_id, RESULT_NO_CHARGE, status=sub.status,
                                  message=f"{app.slug} active, no recurring fee")

        wallet = ensure_wallet(company_id, lock=True)
        try:
            txn = _deduct_locked(
                wallet, fee, f"Subscription: {app.name}",
                source_type=SOURCE_APP, source_id=sub.id,
            )
        except InsufficientFundsError as exc:
            result = _record_failure(sub, now, APP_TRANSITIONS, SUB_PAST_DUE, SUB_EXPIRED)
            db.session.commit()
            current_app.logger.warning(
                "Charge for app %s (company %s) failed, attempt %s -> %s",
                app.slug, company_id, sub.failed_attempts, sub.status,
            )
            return BillingOutcome(KIND_APP, company_id, sub_id, result, amount_cents=fee,
                                  status=sub.status, message=exc.public_message())

        _record_payment(sub, txn, fee, now)
        _transition(sub, SUB_ACTIVE, APP_TRANSITIONS)
        db.session.commit()
        return BillingOutcome(KIND_APP, company_id, sub_id, RESULT_CHARGED, amount_cents=fee,
                              transaction_id=txn.id, status=sub.status, message=app.slug)

    return run_with_retry(_op)


def _bill_bundle_subscription(company_id: int, sub_id: int, now: datetime) -> BillingOutcome:
    def _op():
        sub = lock_for_update(db.session.query(BundleSubscription).filter_by(id=sub_id)).first()
        if not sub or not _is_due(sub, now):
            db.session.commit()
            return BillingOutcome(KIND_BUNDLE, company_id, sub_id, RESULT_SKIPPED,
                                  status=sub.status if sub else None, message="not due")

        bundle = sub.bundle
        charge = bundle.charge_cents
        wallet = ensure_wallet(company_id, lock=True)
        txn = None
        if charge > 0:
            try:
                txn = _deduct_locked(
                    wallet, charge, f"Bundle subscription: {bundle.name}",
                    source_type=SOURCE_BUNDLE, source_id=sub.id,
                )
            except InsufficientFundsError as exc:
                result = _record_failure(sub, now, APP_TRANSITIONS, SUB_PAST_DUE, SUB_EXPIRED)
                _sync_bundle_members(sub, sub.status, now)
                db.session.commit()
                current_app.logger.warning(
                    "Charge for bundle %s (company %s) failed, attempt %s -> %s",
                    bundle.slug, company_id, sub.failed_attempts, sub.status,
                )
                return BillingOutcome(KIND_BUNDLE, company_id, sub_id, result, amount_cents=charge,
                                      status=sub.status, message=exc.public_message())

        _record_payment(sub, txn, charge, now)
        _transition(sub, SUB_ACTIVE, APP_TRANSITIONS)
        _sync_bundle_members(sub, SUB_ACTIVE, now)
        db.session.commit()
        return BillingOutcome(KIND_BUNDLE, company_id, sub_id,
                              RESULT_CHARGED if txn else RESULT_NO_CHARGE, amount_cents=charge,
                              transaction_id=txn.id if txn else None, status=sub.status, message=bundle.slug)

    return run_with_retry(_op)


def _bill_platform_subscription(company_id: int, sub_id: int, now: datetime) -> BillingOutcome:
    def _op():
        sub = lock_for_update(db.session.query(PlatformSubscription).filter_by(id=sub_id)).first()
        if not sub or not _is_platform_due(sub, now):
            db.session.commit()
            return BillingOutcome(KIND_PLATFORM, company_id, sub_id, RESULT_SKIPPED,
                                  status=sub.status if sub else None, message="not due")

        fee = sub.monthly_fee_cents
        txn = None
        if fee > 0:
            wallet = ensure_wallet(company_id, lock=True)
            try:
                txn = _deduct_locked(
                    wallet, fee, f"Platform plan {sub.plan}",
                    source_type=SOURCE_PLATFORM, source_id=sub.id,
                    metadata={"plan": sub.plan, "period": sub.next_billing_date.isoformat()},
                )
            except InsufficientFundsError as exc:
                result = _record_failure(sub, now, PLATFORM_TRANSITIONS, PLATFORM_PAST_DUE, PLATFORM_SUSPENDED)
                db.session.commit()
                current_app.logger.warning(
                    "Platform charge for company %s failed, attempt %s -> %s",
                    company_id, sub.failed_attempts, sub.status,
                )
                return BillingOutcome(KIND_PLATFORM, company_id, sub_id, result, amount_cents=fee,
                                      status=sub.status, message=exc.public_message())

        # The period billed is the scheduled date, even when paid on a retry
        sub.last_billing_date = sub.next_billing_date
        sub.next_billing_date = next_billing_date(sub.billing_day, sub.last_billing_date)
        sub.failed_attempts = 0
        sub.next_retry_at = None
        _transition(sub, PLATFORM_ACTIVE, PLATFORM_TRANSITIONS)
        db.session.commit()
        return BillingOutcome(KIND_PLATFORM, company_id, sub_id,
                              RESULT_CHARGED if txn else RESULT_NO_CHARGE, amount_cents=fee,
                              transaction_id=txn.id if txn else None, status=sub.status, message=sub.plan)

    return run_with_retry(_op)


def _lock_usage_subscriptions(company_id: int, app_ids: list[int], statuses) -> list[CompanyAppSubscription]:
    return lock_for_update(
        db.session.query(CompanyAppSubscription).filter(
            CompanyAppSubscription.company_id == company_id,
            CompanyAppSubscription.app_id.in_(app_ids),
            CompanyAppSubscription.status.in_(statuses),
        ).order_by(CompanyAppSubscription.id)
    ).all()


def _record_usage_failure(company_id: int, app_ids: list[int], now: datetime) -> Optional[str]:
    """
    Move the subscriptions of apps with unpaid usage to PAST_DUE.

    Usage debt is retried by the next settlement, so it leaves next_retry_at
    alone; a recurring-fee retry already scheduled keeps its date. Returns
    the most severe resulting status.
    """
    if not app_ids:
        return None

    def _op():
        subs = _lock_usage_subscriptions(company_id, app_ids, CANCELLABLE_STATUSES)
        for sub in subs:
            retry_at = sub.next_retry_at
            _record_failure(sub, now, APP_TRANSITIONS, SUB_PAST_DUE, SUB_EXPIRED)
            if sub.status == SUB_PAST_DUE:
                sub.next_retry_at = retry_at
            current_app.logger.warning(
                "Unpaid usage for app %s (company %s), attempt %s -> %s",
                sub.app.slug, company_id, sub.failed_attempts, sub.status,
            )
        db.session.commit()
        statuses = {sub.status for sub in subs}
        if SUB_EXPIRED in statuses:
            return SUB_EXPIRED
        return SUB_PAST_DUE if statuses else None

    return run_with_retry(_op)


def _clear_usage_failure(company_id: int, app_ids: list[int]) -> None:
    """Reactivate subscriptions that were PAST_DUE only for unpaid usage."""
    if not app_ids:
        return

    def _op():
        for sub in _lock_usage_subscriptions(company_id, app_ids, (SUB_PAST_DUE,)):
            if sub.next_retry_at is not None:
                # Still owes a recurring fee
                continue
            _transition(sub, SUB_ACTIVE, APP_TRANSITIONS)
            sub.failed_attempts = 0
        db.session.commit()

    run_with_retry(_op)


def _settle_usage(company_id: int, now: datetime) -> BillingOutcome:
    period_start, period_end = previous_month_bounds(now)
    app_ids = usage_service.unsettled_app_ids(company_id, period_start, period_end)
    try:
        txn = usage_service.settle_period_usage(company_id, period_start, period_end)
    except InsufficientFundsError as exc:
        current_app.logger.warning("Usage settlement for company %s failed: %s", company_id, exc)
        status = _record_usage_failure(company_id, app_ids, now)
        result = RESULT_EXPIRED if status == SUB_EXPIRED else RESULT_PAYMENT_FAILED
        return BillingOutcome(KIND_USAGE, company_id, None, result,
                              amount_cents=exc.required_cents, status=status, message=exc.public_message())

    _clear_usage_failure(company_id, app_ids)
    if txn is None:
        return BillingOutcome(KIND_USAGE, company_id, None, RESULT_NO_CHARGE, message="no billable usage")
    return BillingOutcome(KIND_USAGE, company_id, None, RESULT_CHARGED, amount_cents=txn.amount_cents,
                          transaction_id=txn.id)


_HANDLERS = {
    KIND_PLATFORM: _bill_platform_subscription,
    KIND_BUNDLE: _bill_bundle_subscription,
    KIND_APP: _bill_app_subscription,
}


def _bill_company(company_id: int, items: list[tuple[str, Optional[int]]], now: datetime) -> list[BillingOutcome]:
    """Bill one company's due items strictly in sequence."""
    outcomes = []
    for kind, sub_id in items:
        try:
            if kind == KIND_USAGE:
                outcome = _settle_usage(company_id, now)
            else:
                outcome = _HANDLERS[kind](company_id, sub_id, now)
        except LedgerError as exc:
            if isinstance(exc, FatalLedgerError):
                current_app.logger.exception("Billing %s %s for company %s aborted", kind, sub_id, company_id)
            else:
                current_app.logger.warning(
                    "Billing %s %s for company %s failed: %s", kind, sub_id, company_id, exc,
                )
            outcome = BillingOutcome(kind, company_id, sub_id, RESULT_ERROR, message=exc.public_message())
        outcomes.append(outcome)
    return outcomes


def run_billing_cycle(
    now: datetime | None = None,
    *,
    max_workers: int = 1,
    settle_usage: bool | None = None,
) -> list[BillingOutcome]:
    """
    Charge everything that is due as of `now`.

    Companies are independent and may be billed in parallel
    (max_workers > 1); within a company items run in order: platform plan,
    bundles, apps, then the previous month's usage.

    Safe to re-run: items already paid for the current period are no longer
    due, and each item re-checks its due date after claiming its row.
    """
    now = now or utcnow()
    if settle_usage is None:
        settle_usage = current_app.config.get("BILLING_SETTLE_USAGE_IN_CYCLE", True)

    work = _collect_due_work(now, settle_usage)
    db.session.commit()
    company_ids = sorted(work)

    if max_workers <= 1 or len(company_ids) <= 1:
        outcomes = []
        for company_id in company_ids:
            outcomes.extend(_bill_company(company_id, work[company_id], now))
    else:
        app = current_app._get_current_object()

        def _worker(company_id):
            with app.app_context():
                try:
                    return _bill_company(company_id, work[company_id], now)
                finally:
                    db.session.remove()

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(_worker, company_id) for company_id in company_ids]
            outcomes = [outcome for future in futures for outcome in future.result()]

    charged = sum(1 for o in outcomes if o.result == RESULT_CHARGED)
    failed = sum(1 for o in outcomes if o.result in (RESULT_PAYMENT_FAILED, RESULT_EXPIRED, RESULT_SUSPENDED))
    current_app.logger.info(
        "Billing cycle at %s: %d items, %d charged, %d failed",
        now.isoformat(), len(outcomes), charged, failed,
    )
    return outcomes


# =============================================================================
# READS
# =============================================================================

def get_company_subscriptions(company_id: int) -> dict:
    """Subscription status overview for a company."""
    platform = db.session.query(PlatformSubscription).filter_by(company_id=company_id).first()
    apps = (
        db.session.query(CompanyAppSubscription)
        .filter_by(company_id=company_id)
        .order_by(CompanyAppSubscription.id)
        .all()
    )
    bundles = (
        db.session.query(BundleSubscription)
        .filter_by(company_id=company_id)
        .order_by(BundleSubscription.id)
        .all()
    )
    return {
        "platform": platform.to_dict() if platform else None,
        "apps": [s.to_dict() for s in apps],
        "bundles": [s.to_dict() for s in bundles],
    }


def list_upcoming_renewals(within_days: int, now: datetime | None = None) -> list[dict]:
    """
    Subscriptions renewing in (now, now + within_days], for renewal reminders.
    """
    now = now or utcnow()
    horizon = now + timedelta(days=within_days)
    renewals = []

    for sub in db.session.query(PlatformSubscription).filter(
        PlatformSubscription.status == PLATFORM_ACTIVE,
        PlatformSubscription.next_billing_date > now.date(),
        PlatformSubscription.next_billing_date <= horizon.date(),
    ).order_by(PlatformSubscription.next_billing_date):
        renewals.append({
            "kind": KIND_PLATFORM, "company_id": sub.company_id, "subscription_id": sub.id,
            "name": sub.plan, "amount_cents": sub.monthly_fee_cents,
            "renews_on": sub.next_billing_date.isoformat(),
        })

    for sub in db.session.query(BundleSubscription).filter(
        BundleSubscription.status == SUB_ACTIVE,
        BundleSubscription.next_billing_at > now,
        BundleSubscription.next_billing_at <= horizon,
    ).order_by(BundleSubscription.next_billing_at):
        renewals.append({
            "kind": KIND_BUNDLE, "company_id": sub.company_id, "subscription_id": sub.id,
            "name": sub.bundle.slug, "amount_cents": sub.bundle.charge_cents,
            "renews_on": sub.next_billing_at.date().isoformat(),
        })

    for sub in db.session.query(CompanyAppSubscription).filter(
        CompanyAppSubscription.status == SUB_ACTIVE,
        CompanyAppSubscription.bundle_subscription_id.is_(None),
        CompanyAppSubscription.next_billing_at > now,
        CompanyAppSubscription.next_billing_at <= horizon,
    ).order_by(CompanyAppSubscription.next_billing_at):
        renewals.append({
            "kind": KIND_APP, "company_id": sub.company_id, "subscription_id": sub.id,
            "name": sub.app.slug, "amount_cents": sub.app.recurring_fee_cents,
            "renews_on": sub.next_billing_at.date().isoformat(),
        })

    return renewals


def list_expiring_trials(within_days: int, now: datetime | None = None) -> list[CompanyAppSubscription]:
    """App trials ending in (now, now + within_days], for trial reminders."""
    now = now or utcnow()
    horizon = now + timedelta(days=within_days)
    return (
        db.session.query(CompanyAppSubscription)
        .filter(
            CompanyAppSubscription.status == SUB_TRIAL,
            CompanyAppSubscription.trial_ends_at > now,
            CompanyAppSubscription.trial_ends_at <= horizon,
        )
        .order_by(CompanyAppSubscription.trial_ends_at)
        .all()
    )
