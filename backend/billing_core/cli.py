# Overview: Flask CLI command groups for billing jobs, wallet inspection, catalog setup, and maintenance.

# backend/billing_core/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to billing_core (PowerShell: $env:FLASK_APP="billing_core").
# - Use: python -m flask <group> <command> [options]
#
# Scheduled jobs:
# - python -m flask billing run-cycle [--now 2026-02-01T00:00:00Z] [--workers 4]
#   Charge everything due (daily cadence). Safe to re-run.
# - python -m flask billing settle-usage --company-id 1 [--start 2026-01-01 --end 2026-02-01]
#   Settle a period's metered usage (default: previous month).
# - python -m flask billing reconcile
#   Replay every wallet's ledger and flag mismatches.
# - python -m flask billing summary --company-id 1
#   Current month billing summary.
#
# Companies:
# - python -m flask companies create --name "Acme"
# - python -m flask companies deactivate --company-id 1
#   Deactivate a company and archive its wallet.
#
# Wallets:
# - python -m flask wallets show --company-id 1
# - python -m flask wallets deposit --company-id 1 --amount 100.00 --reference PAY-123
# - python -m flask wallets stats
#
# Catalog:
# - python -m flask catalog add-app --slug crm --name CRM --pricing SUBSCRIPTION --price 150.00 [--requires contacts]
# - python -m flask catalog add-bundle --slug suite --name Suite --apps crm,hr --price 400.00 --discount 50.00
# - python -m flask catalog list
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .models import Company
from .money import format_major, parse_major
from .services import billing_report_service, catalog_service, subscription_service, usage_service, wallet_service
from .services.ledger_service import reconcile_all_wallets
from .time_utils import parse_iso_datetime, previous_month_bounds, utcnow


def _currency() -> str:
    return current_app.config.get("WALLET_DEFAULT_CURRENCY", "EGP")


def _parse_when(value, option_name):
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise click.BadParameter(f"{value!r} is not an ISO-8601 datetime", param_hint=option_name)


def _parse_amount(value, option_name):
    try:
        return parse_major(value, _currency())
    except LedgerError as exc:
        raise click.BadParameter(str(exc), param_hint=option_name)


# =============================================================================
# BILLING JOBS
# =============================================================================

@click.group('billing')
def billing_group():
    """Recurring billing jobs and reports."""


@billing_group.command('run-cycle')
@click.option('--now', 'now_text', default=None, help='Treat this ISO-8601 instant as now')
@click.option('--workers', type=int, default=1, show_default=True, help='Companies billed in parallel')
@click.option('--no-usage', is_flag=True, help='Skip previous-month usage settlement')
@with_appcontext
def run_cycle(now_text, workers, no_usage):
    """Charge every subscription that is due."""
    now = _parse_when(now_text, '--now') or utcnow()
    outcomes = subscription_service.run_billing_cycle(
        now,
        max_workers=max(workers, 1),
        settle_usage=False if no_usage else None,
    )

    if not outcomes:
        click.echo("Nothing due.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'Company':<8} {'Kind':<9} {'Sub':<6} {'Result':<15} {'Amount':<16} {'Status'}")
    click.echo("="*80)
    for o in outcomes:
        click.echo(
            f"{o.company_id:<8} {o.kind:<9} {o.subscription_id or '-':<6} {o.result:<15} "
            f"{format_major(o.amount_cents, _currency()):<16} {o.status or '-'}"
        )
    click.echo("="*80 + "\n")

    charged = sum(1 for o in outcomes if o.result == subscription_service.RESULT_CHARGED)
    click.echo(f"PASS Billing cycle complete: {len(outcomes)} items, {charged} charged")


@billing_group.command('settle-usage')
@click.option('--company-id', type=int, required=True, help='Company ID')
@click.option('--start', 'start_text', default=None, help='Period start (ISO-8601, inclusive)')
@click.option('--end', 'end_text', default=None, help='Period end (ISO-8601, exclusive)')
@with_appcontext
def settle_usage(company_id, start_text, end_text):
    """Settle a company's unsettled usage for a period (default: previous month)."""
    start = _parse_when(start_text, '--start')
    end = _parse_when(end_text, '--end')
    if start is None and end is None:
        start, end = previous_month_bounds(utcnow())

    try:
        txn = usage_service.settle_period_usage(company_id, start, end)
    except LedgerError as exc:
        click.echo(f"FAIL {exc.public_message()}")
        return

    if txn is None:
        click.echo("Nothing to settle.")
        return
    click.echo(
        f"PASS Settled usage for company {company_id}: "
        f"{format_major(txn.amount_cents, _currency())} (transaction {txn.id})"
    )


@billing_group.command('reconcile')
@with_appcontext
def reconcile():
    """Replay every wallet's ledger against its stored counters."""
    results = reconcile_all_wallets()
    failures = [r for r in results if not r["ok"]]
    for r in failures:
        click.echo(
            f"FAIL Wallet {r['wallet_id']} (company {r['company_id']}): "
            f"stored {r['stored']['balance_cents']}, replayed {r['replayed']['balance_cents']}"
        )
    if failures:
        click.echo(f"WARN {len(failures)} of {len(results)} wallets flagged for reconciliation")
    else:
        click.echo(f"PASS {len(results)} wallets reconciled")


@billing_group.command('summary')
@click.option('--company-id', type=int, required=True, help='Company ID')
@with_appcontext
def summary(company_id):
    """Billing summary for the current month."""
    try:
        report = billing_report_service.build_summary(company_id)
    except LedgerError as exc:
        click.echo(f"FAIL {exc.public_message()}")
        return

    currency = report.currency
    click.echo(f"Period:        {report.period_start.date()} to {report.period_end.date()}")
    click.echo(f"Subscriptions: {format_major(report.subscriptions_cost_cents, currency)}")
    click.echo(f"Usage:         {format_major(report.usage_cost_cents, currency)}")
    click.echo(f"Total:         {format_major(report.total_cents, currency)}")
    click.echo(f"Wallet:        {format_major(report.wallet_balance_cents, currency)}")
    click.echo(f"Active apps:   {report.active_app_count}")


# =============================================================================
# COMPANIES
# =============================================================================

@click.group('companies')
def companies_group():
    """Company (tenant) management."""


@companies_group.command('create')
@click.option('--name', required=True, help='Company name')
@with_appcontext
def create_company_cli(name):
    """Create a company."""
    company = Company(name=name, is_active=True)
    db.session.add(company)
    db.session.commit()
    click.echo(f"PASS Created company: {company.name} (ID: {company.id})")


@companies_group.command('deactivate')
@click.option('--company-id', type=int, required=True, help='Company ID')
@with_appcontext
def deactivate_company_cli(company_id):
    """Deactivate a company; its wallet is archived, never deleted."""
    company = db.session.get(Company, company_id)
    if not company:
        click.echo(f"FAIL Company ID {company_id} not found")
        return

    company.is_active = False
    db.session.commit()
    wallet_service.archive_wallet(company_id)
    click.echo(f"PASS Deactivated company {company_id}; wallet archived")


# =============================================================================
# WALLETS
# =============================================================================

@click.group('wallets')
def wallets_group():
    """Wallet inspection and manual recharge."""


@wallets_group.command('show')
@click.option('--company-id', type=int, required=True, help='Company ID')
@click.option('--limit', type=int, default=10, show_default=True, help='Recent transactions to list')
@with_appcontext
def show_wallet(company_id, limit):
    """Show a wallet balance and its most recent transactions."""
    try:
        wallet = wallet_service.get_balance(company_id)
        history = wallet_service.list_transactions(company_id, page=1, per_page=limit)
    except LedgerError as exc:
        click.echo(f"FAIL {exc.public_message()}")
        return

    c = wallet.currency
    click.echo(f"Company {company_id} wallet ({'archived' if wallet.is_archived else 'active'})")
    click.echo(f"  Balance:   {format_major(wallet.balance_cents, c)}")
    click.echo(f"  Deposited: {format_major(wallet.total_deposited_cents, c)}")
    click.echo(f"  Bonus:     {format_major(wallet.total_bonus_cents, c)}")
    click.echo(f"  Spent:     {format_major(wallet.total_spent_cents, c)}")
    click.echo(f"  Refunded:  {format_major(wallet.total_refunded_cents, c)}")
    click.echo(f"  Adjusted:  {format_major(wallet.total_adjusted_cents, c)}")

    if history["items"]:
        click.echo("\n" + "="*80)
        click.echo(f"{'ID':<6} {'Type':<11} {'Amount':<16} {'After':<16} {'Description'}")
        click.echo("="*80)
        for item in history["items"]:
            click.echo(
                f"{item['id']:<6} {item['type']:<11} {format_major(item['amount_cents'], c):<16} "
                f"{format_major(item['balance_after_cents'], c):<16} {item['description']}"
            )
        click.echo("="*80 + "\n")


@wallets_group.command('deposit')
@click.option('--company-id', type=int, required=True, help='Company ID')
@click.option('--amount', required=True, help='Amount in major units, e.g. 100.00')
@click.option('--reference', default=None, help='Payment reference (idempotency key)')
@click.option('--method', 'payment_method', default='MANUAL', show_default=True, help='Payment method label')
@with_appcontext
def deposit_cli(company_id, amount, reference, payment_method):
    """Record a recharge (bonus tiers apply)."""
    amount_cents = _parse_amount(amount, '--amount')
    try:
        result = wallet_service.deposit(
            company_id, amount_cents, payment_method=payment_method, reference=reference,
        )
    except LedgerError as exc:
        click.echo(f"FAIL {exc.public_message()}")
        return

    c = result.wallet.currency
    if result.duplicate:
        click.echo(f"WARN Reference {reference!r} already recorded as transaction {result.transaction.id}")
        return
    click.echo(
        f"PASS Deposited {format_major(result.transaction.amount_cents, c)} "
        f"(bonus {format_major(result.bonus_cents, c)}); "
        f"balance {format_major(result.wallet.balance_cents, c)}"
    )


@wallets_group.command('stats')
@with_appcontext
def wallet_stats():
    """Platform-wide wallet totals."""
    stats = wallet_service.get_wallet_stats()
    c = _currency()
    for key, value in stats.items():
        if key.endswith("_cents"):
            click.echo(f"{key[:-6]:<20} {format_major(value, c)}")
        else:
            click.echo(f"{key:<20} {value}")


# =============================================================================
# CATALOG
# =============================================================================

@click.group('catalog')
def catalog_group():
    """Marketplace price list setup."""


@catalog_group.command('add-app')
@click.option('--slug', required=True, help='Unique app key')
@click.option('--name', required=True, help='Display name')
@click.option('--pricing', 'pricing_model', default='SUBSCRIPTION', show_default=True,
              type=click.Choice(['FREE', 'SUBSCRIPTION', 'USAGE', 'HYBRID']))
@click.option('--price', default='0', show_default=True, help='Monthly price in major units')
@click.option('--trial-days', type=int, default=None, help='Trial length (default from config)')
@click.option('--requires', default='', help='Comma-separated slugs of required apps')
@with_appcontext
def add_app_cli(slug, name, pricing_model, price, trial_days, requires):
    """Register a marketplace app."""
    price_cents = _parse_amount(price, '--price')
    required = [s.strip() for s in requires.split(',') if s.strip()]
    try:
        app = catalog_service.create_app_listing(
            slug, name, pricing_model, price_cents, trial_days=trial_days, required_slugs=required,
        )
    except LedgerError as exc:
        click.echo(f"FAIL {exc.public_message()}")
        return
    click.echo(f"PASS Created app: {app.slug} (ID: {app.id})")


@catalog_group.command('add-bundle')
@click.option('--slug', required=True, help='Unique bundle key')
@click.option('--name', required=True, help='Display name')
@click.option('--apps', 'app_slugs', required=True, help='Comma-separated app slugs')
@click.option('--price', required=True, help='Monthly list price in major units')
@click.option('--discount', default='0', show_default=True, help='Monthly discount in major units')
@with_appcontext
def add_bundle_cli(slug, name, app_slugs, price, discount):
    """Register an app bundle."""
    price_cents = _parse_amount(price, '--price')
    discount_cents = _parse_amount(discount, '--discount')
    slugs = [s.strip() for s in app_slugs.split(',') if s.strip()]
    try:
        bundle = catalog_service.create_bundle(slug, name, slugs, price_cents, discount_cents)
    except LedgerError as exc:
        click.echo(f"FAIL {exc.public_message()}")
        return
    click.echo(
        f"PASS Created bundle: {bundle.slug} (ID: {bundle.id}), "
        f"charged {format_major(bundle.charge_cents, _currency())} per month"
    )


@catalog_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive apps')
@with_appcontext
def list_catalog(include_inactive):
    """List marketplace apps."""
    apps = catalog_service.list_apps(include_inactive=include_inactive)
    if not apps:
        click.echo("No apps found.")
        return
    for app in apps:
        requires = ", ".join(app.required_slugs) or "-"
        click.echo(
            f"{app.slug:<20} {app.pricing_model:<13} "
            f"{format_major(app.monthly_price_cents, _currency()):<16} requires: {requires}"
        )


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System maintenance commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(billing_group)
    app.cli.add_command(companies_group)
    app.cli.add_command(wallets_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(system_group)
