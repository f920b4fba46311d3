# Overview: End-to-end billing flow from first deposit through usage settlement.

from datetime import datetime, timedelta

from billing_core.models.subscriptions import SUB_ACTIVE, SUB_TRIAL
from billing_core.services import subscription_service, usage_service, wallet_service
from billing_core.services.ledger_service import reconcile_wallet

from conftest import NOW


def test_deposit_trial_cycle_and_usage(db_session, company, crm_app):
    """
    Deposit 1000.00 -> 1200.00 with bonus; a 150.00/month app trials for 14
    days and is charged at trial end; three 20.00 usage events settle as one
    deduction.
    """
    result = wallet_service.deposit(company.id, 100_000, payment_method="CARD", reference="r1")
    assert result.wallet.balance_cents == 120_000

    # Gateway retries the callback
    again = wallet_service.deposit(company.id, 100_000, payment_method="CARD", reference="r1")
    assert again.duplicate
    assert wallet_service.get_balance(company.id).balance_cents == 120_000

    sub = subscription_service.install_app(company.id, "crm", now=NOW)
    assert sub.status == SUB_TRIAL
    assert sub.trial_ends_at == NOW + timedelta(days=14)

    trial_end = sub.trial_ends_at
    subscription_service.run_billing_cycle(trial_end, settle_usage=False)
    sub = subscription_service.get_company_subscriptions(company.id)["apps"][0]
    assert sub["status"] == SUB_ACTIVE
    assert sub["next_billing_at"] == "2026-02-24T09:00:00Z"
    assert wallet_service.get_balance(company.id).balance_cents == 105_000

    # Idempotent re-run of the same cycle
    assert subscription_service.run_billing_cycle(trial_end, settle_usage=False) == []

    for day in (25, 26, 27):
        usage_service.record_usage(company.id, "sms", 1, 2_000, occurred_at=datetime(2026, 1, day))

    txn = usage_service.settle_period_usage(company.id, datetime(2026, 1, 1), datetime(2026, 2, 1))
    assert txn.amount_cents == 6_000
    wallet = wallet_service.get_balance(company.id)
    assert wallet.balance_cents == 99_000

    assert wallet.total_deposited_cents == 100_000
    assert wallet.total_bonus_cents == 20_000
    assert wallet.total_spent_cents == 21_000
    assert reconcile_wallet(wallet)["ok"]
