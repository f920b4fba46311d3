# backend/billing_core/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/billing.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///billing.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Wallets are created lazily in this currency
    WALLET_DEFAULT_CURRENCY = os.environ.get("WALLET_DEFAULT_CURRENCY", "EGP")

    # Optimistic concurrency: attempts before surfacing a Conflict
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "5"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.05"))

    # Subscription engine policy
    BILLING_DEFAULT_TRIAL_DAYS = int(os.environ.get("BILLING_DEFAULT_TRIAL_DAYS", "14"))
    BILLING_RETRY_ATTEMPTS = int(os.environ.get("BILLING_RETRY_ATTEMPTS", "3"))
    BILLING_RETRY_INTERVAL_DAYS = int(os.environ.get("BILLING_RETRY_INTERVAL_DAYS", "1"))
    BILLING_PRORATE_UPGRADES = _env_bool("BILLING_PRORATE_UPGRADES", False)
    BILLING_SETTLE_USAGE_IN_CYCLE = _env_bool("BILLING_SETTLE_USAGE_IN_CYCLE", True)

    # Platform plan price list (minor units of WALLET_DEFAULT_CURRENCY)
    PLATFORM_PLAN_FEES = {
        "BASIC": 0,
        "PRO": 49_900,
        "ENTERPRISE": 149_900,
    }
