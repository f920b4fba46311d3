# Overview: Error taxonomy for the ledger core; every service raises one of these.

"""
Ledger error taxonomy.

- ValidationError: malformed input, raised before any storage access.
- InsufficientFundsError: expected business outcome of a deduction.
- ConflictError: optimistic-concurrency collision after retries were exhausted.
- PrerequisiteNotMetError: bundle/app activation blocked by a missing app.
- PaymentRequiredError: an operation that must be paid up-front was not.
- NotFoundError: unknown company, app, bundle or subscription.
- FatalLedgerError: storage failure or detected invariant violation.

Everything except FatalLedgerError has an actionable public message.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger core errors."""
    code = "LEDGER_ERROR"

    def public_message(self) -> str:
        return str(self)


class ValidationError(LedgerError, ValueError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"


class NotFoundError(LedgerError):
    code = "NOT_FOUND"


class ConflictError(LedgerError):
    """Concurrent modification; the caller should retry the whole operation."""
    code = "CONFLICT"

    def public_message(self) -> str:
        return "The wallet was modified concurrently. Please retry."


class InsufficientFundsError(LedgerError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required_cents: int, available_cents: int, currency: str = "EGP"):
        self.required_cents = required_cents
        self.available_cents = available_cents
        self.currency = currency
        super().__init__(
            f"Insufficient wallet balance: required {required_cents}, "
            f"available {available_cents} ({currency})"
        )

    def public_message(self) -> str:
        from .money import format_major
        return (
            f"Insufficient wallet balance. Required {format_major(self.required_cents, self.currency)}, "
            f"available {format_major(self.available_cents, self.currency)}. Please recharge your wallet."
        )


class PaymentRequiredError(LedgerError):
    code = "PAYMENT_REQUIRED"

    def __init__(self, message: str, required_cents: int = 0):
        self.required_cents = required_cents
        super().__init__(message)


class PrerequisiteNotMetError(LedgerError):
    code = "PREREQUISITE_NOT_MET"

    def __init__(self, missing: dict[str, list[str]]):
        # app slug -> required app slugs that are not installed
        self.missing = missing
        parts = [f"{slug} requires {', '.join(reqs)}" for slug, reqs in sorted(missing.items())]
        super().__init__("Required apps are not active: " + "; ".join(parts))


class FatalLedgerError(LedgerError):
    code = "FATAL"

    def public_message(self) -> str:
        return "Billing is temporarily unavailable."


class InvariantViolationError(FatalLedgerError):
    """Wallet arithmetic does not reconcile; requires manual reconciliation."""

    def __init__(self, wallet_id: int, expected_cents: int, actual_cents: int, detail: str = ""):
        self.wallet_id = wallet_id
        self.expected_cents = expected_cents
        self.actual_cents = actual_cents
        super().__init__(
            f"Wallet {wallet_id} invariant violated: expected balance {expected_cents}, "
            f"stored {actual_cents}. {detail}".strip()
        )


def error_payload(exc: LedgerError) -> dict:
    """Host-facing payload; Fatal errors never expose internal detail."""
    payload = {"error": exc.public_message(), "code": exc.code}
    if isinstance(exc, InsufficientFundsError):
        payload["required_cents"] = exc.required_cents
        payload["available_cents"] = exc.available_cents
    elif isinstance(exc, PrerequisiteNotMetError):
        payload["missing"] = exc.missing
    elif isinstance(exc, PaymentRequiredError):
        payload["required_cents"] = exc.required_cents
    return payload
