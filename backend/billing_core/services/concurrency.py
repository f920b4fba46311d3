# Overview: Service-layer operations for concurrency; row locks and bounded optimistic retries.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, LedgerError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id check on the locked row still catches stale writes there.
    populate_existing() discards any copy already held by the session.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and IntegrityError (unique-key races such
    as two first deposits creating the same wallet). Raises ConflictError
    once attempts are exhausted.

    func must be safe to re-run from scratch: it re-reads everything it
    needs after the rollback.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 5)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF", 0.05)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except LedgerError:
            # Business/validation outcome: discard partial writes, never retry
            db.session.rollback()
            raise
        except (OperationalError, StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                break
            time.sleep(backoff_base * (2 ** attempt))

    current_app.logger.warning(
        "Concurrent modification not resolved after %d attempts: %s", attempts, last_exc
    )
    raise ConflictError("Concurrent modification; retry the operation") from last_exc
