# Overview: Row locking and retry helpers shared by every mutating ledger operation.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The optimistic version_id columns cover SQLite (StaleDataError on flush).
    """
    return query.with_for_update()


def _default_attempts() -> int:
    try:
        return int(current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3))
    except RuntimeError:
        # Outside an app context (plain unit tests of this helper)
        return 3


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation as one transaction with retry on concurrency failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts) with exponential backoff. Any other
    exception rolls the session back and propagates unchanged, so a rejected
    operation never leaves partial writes behind.
    """
    if attempts is None:
        attempts = _default_attempts()

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying ledger operation after %s (attempt %d/%d)",
                type(exc).__name__, attempt + 1, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc

