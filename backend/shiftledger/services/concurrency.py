# Overview: Row locking and retry for ledger writes that race on shifts, stock and sequences.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on databases that support it.

    SQLite ignores the clause; there the write lock taken by the first
    UPDATE of the transaction serializes writers instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Run one ledger transaction, retrying on lock and version conflicts.

    OperationalError covers "database is locked" and deadlocks; StaleDataError
    is a version_id mismatch (a shift or store changed since it was read).
    The session is rolled back before every retry, so func must re-read
    whatever it needs and commit its own work.

    Attempts default to LEDGER_RETRY_ATTEMPTS.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts:
                current_app.logger.error("Giving up after %d attempts: %s", attempts, exc)
                raise
            current_app.logger.warning(
                "Concurrent write conflict (attempt %d/%d), retrying: %s", attempt, attempts, exc
            )
            time.sleep(backoff_base * (2 ** (attempt - 1)))
