# Overview: Unit-of-work helpers for order writes: row locks and optimistic-retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Orders also carry version_id, so a concurrent writer fails with
    StaleDataError even where the lock is ignored. populate_existing()
    refreshes instances already in the identity map so the write starts
    from the row as it is now.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a read-modify-write unit of work, re-running it on conflict.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic version check failed because another request committed first).
    func must re-read everything it mutates; each attempt starts from a
    rolled-back session.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Order write conflict (%s), retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
