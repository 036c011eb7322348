"""
Unit-of-work helpers: row locking and bounded retry on contention.

A unit is a zero-argument callable that does its reads and writes and commits
once at the end. run_with_retry re-runs the whole unit after a contention
failure, so units must re-read everything they depend on.
"""
from __future__ import annotations

import time

from flask import current_app, has_app_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError
from ..extensions import db


CONTENTION_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE (it serializes writers on the
    database file instead); PostgreSQL honors it.
    """
    return query.with_for_update()


def ledger_retry_policy() -> tuple[int, float]:
    """(attempts, backoff_base) from app config."""
    if not has_app_context():
        return 3, 0.1
    cfg = current_app.config
    return int(cfg.get("LEDGER_RETRY_ATTEMPTS", 3)), float(cfg.get("LEDGER_RETRY_BACKOFF", 0.1))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB unit with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (optimistic locking conflicts). Once attempts are exhausted
    the failure surfaces as ConflictError.

    Any other exception rolls the session back before propagating, so a failed
    unit never leaves partial state in the session.
    """
    default_attempts, default_backoff = ledger_retry_policy()
    attempts = attempts if attempts is not None else default_attempts
    backoff_base = backoff_base if backoff_base is not None else default_backoff

    for attempt in range(attempts):
        try:
            return func()
        except CONTENTION_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConflictError(
                    f"Concurrent modification; gave up after {attempts} attempts"
                ) from exc
            if has_app_context():
                current_app.logger.info(
                    "Retrying unit after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts
                )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    raise ConflictError("Unit was not attempted")
