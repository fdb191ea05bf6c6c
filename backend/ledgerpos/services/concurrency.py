# Overview: Service-layer operations for concurrency; retries, row locks and write-transaction setup.

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import ConflictError

logger = logging.getLogger(__name__)


class ConcurrencyConflict(ConflictError):
    """
    A concurrent writer won the race and the storage layer rejected this commit.

    Nothing was applied. Safe to retry the whole operation from a fresh read.
    """
    retryable = True


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite, begin_write_transaction() takes the database write lock instead.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Start the current unit of work as a writer.

    SQLite has no row locks: BEGIN IMMEDIATE takes the write lock before the
    first read, so concurrent finalizations serialize instead of both reading
    the same stock. Other dialects rely on lock_for_update().
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.driver_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). When attempts are exhausted the session is
    rolled back and ConcurrencyConflict is raised; no partial effect remains.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("giving up after %d attempts: %s", attempts, exc)
                raise ConcurrencyConflict(
                    "Concurrent update detected; retry the operation",
                    details={"attempts": attempts},
                ) from exc
            logger.info("retrying after concurrency failure (attempt %d): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
