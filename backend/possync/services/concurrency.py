# Overview: Commit/retry helpers for local store writes; wraps driver failures as PersistenceError.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import PersistenceError, SyncTimeoutError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locked database) and StaleDataError.
    Any other SQLAlchemy failure, or exhausting the attempts, surfaces as
    PersistenceError after the session is rolled back.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise PersistenceError(f"local store write failed: {exc}") from exc
            time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(f"local store write failed: {exc}") from exc


class Deadline:
    """
    Wall-clock budget for one orchestrator entry point.

    Checked between external calls; an in-flight adapter call is never
    interrupted, the overrun surfaces at the next check.
    """

    def __init__(self, seconds: float | None):
        self.seconds = seconds
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def expired(self) -> bool:
        return self.seconds is not None and self.elapsed > self.seconds

    def check(self, what: str) -> None:
        if self.expired():
            raise SyncTimeoutError(
                f"{what} exceeded the {self.seconds:g}s sync budget",
                elapsed_seconds=round(self.elapsed, 3),
            )
