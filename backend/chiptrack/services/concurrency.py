# Overview: Row locking and retry helpers shared by the chip services.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class ConcurrentModificationError(ValueError):
    """A row changed under us between read and write (optimistic version mismatch)."""


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id columns still catch lost updates there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on=(OperationalError,)):
    """
    Execute a DB operation with retry on lock contention.

    Only OperationalError (deadlocks, lock timeouts) is retried by default.
    A StaleDataError means someone else already changed the row; retrying
    would silently apply a decision made on stale state, so it is converted
    to ConcurrentModificationError instead.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except StaleDataError as exc:
            db.session.rollback()
            raise ConcurrentModificationError("Record was modified concurrently; reload and retry") from exc
        except retry_on as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc

