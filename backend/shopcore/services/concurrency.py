"""
Row locking and retry for the ledger services.

Every ledger write is a read-modify-write on one aggregate row (variant,
profile, account, order, return). The row is read through lock_for_update()
and the unit of work runs under run_with_retry():

- PostgreSQL/MySQL serialize writers on SELECT ... FOR UPDATE; a deadlock or
  lock timeout surfaces as OperationalError
- SQLite ignores FOR UPDATE; the aggregates' version_id column turns a lost
  update into StaleDataError at flush

Both are retried after a rollback, so the replay re-reads the state the
winning writer committed and re-applies its checks (credit balance, prior
order status) against it.
"""

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    return query.with_for_update()


def _backoff(attempt: int, base: float) -> None:
    time.sleep(base * (2 ** attempt))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS:
            db.session.rollback()
            if attempt == attempts - 1:
                raise
            _backoff(attempt, backoff_base)
