# Overview: Transaction helpers shared by every service that mutates the database.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import StorefrontError, TransactionError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Open the write transaction up front.

    On SQLite this takes the RESERVED lock immediately (BEGIN IMMEDIATE) so two
    read-modify-write operations on the same rows serialize instead of both
    reading the old value. Other dialects rely on lock_for_update.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other failure rolls the session back
    before propagating: domain errors unchanged, other database errors as
    TransactionError so callers never see raw driver messages.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.error("Transaction failed after %s attempts: %s", attempts, exc)
                raise TransactionError("Database is busy, please retry") from exc
            time.sleep(backoff_base * (2 ** attempt))
        except StorefrontError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Transaction rolled back")
            raise TransactionError("Database operation failed") from exc
        except Exception:
            db.session.rollback()
            raise


def best_effort(action: str, func, *args, **kwargs):
    """
    Run a post-commit side effect (shipment, email, refund call).

    Failures are logged and swallowed: the caller's transaction has already
    committed and must not be reported as failed because of this step.
    Returns the function's result, or None when it raised.
    """
    try:
        return func(*args, **kwargs)
    except Exception:
        current_app.logger.exception("Best-effort step failed: %s", action)
        # A failed side effect may have touched the session; leave it clean
        db.session.rollback()
        return None
