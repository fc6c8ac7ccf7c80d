# Overview: Service-layer operations for concurrency; encapsulates business logic and database work.

from __future__ import annotations

import logging
import time

from flask import current_app, has_app_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version columns still
    catch lost updates there.
    """
    return query.with_for_update()


def _retry_budget(attempts: int | None, backoff_base: float | None) -> tuple[int, float]:
    if has_app_context():
        attempts = attempts or current_app.config.get("DB_RETRY_ATTEMPTS", 3)
        if backoff_base is None:
            backoff_base = current_app.config.get("DB_RETRY_BACKOFF", 0.1)
    return attempts or 3, 0.1 if backoff_base is None else backoff_base


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The whole unit is re-executed, so it
    must re-read everything it checks.
    """
    attempts, backoff_base = _retry_budget(attempts, backoff_base)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.info("Concurrent write conflict (attempt %d/%d): %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            # Business errors abort the unit; nothing half-done may autoflush later.
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def run_soft(description: str, func, *args, **kwargs):
    """
    Run a derived-state update whose failure must not undo the committed
    primary record. Failures are logged and swallowed; returns None then.
    """
    try:
        return func(*args, **kwargs)
    except Exception:
        db.session.rollback()
        logger.exception("Soft failure during %s; primary record kept", description)
        return None
