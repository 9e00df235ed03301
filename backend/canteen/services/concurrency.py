# Overview: Optimistic-concurrency retry shared by every service that writes under contention.

from __future__ import annotations

import logging
import random
import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, classify_store_error
from ..extensions import db


logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def run_with_retry(
    func,
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    retry_on: tuple = RETRYABLE_ERRORS,
    jitter: bool = True,
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts) by default. The session is rolled back
    before each retry, so func must re-read everything it touches.

    When attempts are exhausted the last error is raised as an ApiError:
    lost optimistic locks become ConflictError, driver errors are
    classified by classify_store_error.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                break
            delay = backoff_base * (2 ** attempt)
            if jitter and delay:
                delay = random.uniform(delay / 2, delay * 1.5)
            logger.debug("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
            if delay:
                time.sleep(delay)

    if isinstance(last_exc, (StaleDataError, IntegrityError)):
        raise ConflictError(
            "Concurrent modification, retries exhausted",
            details={"attempts": attempts},
        ) from last_exc
    raise classify_store_error(last_exc) from last_exc
