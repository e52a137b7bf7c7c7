"""
Retry utilities for transient storage lock contention.
"""
import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError

from carepay.errors import Contention

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver messages that mean "try again", across SQLite, MySQL and PostgreSQL
LOCK_ERROR_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "lock wait timeout",
    "could not obtain lock",
    "could not serialize access",
)


def is_lock_error(exc: BaseException) -> bool:
    """True if a DB error is a transient lock/serialization failure."""
    if not isinstance(exc, OperationalError):
        return False
    message = str(getattr(exc, "orig", exc) or exc).lower()
    return any(marker in message for marker in LOCK_ERROR_MARKERS)


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    backoff: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (Contention,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation, retrying on retry_on exceptions with a fixed backoff.

    The last exception is re-raised once max_attempts is exhausted.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(
                    "Giving up on %s after %d attempts: %s",
                    getattr(operation, "__name__", "operation"), attempt, e,
                )
                raise
            logger.warning(
                "Attempt %d/%d of %s failed: %s. Retrying in %.2fs",
                attempt, max_attempts, getattr(operation, "__name__", "operation"), e, backoff,
            )
            sleep(backoff)
            attempt += 1
