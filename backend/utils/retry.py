"""
Persistence retry helper.

Transient storage errors (SQLite busy/locked, dropped connections) are retried
locally with exponential backoff; callers only see PersistenceError once the
attempts are exhausted.
"""
import asyncio
import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from constants import PersistenceConfig
from exceptions import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def commit_with_retry(
    db: Session,
    operation: str,
    mutate: Callable[[], T],
    attempts: int = PersistenceConfig.MAX_ATTEMPTS,
    initial_backoff: float = PersistenceConfig.INITIAL_BACKOFF_SECONDS,
) -> T:
    """
    Apply ``mutate`` and commit, retrying the whole unit on transient errors.

    ``mutate`` must be safe to re-run: after a rollback every loaded instance
    is expired, so it should re-read what it changes.

    Args:
        db: Database session
        operation: Human-readable operation name for logs and errors
        mutate: Callable performing the changes; its return value is passed through
        attempts: Maximum attempts before giving up
        initial_backoff: Delay before the second attempt (doubles each time)

    Returns:
        Whatever ``mutate`` returned

    Raises:
        PersistenceError: If every attempt failed
    """
    delay = initial_backoff
    for attempt in range(1, attempts + 1):
        try:
            result = mutate()
            db.commit()
            return result
        except (OperationalError, DBAPIError) as e:
            db.rollback()
            if not _is_transient(e) or attempt >= attempts:
                logger.error(f"{operation} failed after {attempt} attempt(s): {e}")
                raise PersistenceError(operation, f"{operation} failed: {e.orig or e}") from e
            logger.warning(f"{operation} hit a transient storage error (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
            delay *= PersistenceConfig.BACKOFF_MULTIPLIER

    raise PersistenceError(operation, f"{operation} failed")  # pragma: no cover - loop always returns or raises


def _is_transient(error: DBAPIError) -> bool:
    if isinstance(error, OperationalError):
        return True
    return bool(getattr(error, 'connection_invalidated', False))
