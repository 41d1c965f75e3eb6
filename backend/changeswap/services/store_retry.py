"""Store resilience helpers.

Idempotent reads get a bounded retry with exponential backoff. Writes are not
retried here: they roll back and surface TransientStoreError, and the write
paths de-duplicate through unique constraints so a caller-driven retry is safe.
"""

import functools
import logging
import time
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from changeswap.config import settings
from changeswap.errors import TransientStoreError

logger = logging.getLogger(__name__)


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(exc.connection_invalidated)


def retry_read(func):
    """Retry a read-only service function on transient store failures.

    The wrapped function must take the Session as its first argument.
    """

    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        attempts = max(1, settings.STORE_RETRY_ATTEMPTS)
        delay = settings.STORE_RETRY_BASE_DELAY
        for attempt in range(1, attempts + 1):
            try:
                return func(db, *args, **kwargs)
            except DBAPIError as e:
                if not _is_transient(e):
                    raise
                db.rollback()
                if attempt == attempts:
                    logger.error("%s failed after %d attempts: %s", func.__name__, attempts, e)
                    raise TransientStoreError("Store temporarily unavailable, please retry") from e
                logger.warning(
                    "%s transient failure (attempt %d/%d), retrying in %.2fs",
                    func.__name__, attempt, attempts, delay,
                )
                time.sleep(delay)
                delay *= 2

    return wrapper


@contextmanager
def transient_errors(db: Session):
    """Roll back and convert transient store failures raised inside a write block."""
    try:
        yield
    except DBAPIError as e:
        if not _is_transient(e):
            raise
        db.rollback()
        logger.error("Write failed on transient store error: %s", e)
        raise TransientStoreError("Store temporarily unavailable, please retry") from e
