import logging
from contextlib import contextmanager
from typing import Iterator

import redis

from stoodio.core.config import settings
from stoodio.core.exceptions import ConflictError

logger = logging.getLogger(__name__)


def get_redis_url():
    return settings.REDIS_URL


def get_redis_client():
    """Get Redis client for locking and ephemeral session state."""
    return redis.from_url(get_redis_url(), decode_responses=True)


@contextmanager
def resource_lock(client: redis.Redis, key: str) -> Iterator[None]:
    """
    Hold a Redis lock on ``key`` for the duration of the block.

    Only one process can run a check-then-write on the same resource at a
    time. Failing to get the lock is reported as a conflict so the caller
    can retry.
    """
    lock = client.lock(
        key,
        timeout=settings.LOCK_TIMEOUT_SECONDS,
        blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT_SECONDS,
    )
    try:
        acquired = lock.acquire(blocking=True)
    except redis.exceptions.LockError:
        acquired = False
    if not acquired:
        raise ConflictError("Could not acquire lock, please try again.", details={"lock": key})

    try:
        yield
    finally:
        # Always release the lock
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning("lock %s expired before release", key)
