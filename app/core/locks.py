from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import redis
from loguru import logger

from app.core.redis_client import get_redis

LOCK_TTL_SECONDS = 10 * 60


class RedisLockManager:
    """SET NX locks shared by every worker process."""

    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int = LOCK_TTL_SECONDS) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds

    @property
    def redis(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    @contextmanager
    def acquire(self, key: str) -> Iterator[bool]:
        """Yield True if the lock was taken (and release it afterwards), else False."""
        token = str(uuid.uuid4())
        acquired = self.redis.set(key, token, nx=True, ex=self.ttl_seconds)

        if not acquired:
            logger.debug(f"Lock busy, skipping: {key}")
            yield False
            return

        try:
            logger.debug(f"Lock acquired: {key}")
            yield True
        finally:
            # Only release a lock we still own; it may have expired and been re-taken
            if self.redis.get(key) == token:
                self.redis.delete(key)
                logger.debug(f"Lock released: {key}")


lock_manager = RedisLockManager()
