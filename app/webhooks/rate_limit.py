"""Per-client-IP rate limiting for inbound webhooks.

Sliding-window counter kept in Redis so every worker process shares it:
the current fixed window's count plus the previous window's count weighted
by how much of it still overlaps the sliding window.

If Redis is unreachable the request is allowed and the failure logged;
dropping provider deliveries is worse than briefly under-enforcing.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

import redis
from fastapi import Request
from loguru import logger

from app.config.settings import settings
from app.core.redis_client import get_redis


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: float
    limit: int
    retry_after: int


class SlidingWindowRateLimiter:
    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        limit: int | None = None,
        window_seconds: int | None = None,
        prefix: str = "ratelimit:webhook",
    ) -> None:
        self._client = client
        self.limit = limit if limit is not None else settings.webhook_rate_limit_requests
        self.window_seconds = window_seconds if window_seconds is not None else settings.webhook_rate_limit_window_seconds
        self.prefix = prefix

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    def hit(self, identifier: str, now: float | None = None) -> RateLimitResult:
        """Count one request for identifier and decide whether it is allowed."""
        now = time.time() if now is None else now
        window = self.window_seconds
        current_window = int(now // window)
        elapsed = now - current_window * window
        current_key = f"{self.prefix}:{identifier}:{current_window}"
        previous_key = f"{self.prefix}:{identifier}:{current_window - 1}"

        try:
            pipe = self.client.pipeline()
            pipe.incr(current_key)
            pipe.expire(current_key, window * 2)
            pipe.get(previous_key)
            current, _, previous = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"[RATE_LIMIT] Redis unavailable, allowing request from {identifier}: {e}")
            return RateLimitResult(allowed=True, count=0, limit=self.limit, retry_after=0)

        overlap = (window - elapsed) / window
        count = int(previous or 0) * overlap + int(current)
        allowed = count <= self.limit
        retry_after = max(1, math.ceil(window - elapsed))
        if not allowed:
            logger.warning(f"[RATE_LIMIT] {identifier} over limit ({count:.1f}/{self.limit} per {window}s)")
        return RateLimitResult(allowed=allowed, count=count, limit=self.limit, retry_after=retry_after)


def client_ip(request: Request) -> str:
    """First X-Forwarded-For entry, falling back to the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None:
        return request.client.host
    return "unknown"


_limiter: SlidingWindowRateLimiter | None = None


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """FastAPI dependency; overridden in tests."""
    global _limiter
    if _limiter is None:
        _limiter = SlidingWindowRateLimiter()
    return _limiter
