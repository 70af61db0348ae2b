from __future__ import annotations

import redis

from app.config.settings import settings

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    """Shared Redis client (lazy; connecting happens on first command)."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True)
    return _client
