from __future__ import annotations

from functools import lru_cache

import redis

from bulkops.config import settings


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    return redis.Redis.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.QUEUE_OPERATION_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.QUEUE_OPERATION_TIMEOUT_SECONDS,
    )
