"""Per-user in-flight counters kept in Redis.

Each counter is a plain integer key with a TTL so that a crashed client can
never hold a slot forever. Acquire and release run as Lua scripts, which makes
the check-and-increment atomic across every API process and worker.
"""
from __future__ import annotations

import logging

import redis

from bulkops.config import settings
from bulkops.exceptions import ConcurrencyLimitExceededException, StorageOperationFailedException

logger = logging.getLogger(__name__)

UPLOADS_SCOPE = "uploads"
BULK_JOBS_SCOPE = "bulk_jobs"

# Returns {acquired, count}
_ACQUIRE_LUA = """
local key = KEYS[1]
local max = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', key) or '0')
if max <= 0 or current >= max then
  return {0, current}
end
local n = current + 1
redis.call('SET', key, n, 'EX', ttl)
return {1, n}
"""

# Returns {released, count}; never goes below zero and keeps the remaining TTL
_RELEASE_LUA = """
local key = KEYS[1]
local v = redis.call('GET', key)
if not v then
  return {0, 0}
end
local n = tonumber(v)
if n <= 1 then
  redis.call('DEL', key)
  return {1, 0}
end
n = n - 1
local pttl = redis.call('PTTL', key)
if pttl and pttl > 0 then
  redis.call('SET', key, n, 'PX', pttl)
else
  redis.call('SET', key, n)
end
return {1, n}
"""


class ConcurrencyLimiter:
    def __init__(
        self,
        client: redis.Redis,
        scope: str = UPLOADS_SCOPE,
        max_concurrent: int | None = None,
        slot_ttl_seconds: int | None = None,
    ):
        self.redis = client
        self.scope = scope
        if max_concurrent is None:
            max_concurrent = (
                settings.BULK_MAX_CONCURRENT_PER_USER
                if scope == BULK_JOBS_SCOPE
                else settings.UPLOAD_MAX_CONCURRENT_PER_USER
            )
        self.max_concurrent = max_concurrent
        self.slot_ttl_seconds = slot_ttl_seconds or settings.CONCURRENCY_SLOT_TTL_SECONDS
        self._acquire = client.register_script(_ACQUIRE_LUA)
        self._release = client.register_script(_RELEASE_LUA)

    def key_for(self, user_id: object) -> str:
        # Hash tag keeps a user's keys on one cluster slot
        return f"bulkops:{self.scope}:{{{user_id}}}:inflight"

    @property
    def active_users_key(self) -> str:
        return f"bulkops:{self.scope}:active_users"

    def get_current_count(self, user_id: object) -> int:
        try:
            value = self.redis.get(self.key_for(user_id))
        except redis.RedisError as exc:
            raise StorageOperationFailedException(f"Could not read concurrency counter: {exc}") from exc
        return int(value) if value is not None else 0

    def acquire_slot(self, user_id: object) -> int:
        """Take one slot or raise ConcurrencyLimitExceededException. Returns the new count."""
        key = self.key_for(user_id)
        try:
            acquired, count = self._acquire(keys=[key], args=[self.max_concurrent, self.slot_ttl_seconds])
        except redis.RedisError as exc:
            raise StorageOperationFailedException(f"Could not acquire concurrency slot: {exc}") from exc
        if not int(acquired):
            logger.info(
                "Concurrency limit reached for user %s (%s %s/%s)",
                user_id, self.scope, count, self.max_concurrent,
            )
            raise ConcurrencyLimitExceededException(str(user_id), self.max_concurrent, int(count), self.scope)
        self._track_active(user_id)
        return int(count)

    def release_slot(self, user_id: object) -> int:
        """Give one slot back. Releasing with nothing held is a no-op."""
        try:
            _released, count = self._release(keys=[self.key_for(user_id)])
        except redis.RedisError as exc:
            raise StorageOperationFailedException(f"Could not release concurrency slot: {exc}") from exc
        return int(count)

    def clear_user_slots(self, user_id: object) -> None:
        try:
            self.redis.delete(self.key_for(user_id))
            self.redis.srem(self.active_users_key, str(user_id))
        except redis.RedisError as exc:
            raise StorageOperationFailedException(f"Could not clear concurrency slots: {exc}") from exc
        logger.info("Cleared %s concurrency slots for user %s", self.scope, user_id)

    def heartbeat(self, user_id: object) -> bool:
        """Extend the TTL of a held counter. Returns False when nothing is held."""
        try:
            return bool(self.redis.expire(self.key_for(user_id), self.slot_ttl_seconds))
        except redis.RedisError as exc:
            raise StorageOperationFailedException(f"Could not extend concurrency slot: {exc}") from exc

    def prune_active_users(self) -> int:
        """Drop users whose counter expired or reached zero from the active set."""
        removed = 0
        for member in self.redis.smembers(self.active_users_key):
            user_id = member.decode() if isinstance(member, bytes) else member
            if self.get_current_count(user_id) == 0:
                self.redis.srem(self.active_users_key, user_id)
                removed += 1
        return removed

    def _track_active(self, user_id: object) -> None:
        # The active set only feeds maintenance and stats
        try:
            self.redis.sadd(self.active_users_key, str(user_id))
        except redis.RedisError:
            logger.warning("Could not index active user %s", user_id)
