"""
Redis client for payment state management with atomic CAS operations.

This module provides:
- Async Redis connection pooling
- Lua-based Compare-And-Set (CAS) that also maintains the per-state index
- Per-appointment distributed locks
- Helpers for audit history, idempotency markers and index scans

Payment records carry no TTL: holds outlive a single request or process, so
the Redis instance backing this client must run with AOF persistence.

Environment Variables:
    REDIS_URL - Redis connection URL (default: redis://localhost:6379)
"""

import logging
from typing import List, Optional, Set

import redis.asyncio as redis
from redis.asyncio.lock import Lock

from ..config import get_settings
from .constants import STATE_INDEX_KEY

logger = logging.getLogger(__name__)

# Lua script for atomic Compare-And-Set (CAS) with state index maintenance
#
# 1. If key doesn't exist, only expected_version=0 is accepted (new record)
# 2. If key exists, its version must equal expected_version
# 3. On success the record is written and the appointment id moves from the
#    previous state's index set to the new state's index set
#
# Args:
#   KEYS[1] - Record key
#   ARGV[1] - expected_version
#   ARGV[2] - new_value (JSON with incremented version)
#   ARGV[3] - appointment id (member of the index sets)
#   ARGV[4] - state index key prefix
#
# Returns:
#   1 - Success
#   0 - Version conflict
CAS_LUA_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == false then
    if tonumber(ARGV[1]) ~= 0 then
        return 0
    end
else
    local current_obj = cjson.decode(current)
    if current_obj.version ~= tonumber(ARGV[1]) then
        return 0
    end
    redis.call('SREM', ARGV[4] .. current_obj.state, ARGV[3])
end
local new_obj = cjson.decode(ARGV[2])
redis.call('SET', KEYS[1], ARGV[2])
redis.call('SADD', ARGV[4] .. new_obj.state, ARGV[3])
return 1
"""

STATE_INDEX_PREFIX = STATE_INDEX_KEY.format(state="")


class RedisClient:
    """
    Redis client with connection pooling, atomic CAS and locks.

    Usage:
        client = RedisClient()
        await client.connect()

        success = await client.cas_set(
            key="payments:appointment:42",
            expected_version=1,
            new_value='{"version": 2, "state": "captured", ...}',
            member="42"
        )

        await client.close()
    """

    def __init__(self, redis_url: Optional[str] = None):
        """Initialize Redis client (connection created on connect())."""
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = None
        self.cas_script = None
        self._connected = False

    async def connect(self) -> None:
        """
        Initialize Redis connection pool and register the Lua script.

        Raises:
            redis.RedisError: If connection fails
        """
        if self._connected:
            logger.warning("Redis client already connected, skipping reconnect")
            return

        redis_url = self.redis_url or get_settings().REDIS_URL
        logger.info(f"Connecting to Redis at {redis_url}")

        try:
            self.redis = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
            await self.redis.ping()
            logger.info("Redis connection established successfully")

            self.cas_script = self.redis.register_script(CAS_LUA_SCRIPT)
            self._connected = True

        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def close(self) -> None:
        """
        Close Redis connection and release resources.

        Safe to call multiple times.
        """
        if self.redis:
            try:
                await self.redis.aclose()
                logger.info("Redis connection closed")
            except redis.RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self.redis = None
                self.cas_script = None
                self._connected = False

    def _require_connection(self) -> redis.Redis:
        if not self._connected or not self.redis:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self.redis

    async def cas_set(
        self,
        key: str,
        expected_version: int,
        new_value: str,
        member: str
    ) -> bool:
        """
        Atomic compare-and-set with version checking and index maintenance.

        Args:
            key: Record key (e.g., "payments:appointment:42")
            expected_version: Version the caller loaded
            new_value: JSON string with incremented version and the new state
            member: Appointment id stored in the state index sets

        Returns:
            True if the write happened, False on version conflict
        """
        self._require_connection()
        if not self.cas_script:
            raise RuntimeError("Redis client not connected. Call connect() first.")

        try:
            result = await self.cas_script(
                keys=[key],
                args=[expected_version, new_value, member, STATE_INDEX_PREFIX]
            )
            return result == 1
        except redis.RedisError as e:
            logger.error(f"Redis CAS operation failed for key {key}: {e}")
            raise

    async def get(self, key: str) -> Optional[str]:
        return await self._require_connection().get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        client = self._require_connection()
        if ttl:
            return await client.set(key, value, ex=ttl)
        return await client.set(key, value)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """
        Set a key only if it does not exist (SET NX EX).

        Returns:
            True if the key was created, False if it already existed
        """
        result = await self._require_connection().set(key, value, ex=ttl, nx=True)
        return bool(result)

    async def delete(self, key: str) -> int:
        return await self._require_connection().delete(key)

    async def append_history(self, key: str, value: str) -> int:
        """Append an archived record to an audit list (RPUSH)."""
        return await self._require_connection().rpush(key, value)

    async def get_history(self, key: str) -> List[str]:
        return await self._require_connection().lrange(key, 0, -1)

    async def state_members(self, state: str) -> Set[str]:
        """Return appointment ids currently indexed under a state."""
        return await self._require_connection().smembers(f"{STATE_INDEX_PREFIX}{state}")

    def lock(self, name: str, timeout: int, blocking_timeout: int) -> Lock:
        """
        Build a distributed lock usable as ``async with``.

        Entering the context raises ``redis.exceptions.LockError`` if the
        lock cannot be acquired within ``blocking_timeout`` seconds.
        """
        client = self._require_connection()
        return Lock(client, name=name, timeout=timeout, blocking_timeout=blocking_timeout)

    @property
    def is_connected(self) -> bool:
        return self._connected


# Singleton instance for application-wide use
redis_client = RedisClient()
