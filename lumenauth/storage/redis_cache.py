from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


# Threshold check and increment must not interleave with a concurrent attempt
_INCR_BELOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
    return -1
end
local value = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[2])
return value
"""

_POP_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
end
return 0
"""


class RedisKV:
    """Redis-backed KVStore for authorization sessions, codes and counters."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_below = self.client.register_script(_INCR_BELOW_SCRIPT)
        self._pop_if_equals = self.client.register_script(_POP_IF_EQUALS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is None:
            await self.client.set(key, value)
        else:
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def replace(self, key: str, value: str) -> bool:
        return bool(await self.client.set(key, value, xx=True, keepttl=True))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def pop_if_equals(self, key: str, expected: str) -> bool:
        return bool(int(await self._pop_if_equals(keys=[key], args=[expected])))

    async def incr_below(self, key: str, limit: int, ttl_seconds: int) -> Optional[int]:
        result = int(
            await self._incr_below(keys=[key], args=[limit, max(1, int(ttl_seconds))])
        )
        return None if result < 0 else result

    async def close(self) -> None:
        """Close the connection pool when the runtime shuts down."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisKV:
    """Redis KVStore driven by a synchronous client.

    Used in TEST_MODE where TestClient runs each request on its own event
    loop; the async pool would otherwise be bound to the first loop it saw.
    Methods stay ``async`` so callers await both variants uniformly.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_below = self._sync_client.register_script(_INCR_BELOW_SCRIPT)
        self._pop_if_equals = self._sync_client.register_script(_POP_IF_EQUALS_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is None:
            self._sync_client.set(key, value)
        else:
            self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def replace(self, key: str, value: str) -> bool:
        return bool(self._sync_client.set(key, value, xx=True, keepttl=True))

    async def delete(self, key: str) -> None:
        self._sync_client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        return self._sync_client.getdel(key)

    async def pop_if_equals(self, key: str, expected: str) -> bool:
        return bool(int(self._pop_if_equals(keys=[key], args=[expected])))

    async def incr_below(self, key: str, limit: int, ttl_seconds: int) -> Optional[int]:
        result = int(self._incr_below(keys=[key], args=[limit, max(1, int(ttl_seconds))]))
        return None if result < 0 else result

    async def close(self) -> None:
        self._sync_client.close()
