from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit counters and blocks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window counter plus block key, evaluated atomically.
    # Returns {allowed, remaining, ms_before_next}.
    _CONSUME_SCRIPT = """
local counter_key = KEYS[1]
local block_key = KEYS[2]
local points = tonumber(ARGV[1])
local duration_ms = tonumber(ARGV[2])
local block_ms = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local blocked_for = redis.call('PTTL', block_key)
if blocked_for > 0 then
  return {0, 0, blocked_for}
end

local consumed = redis.call('INCRBY', counter_key, cost)
local window_left = redis.call('PTTL', counter_key)
if window_left < 0 then
  redis.call('PEXPIRE', counter_key, duration_ms)
  window_left = duration_ms
end

if consumed > points then
  if block_ms > 0 then
    redis.call('SET', block_key, '1', 'PX', block_ms)
    redis.call('DEL', counter_key)
    return {0, 0, block_ms}
  end
  return {0, 0, window_left}
end

return {1, points - consumed, window_left}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _rate_keys(prefix: str, key: str) -> Tuple[str, str]:
        """Hash the subject so emails and addresses never reach Redis verbatim."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{prefix}:{digest}", f"rate:{prefix}:block:{digest}"

    async def consume_points(
        self,
        prefix: str,
        key: str,
        *,
        points: int,
        duration_seconds: int,
        block_seconds: int,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` points; returns (allowed, remaining, ms_before_next)."""

        counter_key, block_key = self._rate_keys(prefix, key)
        allowed, remaining, ms_before_next = await self._consume(
            keys=[counter_key, block_key],
            args=[points, duration_seconds * 1000, block_seconds * 1000, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(remaining)), max(0, int(ms_before_next))

    async def reset_points(self, prefix: str, key: str) -> None:
        counter_key, block_key = self._rate_keys(prefix, key)
        await self.client.delete(counter_key, block_key)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
