from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed token buckets shared by every process of a deployment."""

    # Atomic refill + consume; ARGV: now, refill_rate, capacity, cost
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so user-controlled parts cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"warden:rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before trusting it with shared limits."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def consume(
        self, key: str, capacity: int, refill_rate: float, cost: int, now: float
    ) -> Tuple[bool, float, int]:
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[now, refill_rate, capacity, max(1, cost)],
        )
        # Lua numbers are truncated to integers on return, so tokens travel as a string
        return bool(int(allowed)), float(tokens), int(reset_after or 0)

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()
