from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for HTTP-layer rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Refill and take one token in a single round trip. A rejected call leaves
    # the hash untouched, and the key expires once the bucket would be full.
    _TAKE_TOKEN_SCRIPT = """
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local now = tonumber(ARGV[1])
local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local since = now - (tonumber(state[2]) or now)
tokens = math.min(capacity, tokens + math.max(0, since) * rate)

if tokens < 1 then
  return {0, 0, math.ceil((1 - tokens) / rate)}
end

tokens = tokens - 1
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil((capacity - tokens) / rate)))
return {1, math.floor(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._take_token = self.client.register_script(self._TAKE_TOKEN_SCRIPT)

    def verify_connection(self) -> None:
        """Ping once with a throwaway sync client."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied parts cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Take one token from the shared bucket for ``key``.

        Returns ``(allowed, remaining, reset_seconds)``.
        """
        allowed, remaining, reset_seconds = await self._take_token(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), limit / window_seconds, limit],
        )
        return bool(int(allowed)), int(remaining), int(reset_seconds)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
