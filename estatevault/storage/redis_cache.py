from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis front for the token blacklist and request rate limits.

    Postgres (or the memory store) stays the source of truth for blacklist
    entries; Redis only answers the hot ``is this token revoked`` question.
    """

    BLACKLIST_PREFIX = "ev:revoked:"
    RATE_PREFIX = "ev:bucket:"

    # KEYS[1] bucket; ARGV now, refill per second, capacity, cost.
    # Bucket state is one "level|timestamp" string so a single GET/SET pair
    # covers it. Returns {allowed, level, seconds_until_cost_available}.
    _BUCKET_LUA = """
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local level = capacity
local stamp = now
local raw = redis.call('GET', KEYS[1])
if raw then
  local sep = string.find(raw, '|', 1, true)
  level = tonumber(string.sub(raw, 1, sep - 1))
  stamp = tonumber(string.sub(raw, sep + 1))
end

level = math.min(capacity, level + math.max(0, now - stamp) * rate)
local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

local keep = math.max(1, math.ceil(capacity / rate))
redis.call('SET', KEYS[1], tostring(level) .. '|' .. tostring(now), 'EX', keep)
return {allowed, tostring(level), wait}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._BUCKET_LUA)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Whole seconds until ``expires_at``; naive values are read as UTC."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(remaining))

    def verify_connection(self) -> None:
        """Raise unless Redis answers a PING.

        Uses a short-lived sync client so startup does not bind the async
        pool to whichever loop happens to run it.
        """
        client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            client.ping()
        finally:
            client.close()

    @classmethod
    def _normalize_rate_key(cls, key: str) -> str:
        # Keys embed emails and IPs; only a digest goes to Redis.
        return cls.RATE_PREFIX + hashlib.sha256(key.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, level, wait = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        permitted = int(allowed) == 1
        if not return_remaining:
            return permitted
        return permitted, max(0, int(float(level))), int(wait or 0)

    async def blacklist_token(self, digest: str, expires_at: datetime) -> None:
        await self.client.set(
            self.BLACKLIST_PREFIX + digest, "1", ex=self._ttl_seconds(expires_at)
        )

    async def is_token_blacklisted(self, digest: str) -> bool:
        return await self.client.exists(self.BLACKLIST_PREFIX + digest) > 0

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
