from __future__ import annotations

import asyncio
import logging

from redis.asyncio import Redis

from shipbridge.core.config import get_settings
from shipbridge.services.coordination.buckets import TokenTake, bucket_ttl_seconds


logger = logging.getLogger(__name__)


_COMPARE_AND_DELETE_LUA = r"""
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""

_COMPARE_AND_SWAP_LUA = r"""
local current = redis.call("GET", KEYS[1])
local has_expected = ARGV[2] == "1"
if has_expected then
  if current ~= ARGV[1] then
    return 0
  end
elseif current then
  return 0
end
local ttl = tonumber(ARGV[4])
if ttl > 0 then
  redis.call("SET", KEYS[1], ARGV[3], "PX", ttl)
else
  redis.call("SET", KEYS[1], ARGV[3])
end
return 1
"""

_INCR_LUA = r"""
local value = redis.call("INCRBY", KEYS[1], tonumber(ARGV[1]))
local ttl = tonumber(ARGV[2])
if ttl > 0 and value == tonumber(ARGV[1]) then
  redis.call("PEXPIRE", KEYS[1], ttl)
end
return value
"""

_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = capacity
  ts = now_ms
end
local stamp = ts
if now_ms > ts then
  stamp = now_ms
end
local delta = (stamp - ts) / 1000.0
tokens = math.min(capacity, tokens + delta * rate)
if tokens < 0 then
  tokens = 0
end

local retry_after = 0
local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
else
  if rate <= 0 then
    retry_after = 1000
  else
    retry_after = math.ceil(((cost - tokens) / rate) * 1000)
  end
end

redis.call("HSET", KEYS[1], "tokens", tostring(tokens), "ts", stamp)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry_after}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_coordination_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per call.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def reset_coordination_redis() -> None:
    # Drop cached connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None


class RedisCoordinationStore:
    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await get_coordination_redis()

    async def get(self, key: str) -> str | None:
        redis = await self._client()
        return await redis.get(key)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        redis = await self._client()
        result = await redis.set(key, value, nx=True, px=max(1, int(ttl_ms)))
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        redis = await self._client()
        result = await redis.eval(_COMPARE_AND_DELETE_LUA, 1, key, expected)
        return int(result) == 1

    async def compare_and_swap(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl_ms: int | None = None,
    ) -> bool:
        redis = await self._client()
        result = await redis.eval(
            _COMPARE_AND_SWAP_LUA,
            1,
            key,
            expected or "",
            "1" if expected is not None else "0",
            value,
            int(ttl_ms or 0),
        )
        return int(result) == 1

    async def incr(self, key: str, amount: int = 1, ttl_ms: int | None = None) -> int:
        redis = await self._client()
        result = await redis.eval(_INCR_LUA, 1, key, amount, int(ttl_ms or 0))
        return int(result)

    async def delete(self, key: str) -> None:
        redis = await self._client()
        await redis.delete(key)

    async def take_tokens(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_s: float,
        cost: int,
        now_ms: int,
    ) -> TokenTake:
        redis = await self._client()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            key,
            now_ms,
            refill_per_s,
            capacity,
            cost,
            bucket_ttl_seconds(refill_per_s, capacity),
        )
        return TokenTake(
            allowed=int(result[0]) == 1,
            tokens=float(result[1]),
            retry_after_ms=int(float(result[2])),
        )
