from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ubos.core.errors import RateLimitStoreError


@dataclass
class RateLimitRecord:
    # Fixed-window counter state for one rate-limit key.
    count: int
    window_reset_at_ms: int
    last_access_ms: int


@dataclass(frozen=True)
class CounterSnapshot:
    count: int
    reset_at_ms: int
    # Access time of the request before this one on the same key, if any.
    previous_access_ms: int | None = None


class RateLimitStore(Protocol):
    async def increment(self, key: str, *, window_ms: int, now_ms: int) -> CounterSnapshot:
        ...

    async def get(self, key: str) -> CounterSnapshot | None:
        ...

    async def sweep(self, now_ms: int) -> int:
        ...


class InMemoryRateLimitStore:
    """Single-process fixed-window counters.

    ``increment`` contains no await point, so under asyncio's cooperative
    scheduling each read-increment-write runs without interleaving. Counts
    are per process; run the Redis store when several instances share traffic.
    """

    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, key: str) -> CounterSnapshot | None:
        # Read-only view; previous_access_ms is the latest access on the key.
        record = self._records.get(key)
        if record is None:
            return None
        return CounterSnapshot(
            count=record.count,
            reset_at_ms=record.window_reset_at_ms,
            previous_access_ms=record.last_access_ms,
        )

    def clear(self) -> None:
        self._records.clear()

    async def increment(self, key: str, *, window_ms: int, now_ms: int) -> CounterSnapshot:
        record = self._records.get(key)
        previous_access_ms = record.last_access_ms if record is not None else None
        if record is None or record.window_reset_at_ms <= now_ms:
            record = RateLimitRecord(count=1, window_reset_at_ms=now_ms + window_ms, last_access_ms=now_ms)
            self._records[key] = record
        else:
            record.count += 1
            record.last_access_ms = now_ms
        return CounterSnapshot(
            count=record.count,
            reset_at_ms=record.window_reset_at_ms,
            previous_access_ms=previous_access_ms,
        )

    async def sweep(self, now_ms: int) -> int:
        # Collect first, then delete, so the dict is never mutated while iterating.
        expired = [key for key, record in self._records.items() if record.window_reset_at_ms <= now_ms]
        for key in expired:
            del self._records[key]
        return len(expired)


_FIXED_WINDOW_LUA = r"""
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local data = redis.call("HMGET", KEYS[1], "count", "reset", "last")
local count = tonumber(data[1])
local reset = tonumber(data[2])
local last = tonumber(data[3])

local previous = -1
if last ~= nil then
  previous = last
end

if count == nil or reset == nil or reset <= now_ms then
  count = 1
  reset = now_ms + window_ms
else
  count = count + 1
end

redis.call("HSET", KEYS[1], "count", count, "reset", reset, "last", now_ms)
redis.call("PEXPIREAT", KEYS[1], reset)

return {count, reset, previous}
"""


class RedisRateLimitStore:
    """Fixed-window counters shared across instances through Redis.

    Each increment is one Lua script evaluation, so it is atomic on the
    server. Keys expire at their window end, which makes ``sweep`` a no-op.
    """

    def __init__(self, *, redis_url: str, prefix: str) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis: Redis | None = None
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_redis(self) -> Redis:
        # Cache the client per event loop to avoid reconnecting per request.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and self._redis_loop == current_loop:
            return self._redis
        async with self._lock:
            if self._redis is None or self._redis_loop != current_loop:
                self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
                self._redis_loop = current_loop
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def increment(self, key: str, *, window_ms: int, now_ms: int) -> CounterSnapshot:
        redis = await self._get_redis()
        try:
            result = await redis.eval(_FIXED_WINDOW_LUA, 1, self._key(key), now_ms, window_ms)
        except RedisError as exc:
            raise RateLimitStoreError("Rate limit counter update failed") from exc
        previous = int(result[2])
        return CounterSnapshot(
            count=int(result[0]),
            reset_at_ms=int(result[1]),
            previous_access_ms=previous if previous >= 0 else None,
        )

    async def get(self, key: str) -> CounterSnapshot | None:
        redis = await self._get_redis()
        try:
            count, reset, last = await redis.hmget(self._key(key), "count", "reset", "last")
        except RedisError as exc:
            raise RateLimitStoreError("Rate limit counter read failed") from exc
        if count is None or reset is None:
            return None
        return CounterSnapshot(
            count=int(count),
            reset_at_ms=int(reset),
            previous_access_ms=int(last) if last is not None else None,
        )

    async def sweep(self, now_ms: int) -> int:
        return 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._redis_loop = None
