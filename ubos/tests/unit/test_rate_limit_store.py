from __future__ import annotations

import os
import time
from uuid import uuid4

import pytest
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ubos.core.errors import RateLimitStoreError
from ubos.services.rate_limit_store import InMemoryRateLimitStore, RedisRateLimitStore


@pytest.mark.asyncio
async def test_increment_counts_within_window() -> None:
    store = InMemoryRateLimitStore()
    first = await store.increment("k", window_ms=1_000, now_ms=10_000)
    second = await store.increment("k", window_ms=1_000, now_ms=10_400)

    assert (first.count, first.reset_at_ms, first.previous_access_ms) == (1, 11_000, None)
    assert (second.count, second.reset_at_ms, second.previous_access_ms) == (2, 11_000, 10_000)


@pytest.mark.asyncio
async def test_expired_window_starts_fresh() -> None:
    store = InMemoryRateLimitStore()
    for offset in range(3):
        await store.increment("k", window_ms=1_000, now_ms=10_000 + offset)

    fresh = await store.increment("k", window_ms=1_000, now_ms=11_000)
    assert fresh.count == 1
    assert fresh.reset_at_ms == 12_000
    assert fresh.previous_access_ms == 10_002


@pytest.mark.asyncio
async def test_keys_are_independent() -> None:
    store = InMemoryRateLimitStore()
    await store.increment("a", window_ms=1_000, now_ms=0)
    await store.increment("a", window_ms=1_000, now_ms=1)
    other = await store.increment("b", window_ms=1_000, now_ms=2)
    assert other.count == 1
    assert len(store) == 2


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_records() -> None:
    store = InMemoryRateLimitStore()
    for index in range(100):
        await store.increment(f"old-{index}", window_ms=1_000, now_ms=0)
    await store.increment("live", window_ms=10_000, now_ms=0)

    removed = await store.sweep(5_000)

    assert removed == 100
    assert len(store) == 1
    assert (await store.get("live")).count == 1
    assert await store.sweep(5_000) == 0


@pytest.mark.asyncio
async def test_get_returns_current_window_without_counting() -> None:
    store = InMemoryRateLimitStore()
    assert await store.get("k") is None
    await store.increment("k", window_ms=1_000, now_ms=100)
    await store.increment("k", window_ms=1_000, now_ms=300)

    snapshot = await store.get("k")
    assert (snapshot.count, snapshot.reset_at_ms, snapshot.previous_access_ms) == (2, 1_100, 300)
    assert (await store.get("k")).count == 2


@pytest.mark.asyncio
async def test_unreachable_redis_raises_store_error() -> None:
    store = RedisRateLimitStore(redis_url="redis://localhost:9999/0", prefix="ubos-test")
    try:
        with pytest.raises(RateLimitStoreError):
            await store.increment("k", window_ms=1_000, now_ms=0)
        with pytest.raises(RateLimitStoreError):
            await store.get("k")
    finally:
        await store.close()


@pytest.fixture
async def live_redis_store():
    # Runs against REDIS_URL when a server answers; skipped otherwise.
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    prefix = f"ubos-test-{uuid4().hex[:8]}"
    client = Redis.from_url(redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError):
        await client.aclose()
        pytest.skip("Redis is not reachable")
    store = RedisRateLimitStore(redis_url=redis_url, prefix=prefix)
    yield store
    await store.close()
    keys = [key async for key in client.scan_iter(match=f"{prefix}:*")]
    if keys:
        await client.delete(*keys)
    await client.aclose()


@pytest.mark.asyncio
async def test_redis_script_follows_fixed_window(live_redis_store: RedisRateLimitStore) -> None:
    # Keys expire at the window end, so the clock must be real.
    now_ms = int(time.time() * 1000)
    first = await live_redis_store.increment("k", window_ms=60_000, now_ms=now_ms)
    second = await live_redis_store.increment("k", window_ms=60_000, now_ms=now_ms + 400)
    fresh = await live_redis_store.increment("k", window_ms=60_000, now_ms=now_ms + 60_000)

    assert (first.count, first.reset_at_ms, first.previous_access_ms) == (1, now_ms + 60_000, None)
    assert (second.count, second.reset_at_ms, second.previous_access_ms) == (2, now_ms + 60_000, now_ms)
    assert (fresh.count, fresh.reset_at_ms, fresh.previous_access_ms) == (1, now_ms + 120_000, now_ms + 400)

    snapshot = await live_redis_store.get("k")
    assert (snapshot.count, snapshot.reset_at_ms) == (1, now_ms + 120_000)
    assert await live_redis_store.get("missing") is None
    assert await live_redis_store.sweep(now_ms) == 0
