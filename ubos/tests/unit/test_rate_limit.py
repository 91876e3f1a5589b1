from __future__ import annotations

import asyncio

import pytest

from ubos.apps.api import rate_limit
from ubos.apps.api.rate_limit import RateLimitConfig, RateLimiter
from ubos.services.rate_limit_store import InMemoryRateLimitStore, RedisRateLimitStore


class _Clock:
    def __init__(self, now_s: float) -> None:
        self.now_s = now_s

    def __call__(self) -> float:
        return self.now_s

    def advance_ms(self, delta_ms: int) -> None:
        self.now_s += delta_ms / 1000.0


def _limiter(*, window_ms: int = 900_000, max_requests: int = 5, clock: _Clock | None = None) -> RateLimiter:
    return RateLimiter(
        RateLimitConfig(window_ms=window_ms, max_requests=max_requests),
        name="auth",
        store=InMemoryRateLimitStore(),
        time_provider=clock or _Clock(1_700_000_000.0),
    )


@pytest.mark.asyncio
async def test_remaining_counts_down_then_denies() -> None:
    limiter = _limiter()
    decisions = [await limiter.check("fp:/login") for _ in range(6)]

    assert [decision.remaining for decision in decisions] == [4, 3, 2, 1, 0, 0]
    assert [decision.allowed for decision in decisions] == [True] * 5 + [False]
    denied = decisions[-1]
    assert denied.count == 6
    assert 0 < denied.retry_after_s <= 900


@pytest.mark.asyncio
async def test_window_reset_admits_again() -> None:
    clock = _Clock(1_700_000_000.0)
    limiter = _limiter(window_ms=1_000, max_requests=1, clock=clock)
    assert (await limiter.check("k")).allowed is True
    assert (await limiter.check("k")).allowed is False

    clock.advance_ms(1_000)
    decision = await limiter.check("k")
    assert decision.allowed is True
    assert decision.count == 1


@pytest.mark.asyncio
async def test_retry_after_rounds_up_to_whole_seconds() -> None:
    clock = _Clock(1_700_000_000.0)
    limiter = _limiter(window_ms=10_000, max_requests=1, clock=clock)
    await limiter.check("k")
    clock.advance_ms(8_500)
    denied = await limiter.check("k")
    assert denied.retry_after_s == 2


@pytest.mark.asyncio
async def test_limiter_names_namespace_store_keys() -> None:
    store = InMemoryRateLimitStore()
    clock = _Clock(1_700_000_000.0)
    first = RateLimiter(RateLimitConfig(window_ms=1_000, max_requests=1), name="general", store=store, time_provider=clock)
    second = RateLimiter(RateLimitConfig(window_ms=1_000, max_requests=1), name="admin", store=store, time_provider=clock)

    assert (await first.check("same-key")).allowed is True
    assert (await second.check("same-key")).allowed is True
    assert (await store.get("general:same-key")).count == 1
    assert (await store.get("admin:same-key")).count == 1


def test_invalid_config_is_rejected() -> None:
    with pytest.raises(ValueError):
        RateLimiter(RateLimitConfig(window_ms=0, max_requests=5), name="bad")


@pytest.mark.parametrize("limits", [{"window_ms": 0}, {"max_requests": 0}, {"window_ms": -5, "max_requests": 3}])
def test_explicit_non_positive_limits_fail_when_dependency_is_built(limits: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        rate_limit.create_rate_limit(name="general", **limits)


def test_headers_use_iso_reset() -> None:
    decision = rate_limit.RateLimitDecision(
        allowed=True,
        limit=100,
        count=1,
        remaining=99,
        reset_at_ms=1_767_226_500_000,
        now_ms=1_767_225_600_000,
        retry_after_s=0,
    )
    headers = rate_limit.rate_limit_headers(decision)
    assert headers == {
        "X-RateLimit-Limit": "100",
        "X-RateLimit-Remaining": "99",
        "X-RateLimit-Reset": "2026-01-01T00:15:00.000Z",
    }


def test_backend_selection_follows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(rate_limit.get_rate_limit_store(), InMemoryRateLimitStore)

    monkeypatch.setenv("RL_BACKEND", "redis")
    rate_limit.get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    assert isinstance(rate_limit.get_rate_limit_store(), RedisRateLimitStore)


@pytest.mark.asyncio
async def test_sweep_expired_counters_uses_shared_store() -> None:
    store = InMemoryRateLimitStore()
    rate_limit.set_rate_limit_store(store)
    await store.increment("auth:a", window_ms=10, now_ms=0)
    await store.increment("auth:b", window_ms=10_000, now_ms=0)

    assert await rate_limit.sweep_expired_counters(now_ms=100) == 1
    assert len(store) == 1


class _FlakyStore(InMemoryRateLimitStore):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def sweep(self, now_ms: int) -> int:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("sweep failed")
        return 0


@pytest.mark.asyncio
async def test_sweeper_loop_survives_errors(caplog: pytest.LogCaptureFixture) -> None:
    store = _FlakyStore()
    task = asyncio.create_task(rate_limit.run_sweeper_loop(interval_s=0, store=store))
    for _ in range(50):
        if store.calls >= 3:
            break
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.calls >= 3
    assert "rate_limit_sweep_failed" in caplog.text
