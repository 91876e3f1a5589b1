from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Awaitable, Callable

from fastapi import HTTPException, Request, Response, status

from ubos.apps.api.deps import resolve_identity
from ubos.apps.api.errors import RATE_LIMIT_EXCEEDED
from ubos.core.config import get_settings
from ubos.services.audit import (
    ENTITY_RATE_LIMIT_CHECK,
    ENTITY_RATE_LIMIT_VIOLATION,
    OUTCOME_ALLOWED,
    OUTCOME_DENIED,
    OUTCOME_ERROR,
    AuditRecord,
    get_audit_logger,
    get_request_context,
)
from ubos.services.fingerprint import client_address, fingerprint_request
from ubos.services.rate_limit_store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)
from ubos.services.risk import RiskSignals, anomaly_indicators, calculate_risk_score, score_breakdown


logger = logging.getLogger(__name__)

REASON_WITHIN_LIMIT = "within_limit"
REASON_LIMIT_EXCEEDED = "rate_limit_exceeded"
REASON_STORE_UNAVAILABLE = "store_unavailable"

_UNKNOWN_USER_AGENT = "unknown"

KeyGenerator = Callable[[Request], str]
RateLimitDependency = Callable[[Request, Response], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitConfig:
    # Fixed window: at most max_requests per key within window_ms.
    window_ms: int
    max_requests: int
    key_generator: KeyGenerator | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome of one counter increment plus the hints needed for headers and audit.
    allowed: bool
    limit: int
    count: int
    remaining: int
    reset_at_ms: int
    now_ms: int
    retry_after_s: int
    previous_access_ms: int | None = None


_store: RateLimitStore | None = None
# Bumped on reset so factory-built limiters re-read their settings.
_config_generation = 0


def get_rate_limit_store() -> RateLimitStore:
    # Share one counter store per process so every limiter sees the same backend.
    global _store
    if _store is None:
        settings = get_settings()
        if settings.rl_backend.lower() == "redis":
            _store = RedisRateLimitStore(redis_url=settings.redis_url, prefix=settings.rl_redis_prefix)
        else:
            _store = InMemoryRateLimitStore()
    return _store


def set_rate_limit_store(store: RateLimitStore | None) -> None:
    global _store
    _store = store


def reset_rate_limiter_state() -> None:
    # Drop cached stores and resolved limiter configs for deterministic test setup.
    global _config_generation
    set_rate_limit_store(None)
    _config_generation += 1


def format_reset(reset_at_ms: int) -> str:
    # ISO-8601 UTC with millisecond precision, e.g. 2026-01-01T00:15:00.000Z.
    moment = datetime.fromtimestamp(reset_at_ms / 1000.0, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": format_reset(decision.reset_at_ms),
    }


def remember_rate_limit_headers(request: Request, headers: dict[str, str]) -> None:
    # Error handlers merge these so later rejections keep the limit headers.
    recorded = getattr(request.state, "rate_limit_headers", None) or {}
    request.state.rate_limit_headers = {**recorded, **headers}


class RateLimiter:
    """Fixed-window limiter bound to one name and config.

    The store key is ``"{name}:{key}"`` so limiters stacked on the same path
    keep independent counters. Requests that straddle a window boundary can
    see up to twice ``max_requests`` in a short span; that is inherent to
    fixed windows.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        name: str,
        store: RateLimitStore | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        if config.window_ms <= 0 or config.max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.config = config
        self.name = name
        self._store = store
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    @property
    def store(self) -> RateLimitStore:
        return self._store if self._store is not None else get_rate_limit_store()

    def now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    def key_for(self, request: Request, *, fingerprint: str) -> str:
        if self.config.key_generator is not None:
            return self.config.key_generator(request)
        return f"{fingerprint}:{request.url.path}"

    async def check(self, key: str) -> RateLimitDecision:
        now_ms = self.now_ms()
        snapshot = await self.store.increment(
            f"{self.name}:{key}",
            window_ms=self.config.window_ms,
            now_ms=now_ms,
        )
        allowed = snapshot.count <= self.config.max_requests
        retry_after_s = 0 if allowed else max(0, math.ceil((snapshot.reset_at_ms - now_ms) / 1000))
        return RateLimitDecision(
            allowed=allowed,
            limit=self.config.max_requests,
            count=snapshot.count,
            remaining=max(0, self.config.max_requests - snapshot.count),
            reset_at_ms=snapshot.reset_at_ms,
            now_ms=now_ms,
            retry_after_s=retry_after_s,
            previous_access_ms=snapshot.previous_access_ms,
        )


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints.
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(decision.retry_after_s)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": RATE_LIMIT_EXCEEDED,
            "message": "Too many requests, please try again later.",
            "retryAfter": decision.retry_after_s,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


def _build_record(
    *,
    request: Request,
    limiter: RateLimiter,
    entity_type: str,
    outcome: str,
    reason: str,
    fingerprint: str,
    actor_id: str | None,
    started: float,
    decision: RateLimitDecision | None = None,
    risk_score: int | None = None,
    indicators: list[str] | None = None,
    error_code: str | None = None,
    metadata: dict | None = None,
) -> AuditRecord:
    request_ctx = get_request_context(request)
    settings = get_settings()
    base_metadata = {
        "limiter": limiter.name,
        "window_ms": limiter.config.window_ms,
        "max_requests": limiter.config.max_requests,
    }
    if decision is not None:
        base_metadata.update(
            {
                "count": decision.count,
                "remaining": decision.remaining,
                "reset_at": format_reset(decision.reset_at_ms),
            }
        )
    base_metadata.update(metadata or {})
    return AuditRecord(
        entity_type=entity_type,
        outcome=outcome,
        reason=reason,
        tenant_id=getattr(request.state, "tenant_id", None),
        actor_id=actor_id,
        request_path=request.url.path,
        request_method=request.method,
        request_id=request_ctx["request_id"],
        client_fingerprint=fingerprint,
        ip_address=client_address(request, trust_forwarded_for=settings.rl_trust_forwarded_for),
        user_agent=request_ctx["user_agent"],
        duration_ms=(time.monotonic() - started) * 1000.0,
        risk_score=risk_score,
        anomaly_indicators=tuple(indicators) if indicators is not None else None,
        error_code=error_code,
        metadata=base_metadata,
    )


async def enforce_rate_limit(*, request: Request, response: Response, limiter: RateLimiter) -> None:
    # Count the request, expose limit headers, and reject once the window is exhausted.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    started = time.monotonic()
    audit_logger = get_audit_logger()
    fingerprint = fingerprint_request(request, trust_forwarded_for=settings.rl_trust_forwarded_for)
    identity = resolve_identity(request)
    actor_id = identity.user_id if identity is not None else None

    try:
        key = limiter.key_for(request, fingerprint=fingerprint)
        decision = await limiter.check(key)
    except Exception as exc:  # noqa: BLE001 - guard against counter store failures
        logger.warning(
            "rate_limit_degraded limiter=%s path=%s fail_mode=%s",
            limiter.name,
            request.url.path,
            settings.rl_fail_mode,
            exc_info=exc,
        )
        await audit_logger.log_decision(
            _build_record(
                request=request,
                limiter=limiter,
                entity_type=ENTITY_RATE_LIMIT_CHECK,
                outcome=OUTCOME_ERROR,
                reason=REASON_STORE_UNAVAILABLE,
                fingerprint=fingerprint,
                actor_id=actor_id,
                started=started,
                error_code=type(exc).__name__,
                metadata={"error": str(exc), "fail_mode": settings.rl_fail_mode},
            )
        )
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        remember_rate_limit_headers(request, {"X-RateLimit-Status": "degraded"})
        return

    if decision.allowed:
        headers = rate_limit_headers(decision)
        response.headers.update(headers)
        remember_rate_limit_headers(request, headers)
        if settings.rl_audit_allowed:
            # Background write keeps allowed requests off the audit latency path.
            audit_logger.schedule(
                _build_record(
                    request=request,
                    limiter=limiter,
                    entity_type=ENTITY_RATE_LIMIT_CHECK,
                    outcome=OUTCOME_ALLOWED,
                    reason=REASON_WITHIN_LIMIT,
                    fingerprint=fingerprint,
                    actor_id=actor_id,
                    started=started,
                    decision=decision,
                )
            )
        return

    signals = RiskSignals(
        user_agent=request.headers.get("user-agent") or _UNKNOWN_USER_AGENT,
        path=request.url.path,
        request_count=decision.count,
        authenticated=identity is not None,
        now_ms=decision.now_ms,
        previous_access_ms=decision.previous_access_ms,
    )
    risk_score = calculate_risk_score(signals)
    indicators = anomaly_indicators(signals)
    logger.warning(
        "rate_limit_exceeded limiter=%s path=%s count=%s limit=%s risk_score=%s",
        limiter.name,
        request.url.path,
        decision.count,
        decision.limit,
        risk_score,
    )
    await audit_logger.log_decision(
        _build_record(
            request=request,
            limiter=limiter,
            entity_type=ENTITY_RATE_LIMIT_VIOLATION,
            outcome=OUTCOME_DENIED,
            reason=REASON_LIMIT_EXCEEDED,
            fingerprint=fingerprint,
            actor_id=actor_id,
            started=started,
            decision=decision,
            risk_score=risk_score,
            indicators=indicators,
            error_code=RATE_LIMIT_EXCEEDED,
            metadata={"retry_after": decision.retry_after_s, "risk_breakdown": score_breakdown(signals)},
        )
    )
    raise _throttle_exception(decision=decision)


def create_rate_limit(
    window_ms: int | None = None,
    max_requests: int | None = None,
    key_generator: KeyGenerator | None = None,
    *,
    name: str = "default",
    store: RateLimitStore | None = None,
    time_provider: Callable[[], float] | None = None,
) -> RateLimitDependency:
    """Build a FastAPI dependency enforcing a fixed-window limit.

    Unset limits fall back to ``rl_{name}_window_ms``/``rl_{name}_max_requests``
    when those settings exist, otherwise to the default window. Settings are
    read on the first request and cached until ``reset_rate_limiter_state``
    runs, so module-level presets pick up env overrides made before a reset.
    An explicit non-positive limit raises ``ValueError`` here, when the
    dependency is built.
    """
    if (window_ms is not None and window_ms <= 0) or (max_requests is not None and max_requests <= 0):
        raise ValueError("window_ms and max_requests must be positive")

    limiter: RateLimiter | None = None
    generation = -1

    def _resolve() -> RateLimiter:
        nonlocal limiter, generation
        if limiter is None or generation != _config_generation:
            settings = get_settings()
            resolved_window = window_ms
            if resolved_window is None:
                resolved_window = getattr(settings, f"rl_{name}_window_ms", settings.rl_default_window_ms)
            resolved_max = max_requests
            if resolved_max is None:
                resolved_max = getattr(settings, f"rl_{name}_max_requests", settings.rl_default_max_requests)
            generation = _config_generation
            limiter = RateLimiter(
                RateLimitConfig(
                    window_ms=resolved_window,
                    max_requests=resolved_max,
                    key_generator=key_generator,
                ),
                name=name,
                store=store,
                time_provider=time_provider,
            )
        return limiter

    async def _dependency(request: Request, response: Response) -> None:
        await enforce_rate_limit(request=request, response=response, limiter=_resolve())

    return _dependency


auth_rate_limit = create_rate_limit(name="auth")
general_rate_limit = create_rate_limit(name="general")
admin_rate_limit = create_rate_limit(name="admin")
upload_rate_limit = create_rate_limit(name="upload")


async def sweep_expired_counters(store: RateLimitStore | None = None, *, now_ms: int | None = None) -> int:
    target = store if store is not None else get_rate_limit_store()
    current_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    evicted = await target.sweep(current_ms)
    if evicted:
        logger.info("rate_limit_sweep_completed evicted=%s", evicted)
    return evicted


async def run_sweeper_loop(*, interval_s: float | None = None, store: RateLimitStore | None = None) -> None:
    # Periodically drop expired counters; errors are logged and the loop keeps running.
    interval = interval_s if interval_s is not None else get_settings().rl_sweep_interval_s
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_expired_counters(store)
        except Exception:  # noqa: BLE001 - keep the sweeper alive across store errors
            logger.exception("rate_limit_sweep_failed")
