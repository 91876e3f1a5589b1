from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from starlette.requests import Request

from ubos.core.config import get_settings
from ubos.domain.models import AuditEvent
from ubos.persistence import db


logger = logging.getLogger(__name__)

ENTITY_PERMISSION_CHECK = "permission_check"
ENTITY_RATE_LIMIT_CHECK = "rate_limit_check"
ENTITY_RATE_LIMIT_VIOLATION = "rate_limit_violation"

OUTCOME_ALLOWED = "allowed"
OUTCOME_DENIED = "denied"
OUTCOME_ERROR = "error"

SYSTEM_TENANT = "system"
ANONYMOUS_ACTOR = "anonymous"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "cookie", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


@dataclass(frozen=True)
class AuditRecord:
    # One governance decision; immutable once built.
    entity_type: str
    outcome: str
    reason: str
    tenant_id: str | None = None
    actor_id: str | None = None
    request_path: str | None = None
    request_method: str | None = None
    request_id: str | None = None
    client_fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    duration_ms: float | None = None
    risk_score: int | None = None
    anomaly_indicators: tuple[str, ...] | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AuditWriteResult:
    ok: bool
    error: str | None = None


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None:
        ...


def to_audit_event(record: AuditRecord) -> AuditEvent:
    # Map the decision onto the append-only row, filling tenant/actor placeholders.
    return AuditEvent(
        occurred_at=record.occurred_at,
        tenant_id=record.tenant_id or SYSTEM_TENANT,
        actor_id=record.actor_id or ANONYMOUS_ACTOR,
        entity_type=record.entity_type,
        outcome=record.outcome,
        reason=record.reason,
        request_path=record.request_path,
        request_method=record.request_method,
        request_id=record.request_id,
        client_fingerprint=record.client_fingerprint,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        duration_ms=record.duration_ms,
        risk_score=record.risk_score,
        anomaly_indicators=list(record.anomaly_indicators) if record.anomaly_indicators is not None else None,
        metadata_json=sanitize_metadata(record.metadata),
        error_code=record.error_code,
    )


class SqlAuditSink:
    """Insert audit rows through a dedicated session.

    The request's own session is never used so a rollback in a route handler
    cannot discard the governance decision that admitted it.
    """

    async def append(self, record: AuditRecord) -> None:
        async with db.SessionLocal() as session:
            try:
                session.add(to_audit_event(record))
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class AuditLogger:
    """Append governance decisions to the audit sink without ever failing the caller.

    ``log_decision`` awaits the write and reports the result; ``schedule`` runs
    the same write in the background for decisions that must not add latency.
    Sink failures are logged and returned, never raised.
    """

    def __init__(self, sink: AuditSink | None = None) -> None:
        self._sink: AuditSink = sink or SqlAuditSink()
        self._pending: set[asyncio.Task[AuditWriteResult]] = set()

    @property
    def sink(self) -> AuditSink:
        return self._sink

    async def log_decision(self, record: AuditRecord) -> AuditWriteResult:
        if not get_settings().audit_enabled:
            return AuditWriteResult(ok=True)
        try:
            await self._sink.append(record)
        except Exception as exc:  # noqa: BLE001 - a broken sink degrades observability, not availability.
            logger.warning(
                "audit_event_write_failed entity_type=%s reason=%s request_id=%s",
                record.entity_type,
                record.reason,
                record.request_id,
                exc_info=exc,
            )
            return AuditWriteResult(ok=False, error=f"{type(exc).__name__}: {exc}")
        return AuditWriteResult(ok=True)

    def schedule(self, record: AuditRecord) -> asyncio.Task[AuditWriteResult]:
        # Keep a strong reference until completion so the task is not collected mid-write.
        task = asyncio.create_task(self.log_decision(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        # Await outstanding background writes (shutdown and deterministic tests).
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit_logger: AuditLogger | None) -> None:
    # Swap the process-wide logger (alternative sinks, test isolation).
    global _audit_logger
    _audit_logger = audit_logger
