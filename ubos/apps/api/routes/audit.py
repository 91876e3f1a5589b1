from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.apps.api.deps import get_db
from ubos.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ubos.apps.api.permissions import PermissionGrant, check_permission
from ubos.apps.api.rate_limit import admin_rate_limit
from ubos.persistence.repos import audit as audit_repo


router = APIRouter(
    prefix="/api/audit",
    tags=["audit"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(admin_rate_limit)],
)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    tenant_id: str
    actor_id: str
    entity_type: str
    outcome: str
    reason: str
    request_path: str | None
    request_method: str | None
    request_id: str | None
    client_fingerprint: str | None
    ip_address: str | None
    user_agent: str | None
    duration_ms: float | None
    risk_score: int | None
    anomaly_indicators: list[str] | None
    metadata_json: dict[str, Any] | None
    error_code: str | None
    created_at: str


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event) -> AuditEventResponse:
    # Serialize audit event datetimes to ISO 8601 for API clients.
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        tenant_id=event.tenant_id,
        actor_id=event.actor_id,
        entity_type=event.entity_type,
        outcome=event.outcome,
        reason=event.reason,
        request_path=event.request_path,
        request_method=event.request_method,
        request_id=event.request_id,
        client_fingerprint=event.client_fingerprint,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        duration_ms=event.duration_ms,
        risk_score=event.risk_score,
        anomaly_indicators=event.anomaly_indicators,
        metadata_json=event.metadata_json,
        error_code=event.error_code,
        created_at=event.created_at.isoformat(),
    )


@router.get("/events")
async def list_audit_events(
    entity_type: str | None = None,
    outcome: str | None = None,
    reason: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    grant: PermissionGrant = Depends(check_permission("settings", "view")),
    db: AsyncSession = Depends(get_db),
) -> AuditEventsPage:
    # Always scoped to the tenant the permission check resolved.
    try:
        events = await audit_repo.list_events(
            db,
            tenant_id=grant.tenant_id,
            entity_type=entity_type,
            outcome=outcome,
            reason=reason,
            actor_id=actor_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit

    return AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)


@router.get("/events/{event_id}")
async def get_audit_event(
    event_id: int,
    grant: PermissionGrant = Depends(check_permission("settings", "view")),
    db: AsyncSession = Depends(get_db),
) -> AuditEventResponse:
    try:
        event = await audit_repo.get_event_by_id(db, tenant_id=grant.tenant_id, event_id=event_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit event") from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return _to_response(event)
