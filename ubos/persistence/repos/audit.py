from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.domain.models import AuditEvent
from ubos.persistence.guards import tenant_predicate


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str | None = None,
    outcome: str | None = None,
    reason: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent.tenant_id, tenant_id))
    if entity_type:
        stmt = stmt.where(AuditEvent.entity_type == entity_type)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if reason:
        stmt = stmt.where(AuditEvent.reason == reason)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_id: int,
) -> AuditEvent | None:
    result = await session.execute(
        select(AuditEvent).where(AuditEvent.id == event_id, tenant_predicate(AuditEvent.tenant_id, tenant_id))
    )
    return result.scalar_one_or_none()
