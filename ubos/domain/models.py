from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in local and test runs).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AuditIdType = BigInteger().with_variant(Integer(), "sqlite")

PERMISSION_TYPES: tuple[str, ...] = ("view", "create", "edit", "delete", "export")


def _new_id() -> str:
    return uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("feature_area", "permission_type", name="uq_permissions_feature_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Permissions are global; tenants differ only in which roles hold them.
    feature_area: Mapped[str] = mapped_column(String(100), index=True)
    permission_type: Mapped[str] = mapped_column(String(20))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (
        Index("ix_roles_org_name", "organization_id", "name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # System-seeded roles keep their name and default flag for the tenant's lifetime.
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permissions_pair"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), index=True)
    permission_id: Mapped[str] = mapped_column(
        String, ForeignKey("permissions.id", ondelete="CASCADE"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "organization_id", name="uq_user_roles_assignment"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Users live in the external identity system; only the stable id is stored.
    user_id: Mapped[str] = mapped_column(String, index=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), index=True)
    # Must match roles.organization_id of the referenced role.
    organization_id: Mapped[str] = mapped_column(String, index=True)
    assigned_by_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Client-side timestamp keeps sub-second ordering of grants on every backend.
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred_at", "tenant_id", "occurred_at"),
    )

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(AuditIdType, primary_key=True, autoincrement=True)
    # Decision time as seen by the middleware, independent of insert time.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # "system" when the decision happened before a tenant was resolved.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # "anonymous" when no identity reached the middleware.
    actor_id: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String, index=True)
    request_path: Mapped[str | None] = mapped_column(String, nullable=True)
    request_method: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    client_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(nullable=True)
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    anomaly_indicators: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    # Keep metadata sanitized for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
