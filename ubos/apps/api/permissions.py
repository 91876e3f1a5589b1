from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.apps.api.deps import get_db, resolve_identity
from ubos.apps.api.errors import (
    AUTH_REQUIRED,
    INSUFFICIENT_PERMISSIONS,
    INTERNAL_ERROR,
    PERMISSION_DENIED,
)
from ubos.core.config import get_settings
from ubos.persistence.repos import rbac as rbac_repo
from ubos.services.audit import (
    ENTITY_PERMISSION_CHECK,
    OUTCOME_ALLOWED,
    OUTCOME_DENIED,
    OUTCOME_ERROR,
    AuditRecord,
    get_audit_logger,
    get_request_context,
)
from ubos.services.fingerprint import fingerprint_request
from ubos.services.rbac import normalize_permission_type


logger = logging.getLogger(__name__)

REASON_UNAUTHENTICATED = "unauthenticated"
REASON_NO_ROLES = "no_roles_assigned"
REASON_PERMISSION_DENIED = "permission_denied"
REASON_PERMISSION_GRANTED = "permission_granted"
REASON_SYSTEM_ERROR = "system_error"


@dataclass(frozen=True)
class PermissionGrant:
    # Returned to route handlers once access is granted.
    user_id: str
    tenant_id: str
    feature_area: str
    action: str


@dataclass
class _Evaluation:
    outcome: str
    reason: str
    user_id: str | None = None
    tenant_id: str | None = None
    status_code: int | None = None
    code: str | None = None
    message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def granted(self) -> bool:
        return self.outcome == OUTCOME_ALLOWED


async def _evaluate(
    request: Request,
    db: AsyncSession,
    *,
    feature_area: str,
    permission_type: str,
) -> _Evaluation:
    identity = resolve_identity(request)
    if identity is None:
        return _Evaluation(
            outcome=OUTCOME_DENIED,
            reason=REASON_UNAUTHENTICATED,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=AUTH_REQUIRED,
            message="Authentication required",
        )

    memberships = await rbac_repo.list_tenant_memberships(db, user_id=identity.user_id)
    if not memberships:
        return _Evaluation(
            outcome=OUTCOME_DENIED,
            reason=REASON_NO_ROLES,
            user_id=identity.user_id,
            status_code=status.HTTP_403_FORBIDDEN,
            code=INSUFFICIENT_PERMISSIONS,
            message="No roles assigned to user",
        )

    # An explicit organization selector must name one of the caller's memberships.
    requested_tenant = (request.headers.get(get_settings().tenant_header) or "").strip()
    if requested_tenant and requested_tenant not in memberships:
        return _Evaluation(
            outcome=OUTCOME_DENIED,
            reason=REASON_PERMISSION_DENIED,
            user_id=identity.user_id,
            tenant_id=requested_tenant,
            status_code=status.HTTP_403_FORBIDDEN,
            code=PERMISSION_DENIED,
            message=f"Permission denied: {permission_type} access to {feature_area}",
            metadata={"tenant_not_member": True},
        )
    if requested_tenant:
        tenant_id = requested_tenant
        granted = await rbac_repo.has_permission(
            db,
            user_id=identity.user_id,
            tenant_id=tenant_id,
            feature_area=feature_area,
            permission_type=permission_type,
        )
    else:
        # Any held role in any tenant may grant; the grant carries that role's tenant.
        granting_tenant = await rbac_repo.find_granting_tenant(
            db,
            user_id=identity.user_id,
            feature_area=feature_area,
            permission_type=permission_type,
        )
        granted = granting_tenant is not None
        tenant_id = granting_tenant or memberships[0]
    if not granted:
        return _Evaluation(
            outcome=OUTCOME_DENIED,
            reason=REASON_PERMISSION_DENIED,
            user_id=identity.user_id,
            tenant_id=tenant_id,
            status_code=status.HTTP_403_FORBIDDEN,
            code=PERMISSION_DENIED,
            message=f"Permission denied: {permission_type} access to {feature_area}",
        )
    return _Evaluation(
        outcome=OUTCOME_ALLOWED,
        reason=REASON_PERMISSION_GRANTED,
        user_id=identity.user_id,
        tenant_id=tenant_id,
    )


def check_permission(
    feature_area: str,
    action: str,
) -> Callable[[Request, AsyncSession], Awaitable[PermissionGrant]]:
    """Build a dependency that admits the caller only with ``feature_area:action``.

    Every evaluation writes exactly one audit record, awaited before the
    request proceeds or the error is raised. Storage failures answer 500 with
    a generic message; the detail stays in the logs and the audit metadata.
    """
    permission_type = normalize_permission_type(action)
    feature_area = feature_area.strip().lower()

    async def _dependency(request: Request, db: AsyncSession = Depends(get_db)) -> PermissionGrant:
        started = time.monotonic()
        try:
            evaluation = await _evaluate(
                request,
                db,
                feature_area=feature_area,
                permission_type=permission_type,
            )
        except Exception as exc:  # noqa: BLE001 - storage failures become a stable 500
            logger.exception(
                "permission_check_failed feature_area=%s action=%s path=%s",
                feature_area,
                permission_type,
                request.url.path,
            )
            identity = resolve_identity(request)
            evaluation = _Evaluation(
                outcome=OUTCOME_ERROR,
                reason=REASON_SYSTEM_ERROR,
                user_id=identity.user_id if identity is not None else None,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                code=INTERNAL_ERROR,
                message="Internal server error during permission check",
                metadata={"error": str(exc), "error_type": type(exc).__name__},
            )

        request_ctx = get_request_context(request)
        settings = get_settings()
        await get_audit_logger().log_decision(
            AuditRecord(
                entity_type=ENTITY_PERMISSION_CHECK,
                outcome=evaluation.outcome,
                reason=evaluation.reason,
                tenant_id=evaluation.tenant_id,
                actor_id=evaluation.user_id,
                request_path=request.url.path,
                request_method=request.method,
                request_id=request_ctx["request_id"],
                client_fingerprint=fingerprint_request(
                    request, trust_forwarded_for=settings.rl_trust_forwarded_for
                ),
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                duration_ms=(time.monotonic() - started) * 1000.0,
                error_code=evaluation.code,
                metadata={
                    "feature_area": feature_area,
                    "permission_type": permission_type,
                    **evaluation.metadata,
                },
            )
        )

        if not evaluation.granted:
            raise HTTPException(
                status_code=evaluation.status_code or status.HTTP_403_FORBIDDEN,
                detail={"code": evaluation.code, "message": evaluation.message},
            )

        request.state.tenant_id = evaluation.tenant_id
        return PermissionGrant(
            user_id=evaluation.user_id or "",
            tenant_id=evaluation.tenant_id or "",
            feature_area=feature_area,
            action=permission_type,
        )

    return _dependency
