from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.apps.api.deps import get_db
from ubos.apps.api.openapi import ADMIN_ERROR_RESPONSES
from ubos.apps.api.permissions import PermissionGrant, check_permission
from ubos.apps.api.rate_limit import admin_rate_limit
from ubos.core.errors import RoleInUseError, RoleNotFoundError, UbosError
from ubos.domain.models import Permission, Role
from ubos.persistence.repos import rbac as rbac_repo
from ubos.services import rbac as rbac_service


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["rbac"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(admin_rate_limit)],
)


class PermissionResponse(BaseModel):
    id: str
    feature_area: str
    permission_type: str
    description: str | None


class RoleResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    description: str | None
    is_default: bool
    created_at: str | None
    updated_at: str | None


class RoleDetailResponse(RoleResponse):
    permissions: list[PermissionResponse]


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    permission_ids: list[str] = Field(default_factory=list)


class RoleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    is_default: bool | None = None
    permission_ids: list[str] | None = None


class UserRoleAssignRequest(BaseModel):
    role_id: str = Field(min_length=1)


class UserRoleAssignResponse(BaseModel):
    user_id: str
    role_id: str
    organization_id: str
    assigned_by_id: str | None


def _permission_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        feature_area=permission.feature_area,
        permission_type=permission.permission_type,
        description=permission.description,
    )


def _role_fields(role: Role) -> dict:
    return {
        "id": role.id,
        "organization_id": role.organization_id,
        "name": role.name,
        "description": role.description,
        "is_default": role.is_default,
        "created_at": role.created_at.isoformat() if role.created_at else None,
        "updated_at": role.updated_at.isoformat() if role.updated_at else None,
    }


async def _role_detail(db: AsyncSession, role: Role) -> RoleDetailResponse:
    permissions = await rbac_repo.list_role_permissions(db, role_id=role.id)
    return RoleDetailResponse(
        **_role_fields(role),
        permissions=[_permission_response(permission) for permission in permissions],
    )


def _domain_error(exc: UbosError) -> HTTPException:
    # Map RBAC service errors onto stable admin error codes.
    if isinstance(exc, RoleNotFoundError):
        return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": str(exc)})
    if isinstance(exc, RoleInUseError):
        return HTTPException(status_code=409, detail={"code": "CONFLICT", "message": str(exc)})
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": str(exc)})


async def _commit(db: AsyncSession, *, action: str) -> None:
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "CONFLICT", "message": f"Conflicting data while trying to {action}"},
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("rbac_commit_failed action=%s", action)
        raise HTTPException(status_code=500, detail=f"Database error while trying to {action}") from exc


@router.get("/permissions")
async def list_permissions(
    grant: PermissionGrant = Depends(check_permission("roles", "view")),
    db: AsyncSession = Depends(get_db),
) -> list[PermissionResponse]:
    # The catalog is global; tenant scoping applies to roles only.
    permissions = await rbac_repo.list_permissions(db)
    return [_permission_response(permission) for permission in permissions]


@router.get("/roles")
async def list_roles(
    grant: PermissionGrant = Depends(check_permission("roles", "view")),
    db: AsyncSession = Depends(get_db),
) -> list[RoleResponse]:
    roles = await rbac_repo.list_roles(db, tenant_id=grant.tenant_id)
    return [RoleResponse(**_role_fields(role)) for role in roles]


@router.get("/roles/{role_id}")
async def get_role(
    role_id: str,
    grant: PermissionGrant = Depends(check_permission("roles", "view")),
    db: AsyncSession = Depends(get_db),
) -> RoleDetailResponse:
    role = await rbac_repo.get_role(db, tenant_id=grant.tenant_id, role_id=role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Role not found"})
    return await _role_detail(db, role)


@router.post("/roles", status_code=status.HTTP_201_CREATED)
async def create_role(
    payload: RoleCreateRequest,
    grant: PermissionGrant = Depends(check_permission("roles", "create")),
    db: AsyncSession = Depends(get_db),
) -> RoleDetailResponse:
    try:
        role = await rbac_service.create_role(
            db,
            tenant_id=grant.tenant_id,
            name=payload.name,
            description=payload.description,
            permission_ids=payload.permission_ids,
        )
    except UbosError as exc:
        await db.rollback()
        raise _domain_error(exc) from exc
    await _commit(db, action="create role")
    await db.refresh(role)
    logger.info("role_created tenant_id=%s role_id=%s actor_id=%s", grant.tenant_id, role.id, grant.user_id)
    return await _role_detail(db, role)


@router.put("/roles/{role_id}")
async def update_role(
    role_id: str,
    payload: RoleUpdateRequest,
    grant: PermissionGrant = Depends(check_permission("roles", "edit")),
    db: AsyncSession = Depends(get_db),
) -> RoleDetailResponse:
    try:
        role = await rbac_service.update_role(
            db,
            tenant_id=grant.tenant_id,
            role_id=role_id,
            name=payload.name,
            description=payload.description,
            is_default=payload.is_default,
            permission_ids=payload.permission_ids,
        )
    except UbosError as exc:
        await db.rollback()
        raise _domain_error(exc) from exc
    await _commit(db, action="update role")
    await db.refresh(role)
    logger.info("role_updated tenant_id=%s role_id=%s actor_id=%s", grant.tenant_id, role.id, grant.user_id)
    return await _role_detail(db, role)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    grant: PermissionGrant = Depends(check_permission("roles", "delete")),
    db: AsyncSession = Depends(get_db),
) -> Response:
    try:
        await rbac_service.delete_role(db, tenant_id=grant.tenant_id, role_id=role_id)
    except UbosError as exc:
        await db.rollback()
        raise _domain_error(exc) from exc
    await _commit(db, action="delete role")
    logger.info("role_deleted tenant_id=%s role_id=%s actor_id=%s", grant.tenant_id, role_id, grant.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/{user_id}/roles")
async def list_user_roles(
    user_id: str,
    grant: PermissionGrant = Depends(check_permission("roles", "view")),
    db: AsyncSession = Depends(get_db),
) -> list[RoleResponse]:
    roles = await rbac_repo.list_user_roles(db, tenant_id=grant.tenant_id, user_id=user_id)
    return [RoleResponse(**_role_fields(role)) for role in roles]


@router.post("/users/{user_id}/roles", status_code=status.HTTP_201_CREATED)
async def assign_user_role(
    user_id: str,
    payload: UserRoleAssignRequest,
    grant: PermissionGrant = Depends(check_permission("roles", "edit")),
    db: AsyncSession = Depends(get_db),
) -> UserRoleAssignResponse:
    try:
        user_role = await rbac_service.assign_role(
            db,
            tenant_id=grant.tenant_id,
            user_id=user_id,
            role_id=payload.role_id,
            assigned_by_id=grant.user_id,
        )
    except UbosError as exc:
        await db.rollback()
        raise _domain_error(exc) from exc
    response = UserRoleAssignResponse(
        user_id=user_role.user_id,
        role_id=user_role.role_id,
        organization_id=user_role.organization_id,
        assigned_by_id=user_role.assigned_by_id,
    )
    await _commit(db, action="assign role")
    logger.info(
        "role_assigned tenant_id=%s user_id=%s role_id=%s actor_id=%s",
        grant.tenant_id,
        user_id,
        payload.role_id,
        grant.user_id,
    )
    return response


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user_role(
    user_id: str,
    role_id: str,
    grant: PermissionGrant = Depends(check_permission("roles", "edit")),
    db: AsyncSession = Depends(get_db),
) -> Response:
    removed = await rbac_service.remove_role(db, tenant_id=grant.tenant_id, user_id=user_id, role_id=role_id)
    if not removed:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Role assignment not found"})
    await _commit(db, action="remove role")
    logger.info(
        "role_removed tenant_id=%s user_id=%s role_id=%s actor_id=%s",
        grant.tenant_id,
        user_id,
        role_id,
        grant.user_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
