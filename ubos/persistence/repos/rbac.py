from __future__ import annotations

from sqlalchemy import delete, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.domain.models import Permission, Role, RolePermission, UserRole
from ubos.persistence.guards import require_tenant_id, tenant_predicate


async def list_tenant_memberships(session: AsyncSession, *, user_id: str) -> list[str]:
    # Distinct tenants where the user holds any role, oldest grant first.
    first_assigned = func.min(UserRole.assigned_at).label("first_assigned_at")
    result = await session.execute(
        select(UserRole.organization_id, first_assigned)
        .where(UserRole.user_id == user_id)
        .group_by(UserRole.organization_id)
        .order_by(first_assigned.asc(), UserRole.organization_id.asc())
    )
    return [row[0] for row in result.all()]


async def has_permission(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    feature_area: str,
    permission_type: str,
) -> bool:
    # One EXISTS round trip across UserRole -> Role -> RolePermission -> Permission.
    # Joining Role on the grant's tenant ignores any cross-tenant assignment row.
    require_tenant_id(tenant_id)
    stmt = select(
        exists().where(
            UserRole.user_id == user_id,
            tenant_predicate(UserRole.organization_id, tenant_id),
            Role.id == UserRole.role_id,
            Role.organization_id == UserRole.organization_id,
            RolePermission.role_id == Role.id,
            Permission.id == RolePermission.permission_id,
            Permission.feature_area == feature_area,
            Permission.permission_type == permission_type,
        )
    )
    result = await session.execute(stmt)
    return bool(result.scalar())


async def find_granting_tenant(
    session: AsyncSession,
    *,
    user_id: str,
    feature_area: str,
    permission_type: str,
) -> str | None:
    # Tenant of the oldest assignment whose role grants the pair, across every membership.
    stmt = (
        select(UserRole.organization_id)
        .join(Role, (Role.id == UserRole.role_id) & (Role.organization_id == UserRole.organization_id))
        .join(RolePermission, RolePermission.role_id == Role.id)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(
            UserRole.user_id == user_id,
            Permission.feature_area == feature_area,
            Permission.permission_type == permission_type,
        )
        .order_by(UserRole.assigned_at.asc(), UserRole.organization_id.asc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_permissions(session: AsyncSession) -> list[Permission]:
    result = await session.execute(
        select(Permission).order_by(Permission.feature_area.asc(), Permission.permission_type.asc())
    )
    return list(result.scalars().all())


async def get_permission_by_pair(
    session: AsyncSession,
    *,
    feature_area: str,
    permission_type: str,
) -> Permission | None:
    result = await session.execute(
        select(Permission).where(
            Permission.feature_area == feature_area,
            Permission.permission_type == permission_type,
        )
    )
    return result.scalar_one_or_none()


async def get_permissions_by_ids(session: AsyncSession, *, permission_ids: list[str]) -> list[Permission]:
    if not permission_ids:
        return []
    result = await session.execute(select(Permission).where(Permission.id.in_(permission_ids)))
    return list(result.scalars().all())


async def list_roles(session: AsyncSession, *, tenant_id: str) -> list[Role]:
    result = await session.execute(
        select(Role)
        .where(tenant_predicate(Role.organization_id, tenant_id))
        .order_by(Role.is_default.desc(), Role.name.asc())
    )
    return list(result.scalars().all())


async def get_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> Role | None:
    result = await session.execute(
        select(Role).where(Role.id == role_id, tenant_predicate(Role.organization_id, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_role_by_name(session: AsyncSession, *, tenant_id: str, name: str) -> Role | None:
    result = await session.execute(
        select(Role).where(Role.name == name, tenant_predicate(Role.organization_id, tenant_id))
    )
    return result.scalars().first()


async def list_role_permissions(session: AsyncSession, *, role_id: str) -> list[Permission]:
    result = await session.execute(
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.feature_area.asc(), Permission.permission_type.asc())
    )
    return list(result.scalars().all())


async def replace_role_permissions(session: AsyncSession, *, role_id: str, permission_ids: list[str]) -> None:
    # Replace the full permission set in one unit of work.
    await session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
    for permission_id in dict.fromkeys(permission_ids):
        session.add(RolePermission(role_id=role_id, permission_id=permission_id))


async def count_role_assignments(session: AsyncSession, *, role_id: str) -> int:
    result = await session.execute(select(func.count()).select_from(UserRole).where(UserRole.role_id == role_id))
    return int(result.scalar() or 0)


async def list_user_roles(session: AsyncSession, *, tenant_id: str, user_id: str) -> list[Role]:
    result = await session.execute(
        select(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(
            UserRole.user_id == user_id,
            tenant_predicate(UserRole.organization_id, tenant_id),
            Role.organization_id == UserRole.organization_id,
        )
        .order_by(Role.name.asc())
    )
    return list(result.scalars().all())


async def get_user_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role_id: str,
) -> UserRole | None:
    result = await session.execute(
        select(UserRole).where(
            UserRole.user_id == user_id,
            UserRole.role_id == role_id,
            tenant_predicate(UserRole.organization_id, tenant_id),
        )
    )
    return result.scalar_one_or_none()
