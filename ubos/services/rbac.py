from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.core.errors import (
    DefaultRoleProtectedError,
    RoleInUseError,
    RoleNotFoundError,
    TenantMismatchError,
    UnknownPermissionError,
)
from ubos.domain.models import PERMISSION_TYPES, Permission, Role, UserRole
from ubos.persistence.repos import rbac as rbac_repo


logger = logging.getLogger(__name__)

_ALL_TYPES = PERMISSION_TYPES
_ENTITY_AREAS = (
    "clients",
    "contacts",
    "deals",
    "proposals",
    "contracts",
    "projects",
    "tasks",
    "invoices",
    "bills",
    "files",
    "messages",
    "threads",
    "engagements",
    "vendors",
)
_ADMIN_AREAS = ("users", "roles")

# Global permission catalog; seeding is idempotent on (feature_area, permission_type).
PERMISSION_CATALOG: tuple[tuple[str, str], ...] = (
    *((area, kind) for area in _ENTITY_AREAS for kind in _ALL_TYPES),
    *(("organizations", kind) for kind in _ALL_TYPES),
    ("dashboard", "view"),
    ("settings", "view"),
    ("settings", "edit"),
    *((area, kind) for area in _ADMIN_AREAS for kind in ("view", "create", "edit", "delete")),
)

ROLE_ADMIN = "Admin"
ROLE_MANAGER = "Manager"
ROLE_TEAM_MEMBER = "Team Member"
ROLE_CLIENT = "Client"


@dataclass(frozen=True)
class DefaultRoleTemplate:
    name: str
    description: str
    permissions: frozenset[tuple[str, str]]


def _default_role_templates() -> tuple[DefaultRoleTemplate, ...]:
    catalog = frozenset(PERMISSION_CATALOG)
    return (
        DefaultRoleTemplate(ROLE_ADMIN, "Full access to the organization", catalog),
        DefaultRoleTemplate(
            ROLE_MANAGER,
            "Everything except user and role management",
            frozenset(pair for pair in catalog if pair[0] not in _ADMIN_AREAS),
        ),
        DefaultRoleTemplate(
            ROLE_TEAM_MEMBER,
            "Day-to-day work on client entities without delete or export",
            frozenset(
                pair
                for pair in catalog
                if (pair[0] in _ENTITY_AREAS or pair[0] == "dashboard") and pair[1] in {"view", "create", "edit"}
            ),
        ),
        DefaultRoleTemplate(
            ROLE_CLIENT,
            "Client portal access",
            frozenset({("files", "view"), ("invoices", "view"), ("messages", "view")}),
        ),
    )


DEFAULT_ROLE_TEMPLATES = _default_role_templates()


def normalize_permission_type(action: str) -> str:
    # Enforce the stable verb vocabulary used by the permission catalog.
    normalized = action.strip().lower()
    if normalized not in PERMISSION_TYPES:
        raise ValueError(f"Unsupported permission type: {action}")
    return normalized


async def seed_permissions(session: AsyncSession) -> int:
    # Insert catalog entries that are missing; existing rows are left untouched.
    existing = {(perm.feature_area, perm.permission_type) for perm in await rbac_repo.list_permissions(session)}
    seeded = 0
    for feature_area, permission_type in PERMISSION_CATALOG:
        if (feature_area, permission_type) in existing:
            continue
        session.add(
            Permission(
                feature_area=feature_area,
                permission_type=permission_type,
                description=f"{permission_type.capitalize()} {feature_area}",
            )
        )
        seeded += 1
    await session.flush()
    logger.info("permission_seed_completed seeded=%s total=%s", seeded, len(PERMISSION_CATALOG))
    return seeded


async def provision_default_roles(session: AsyncSession, *, tenant_id: str) -> list[Role]:
    # Create the system roles for a new organization; reruns reuse existing ones.
    await seed_permissions(session)
    permissions = {
        (perm.feature_area, perm.permission_type): perm.id for perm in await rbac_repo.list_permissions(session)
    }
    roles: list[Role] = []
    for template in DEFAULT_ROLE_TEMPLATES:
        role = await rbac_repo.get_role_by_name(session, tenant_id=tenant_id, name=template.name)
        if role is None:
            role = Role(
                organization_id=tenant_id,
                name=template.name,
                description=template.description,
                is_default=True,
            )
            session.add(role)
            await session.flush()
            await rbac_repo.replace_role_permissions(
                session,
                role_id=role.id,
                permission_ids=[permissions[pair] for pair in sorted(template.permissions)],
            )
        roles.append(role)
    await session.flush()
    return roles


async def _require_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> Role:
    role = await rbac_repo.get_role(session, tenant_id=tenant_id, role_id=role_id)
    if role is None:
        raise RoleNotFoundError(f"Role {role_id} not found")
    return role


async def _resolve_permission_ids(session: AsyncSession, *, permission_ids: list[str]) -> list[str]:
    requested = list(dict.fromkeys(permission_ids))
    found = {perm.id for perm in await rbac_repo.get_permissions_by_ids(session, permission_ids=requested)}
    missing = [permission_id for permission_id in requested if permission_id not in found]
    if missing:
        raise UnknownPermissionError(f"Unknown permission ids: {', '.join(missing)}")
    return requested


async def create_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    description: str | None = None,
    permission_ids: list[str] | None = None,
) -> Role:
    resolved = await _resolve_permission_ids(session, permission_ids=permission_ids or [])
    # Custom roles are never default.
    role = Role(organization_id=tenant_id, name=name, description=description, is_default=False)
    session.add(role)
    await session.flush()
    if resolved:
        await rbac_repo.replace_role_permissions(session, role_id=role.id, permission_ids=resolved)
        await session.flush()
    return role


async def update_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_id: str,
    name: str | None = None,
    description: str | None = None,
    is_default: bool | None = None,
    permission_ids: list[str] | None = None,
) -> Role:
    role = await _require_role(session, tenant_id=tenant_id, role_id=role_id)
    if role.is_default and (name is not None or is_default is not None):
        raise DefaultRoleProtectedError("Cannot modify name or default status of system roles")
    if is_default:
        raise DefaultRoleProtectedError("Custom roles cannot be promoted to system roles")
    if name is not None:
        role.name = name
    if description is not None:
        role.description = description
    if permission_ids is not None:
        resolved = await _resolve_permission_ids(session, permission_ids=permission_ids)
        await rbac_repo.replace_role_permissions(session, role_id=role.id, permission_ids=resolved)
    await session.flush()
    return role


async def delete_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> None:
    role = await _require_role(session, tenant_id=tenant_id, role_id=role_id)
    if role.is_default:
        raise DefaultRoleProtectedError("Cannot delete system default roles")
    if await rbac_repo.count_role_assignments(session, role_id=role.id) > 0:
        raise RoleInUseError("Cannot delete role that is assigned to users")
    await rbac_repo.replace_role_permissions(session, role_id=role.id, permission_ids=[])
    await session.delete(role)
    await session.flush()


async def assign_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role_id: str,
    assigned_by_id: str | None,
) -> UserRole:
    # A grant always lives in the role's own organization.
    role = await rbac_repo.get_role(session, tenant_id=tenant_id, role_id=role_id)
    if role is None:
        raise RoleNotFoundError(f"Role {role_id} not found")
    if role.organization_id != tenant_id:
        raise TenantMismatchError("Role belongs to a different organization")
    existing = await rbac_repo.get_user_role(session, tenant_id=tenant_id, user_id=user_id, role_id=role_id)
    if existing is not None:
        return existing
    user_role = UserRole(
        user_id=user_id,
        role_id=role.id,
        organization_id=role.organization_id,
        assigned_by_id=assigned_by_id,
    )
    session.add(user_role)
    await session.flush()
    return user_role


async def remove_role(session: AsyncSession, *, tenant_id: str, user_id: str, role_id: str) -> bool:
    user_role = await rbac_repo.get_user_role(session, tenant_id=tenant_id, user_id=user_id, role_id=role_id)
    if user_role is None:
        return False
    await session.delete(user_role)
    await session.flush()
    return True


async def user_has_permission(
    session: AsyncSession,
    *,
    user_id: str,
    feature_area: str,
    action: str,
    tenant_id: str | None = None,
) -> bool:
    """Programmatic permission check for code running outside the request pipeline.

    Without ``tenant_id`` any role the user holds in any organization may
    grant, matching the request-time resolver. Storage failures are logged and
    fail closed.
    """
    try:
        permission_type = normalize_permission_type(action)
        if tenant_id is None:
            granting_tenant = await rbac_repo.find_granting_tenant(
                session,
                user_id=user_id,
                feature_area=feature_area,
                permission_type=permission_type,
            )
            return granting_tenant is not None
        return await rbac_repo.has_permission(
            session,
            user_id=user_id,
            tenant_id=tenant_id,
            feature_area=feature_area,
            permission_type=permission_type,
        )
    except (SQLAlchemyError, ValueError) as exc:
        logger.error(
            "permission_lookup_failed user_id=%s feature_area=%s action=%s",
            user_id,
            feature_area,
            action,
            exc_info=exc,
        )
        return False
