from __future__ import annotations

import argparse
import asyncio
import sys

from ubos.persistence.db import SessionLocal
from ubos.persistence.repos import rbac as rbac_repo
from ubos.services import rbac as rbac_service


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed permissions and default roles for an organization")
    parser.add_argument("--tenant", required=True, help="Organization identifier")
    parser.add_argument("--admin-user", default=None, help="User id to grant the Admin role")
    return parser


async def _provision(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        roles = await rbac_service.provision_default_roles(session, tenant_id=args.tenant)
        admin_role = next(role for role in roles if role.name == rbac_service.ROLE_ADMIN)
        if args.admin_user:
            await rbac_service.assign_role(
                session,
                tenant_id=args.tenant,
                user_id=args.admin_user,
                role_id=admin_role.id,
                assigned_by_id=None,
            )
        await session.commit()
        permissions = await rbac_repo.list_permissions(session)

    print(f"Provisioned organization {args.tenant}:")
    print(f"  permissions: {len(permissions)}")
    for role in roles:
        print(f"  role: {role.name} ({role.id})")
    if args.admin_user:
        print(f"  admin: {args.admin_user}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_provision(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"provision_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
