from __future__ import annotations

import pytest

from ubos.persistence.guards import TenantPredicateError
from ubos.persistence.repos import audit as audit_repo
from ubos.persistence.repos import rbac as rbac_repo


@pytest.mark.asyncio
async def test_audit_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await audit_repo.list_events(None, tenant_id=None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await audit_repo.get_event_by_id(None, tenant_id="", event_id=1)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_rbac_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await rbac_repo.list_roles(None, tenant_id=None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await rbac_repo.get_role(None, tenant_id="", role_id="r1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await rbac_repo.list_user_roles(None, tenant_id=None, user_id="u1")  # type: ignore[arg-type]
