from __future__ import annotations

from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient
import pytest
from sqlalchemy.exc import OperationalError

from ubos.apps.api.errors import http_exception_handler
from ubos.apps.api.permissions import PermissionGrant, check_permission
from ubos.persistence.repos import rbac as rbac_repo
from ubos.tests.utils.rbac import (
    create_custom_role,
    dev_headers,
    fetch_audit_events,
    grant_default_role,
    provision_tenant,
)


pytestmark = pytest.mark.usefixtures("governance_db")


def _guarded_app() -> FastAPI:
    # Minimal app wiring only the permission dependency in front of handlers.
    app = FastAPI()
    app.add_exception_handler(HTTPException, http_exception_handler)

    @app.get("/api/clients")
    async def list_clients(grant: PermissionGrant = Depends(check_permission("clients", "view"))) -> dict:
        return {"tenant_id": grant.tenant_id, "user_id": grant.user_id}

    @app.delete("/api/clients/{client_id}")
    async def delete_client(
        client_id: str, grant: PermissionGrant = Depends(check_permission("clients", "delete"))
    ) -> dict:
        return {"deleted": client_id}

    return app


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_missing_identity_is_401_with_one_audit_record() -> None:
    async with _client(_guarded_app()) as client:
        response = await client.get("/api/clients", headers=dev_headers())

    assert response.status_code == 401
    assert response.json() == {"message": "Authentication required", "code": "AUTH_REQUIRED"}
    events = await fetch_audit_events(entity_type="permission_check")
    assert len(events) == 1
    assert events[0].outcome == "denied"
    assert events[0].reason == "unauthenticated"
    assert events[0].actor_id == "anonymous"
    assert events[0].tenant_id == "system"


@pytest.mark.asyncio
async def test_user_without_roles_is_403_insufficient_permissions() -> None:
    async with _client(_guarded_app()) as client:
        response = await client.get("/api/clients", headers=dev_headers("nobody"))

    assert response.status_code == 403
    assert response.json()["code"] == "INSUFFICIENT_PERMISSIONS"
    events = await fetch_audit_events(actor_id="nobody")
    assert [event.reason for event in events] == ["no_roles_assigned"]


@pytest.mark.asyncio
async def test_grant_and_deny_follow_role_permissions() -> None:
    tenant_id = await provision_tenant()
    user_id = f"user-{uuid4().hex[:6]}"
    await create_custom_role(tenant_id=tenant_id, name="Viewer", permissions=[("clients", "view")], user_id=user_id)

    async with _client(_guarded_app()) as client:
        allowed = await client.get("/api/clients", headers=dev_headers(user_id))
        denied = await client.delete("/api/clients/c1", headers=dev_headers(user_id))

    assert allowed.status_code == 200
    assert allowed.json() == {"tenant_id": tenant_id, "user_id": user_id}
    assert denied.status_code == 403
    assert denied.json() == {
        "message": "Permission denied: delete access to clients",
        "code": "PERMISSION_DENIED",
    }

    events = await fetch_audit_events(actor_id=user_id)
    assert [(event.outcome, event.reason) for event in events] == [
        ("allowed", "permission_granted"),
        ("denied", "permission_denied"),
    ]
    assert all(event.tenant_id == tenant_id for event in events)
    assert all(event.duration_ms is not None and event.duration_ms >= 0 for event in events)


@pytest.mark.asyncio
async def test_repeated_checks_are_idempotent() -> None:
    tenant_id = await provision_tenant()
    user_id = f"user-{uuid4().hex[:6]}"
    await grant_default_role(user_id=user_id, tenant_id=tenant_id, role_name="Client")

    async with _client(_guarded_app()) as client:
        statuses = [(await client.get("/api/clients", headers=dev_headers(user_id))).status_code for _ in range(3)]

    assert statuses == [403, 403, 403]
    assert len(await fetch_audit_events(actor_id=user_id)) == 3


@pytest.mark.asyncio
async def test_any_held_role_grants_and_header_narrows() -> None:
    first_tenant = await provision_tenant()
    second_tenant = await provision_tenant()
    user_id = f"user-{uuid4().hex[:6]}"
    await grant_default_role(user_id=user_id, tenant_id=first_tenant, role_name="Client")
    await grant_default_role(user_id=user_id, tenant_id=second_tenant, role_name="Admin")

    async with _client(_guarded_app()) as client:
        unselected = await client.get("/api/clients", headers=dev_headers(user_id))
        narrowed = await client.get(
            "/api/clients",
            headers=dev_headers(user_id, **{"X-Organization-Id": first_tenant}),
        )
        selected = await client.get(
            "/api/clients",
            headers=dev_headers(user_id, **{"X-Organization-Id": second_tenant}),
        )
        foreign = await client.get(
            "/api/clients",
            headers=dev_headers(user_id, **{"X-Organization-Id": "org-elsewhere"}),
        )

    # Admin in the second tenant grants even though Client is the older membership.
    assert unselected.status_code == 200
    assert unselected.json()["tenant_id"] == second_tenant
    assert narrowed.status_code == 403
    assert narrowed.json()["code"] == "PERMISSION_DENIED"
    assert selected.status_code == 200
    assert selected.json()["tenant_id"] == second_tenant
    assert foreign.status_code == 403
    assert foreign.json()["code"] == "PERMISSION_DENIED"
    events = await fetch_audit_events(actor_id=user_id)
    assert [event.tenant_id for event in events[:3]] == [second_tenant, first_tenant, second_tenant]
    assert events[-1].metadata_json["tenant_not_member"] is True


@pytest.mark.asyncio
async def test_storage_failure_is_500_and_audited(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken_memberships(*_args, **_kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(rbac_repo, "list_tenant_memberships", _broken_memberships)

    async with _client(_guarded_app()) as client:
        response = await client.get("/api/clients", headers=dev_headers("u-broken"))

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "INTERNAL_ERROR"
    assert "connection refused" not in body["message"]
    events = await fetch_audit_events(actor_id="u-broken")
    assert len(events) == 1
    assert events[0].outcome == "error"
    assert events[0].reason == "system_error"
    assert events[0].metadata_json["error_type"] == "OperationalError"


def test_unknown_action_is_rejected_when_building_dependency() -> None:
    with pytest.raises(ValueError):
        check_permission("clients", "approve")
