from __future__ import annotations

import pytest

from ubos.services.rbac import (
    DEFAULT_ROLE_TEMPLATES,
    PERMISSION_CATALOG,
    ROLE_ADMIN,
    ROLE_CLIENT,
    ROLE_MANAGER,
    ROLE_TEAM_MEMBER,
    normalize_permission_type,
)


def _template(name: str):
    return next(template for template in DEFAULT_ROLE_TEMPLATES if template.name == name)


def test_catalog_pairs_are_unique() -> None:
    assert len(PERMISSION_CATALOG) == len(set(PERMISSION_CATALOG))
    assert ("clients", "export") in PERMISSION_CATALOG
    assert ("roles", "export") not in PERMISSION_CATALOG


def test_default_role_templates() -> None:
    catalog = set(PERMISSION_CATALOG)
    assert _template(ROLE_ADMIN).permissions == catalog
    manager = _template(ROLE_MANAGER).permissions
    assert ("clients", "delete") in manager
    assert not any(area in {"users", "roles"} for area, _kind in manager)
    team_member = _template(ROLE_TEAM_MEMBER).permissions
    assert ("projects", "edit") in team_member
    assert ("projects", "delete") not in team_member
    assert _template(ROLE_CLIENT).permissions == {
        ("files", "view"),
        ("invoices", "view"),
        ("messages", "view"),
    }
    for template in DEFAULT_ROLE_TEMPLATES:
        assert template.permissions <= catalog


def test_permission_type_normalization() -> None:
    assert normalize_permission_type(" View ") == "view"
    with pytest.raises(ValueError):
        normalize_permission_type("approve")
