from __future__ import annotations

import pytest
from starlette.requests import Request

from ubos.apps.api.deps import Identity, resolve_identity
from ubos.core.config import get_settings


def _make_request(headers: dict[str, str]) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/roles",
        "scheme": "http",
        "server": ("test", 80),
        "client": ("test", 1234),
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
        "query_string": b"",
    }
    return Request(scope)


def test_upstream_identity_wins_over_header() -> None:
    request = _make_request({"X-User-Id": "header-user"})
    request.state.identity = Identity(user_id="session-user")
    assert resolve_identity(request) == Identity(user_id="session-user")


def test_dev_header_is_accepted_in_dev_mode() -> None:
    identity = resolve_identity(_make_request({"X-User-Id": " u-1 "}))
    assert identity is not None
    assert identity.user_id == "u-1"
    assert identity.auth_method == "dev_header"


def test_dev_header_is_rejected_outside_dev_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_DEV_BYPASS", "false")
    get_settings.cache_clear()
    assert resolve_identity(_make_request({"X-User-Id": "u-1"})) is None


def test_rejected_header_is_logged_once_per_request(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("AUTH_DEV_BYPASS", "false")
    get_settings.cache_clear()
    request = _make_request({"X-User-Id": "u-1"})

    with caplog.at_level("WARNING", logger="ubos.apps.api.deps"):
        assert resolve_identity(request) is None
        assert resolve_identity(request) is None

    rejected = [record for record in caplog.records if "auth_dev_header_rejected" in record.getMessage()]
    assert len(rejected) == 1


def test_missing_identity_resolves_to_none() -> None:
    assert resolve_identity(_make_request({})) is None
