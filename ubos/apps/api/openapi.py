from __future__ import annotations

from typing import Any

from ubos.apps.api.response import ErrorBody


def _error_response(*, description: str, code: str, message: str, **extra: Any) -> dict[str, Any]:
    # Document the flat error body with a concrete example per status.
    example: dict[str, Any] = {"message": message, "code": code, **extra}
    return {
        "model": ErrorBody,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response(description="Unauthorized", code="AUTH_REQUIRED", message="Authentication required"),
    403: _error_response(
        description="Forbidden",
        code="PERMISSION_DENIED",
        message="Permission denied: view access to roles",
    ),
    429: _error_response(
        description="Rate limited",
        code="RATE_LIMIT_EXCEEDED",
        message="Too many requests, please try again later.",
        retryAfter=900,
    ),
    500: _error_response(description="Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

ADMIN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _error_response(
        description="Bad request",
        code="BAD_REQUEST",
        message="Cannot delete system default roles",
    ),
    404: _error_response(description="Not found", code="NOT_FOUND", message="Role not found"),
    409: _error_response(
        description="Conflict",
        code="CONFLICT",
        message="Cannot delete role that is assigned to users",
    ),
    422: _error_response(description="Validation error", code="VALIDATION_ERROR", message="Validation error"),
}
