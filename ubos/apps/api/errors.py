from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ubos.apps.api.response import error_body, get_request_id
from ubos.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

AUTH_REQUIRED = "AUTH_REQUIRED"
INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
PERMISSION_DENIED = "PERMISSION_DENIED"
INTERNAL_ERROR = "INTERNAL_ERROR"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: AUTH_REQUIRED,
    403: PERMISSION_DENIED,
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: RATE_LIMIT_EXCEEDED,
    500: INTERNAL_ERROR,
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/extras from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        extra = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, extra or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _response_headers(request: Request, headers: dict[str, str] | None = None) -> dict[str, str] | None:
    # Limit headers recorded before a later rejection still reach the client.
    merged = dict(getattr(request.state, "rate_limit_headers", None) or {})
    merged.update(headers or {})
    return merged or None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Render every HTTP error as the flat {message, code, ...} body.
    code, message, extra = _split_detail(exc.detail, exc.status_code)
    payload = error_body(code=code, message=message, extra=extra)
    return JSONResponse(
        content=payload,
        status_code=exc.status_code,
        headers=_response_headers(request, exc.headers),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for admin clients.
    payload = error_body(
        code="VALIDATION_ERROR",
        message="Validation error",
        extra={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422, headers=_response_headers(request))


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    payload = error_body(code=INTERNAL_ERROR, message="Internal server error")
    return JSONResponse(content=payload, status_code=500, headers=_response_headers(request))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_body(code=INTERNAL_ERROR, message="Internal server error")
    return JSONResponse(
        content=payload,
        status_code=500,
        headers=_response_headers(request, {"X-Request-Id": get_request_id(request)}),
    )
