from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str


class DataEnvelope(BaseModel, Generic[T]):
    # Wrap successful admin responses in a consistent envelope.
    data: T
    meta: ResponseMeta


class ErrorBody(BaseModel):
    # Stable caller-facing error shape; extra keys (e.g. retryAfter) are appended.
    message: str
    code: str


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_body(*, code: str, message: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    payload = ErrorBody(message=message, code=code).model_dump()
    if extra:
        payload.update({key: value for key, value in extra.items() if key not in payload})
    return payload
