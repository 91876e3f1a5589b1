from __future__ import annotations

import base64

from starlette.requests import Request


FINGERPRINT_LENGTH = 32
_UNKNOWN = "unknown"


def client_address(request: Request, *, trust_forwarded_for: bool = False) -> str:
    # Prefer the left-most forwarded hop only when a trusted proxy sets it.
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return _UNKNOWN


def build_fingerprint(
    *,
    ip_address: str | None,
    user_agent: str | None,
    accept_language: str | None,
    accept_encoding: str | None,
) -> str:
    """Derive a coarse client identifier from connection and header hints.

    This groups likely-same-client traffic for rate limiting and abuse review.
    It is not an identity and must never be used for authentication.
    """
    raw = ":".join(
        value or _UNKNOWN for value in (ip_address, user_agent, accept_language, accept_encoding)
    )
    encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    return encoded[:FINGERPRINT_LENGTH]


def fingerprint_request(request: Request, *, trust_forwarded_for: bool = False) -> str:
    return build_fingerprint(
        ip_address=client_address(request, trust_forwarded_for=trust_forwarded_for),
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
        accept_encoding=request.headers.get("accept-encoding"),
    )
