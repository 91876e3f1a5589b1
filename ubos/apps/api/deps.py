from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ubos.core.config import get_settings
from ubos.persistence.db import get_session


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Identity(BaseModel):
    # Authenticated caller resolved upstream; read-only to the governance layer.
    user_id: str
    auth_method: str = "upstream"


def resolve_identity(request: Request) -> Identity | None:
    # Upstream authentication places the identity on request.state.
    identity = getattr(request.state, "identity", None)
    if isinstance(identity, Identity):
        return identity
    if isinstance(identity, str) and identity:
        return Identity(user_id=identity)

    # Limiter and resolver both ask; the header is judged once per request.
    if getattr(request.state, "header_identity_resolved", False):
        return request.state.header_identity
    header_identity = _resolve_header_identity(request)
    request.state.header_identity = header_identity
    request.state.header_identity_resolved = True
    return header_identity


def _resolve_header_identity(request: Request) -> Identity | None:
    settings = get_settings()
    header_user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if not header_user_id:
        return None
    if settings.auth_dev_bypass:
        return Identity(user_id=header_user_id, auth_method="dev_header")
    # Header identities outside dev mode are impersonation attempts; never honor them.
    logger.warning(
        "auth_dev_header_rejected ip=%s user_agent=%s",
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
    )
    return None
