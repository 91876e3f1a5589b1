from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ubos.apps.api.errors import (
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from ubos.apps.api.rate_limit import get_rate_limit_store, run_sweeper_loop
from ubos.apps.api.routes.audit import router as audit_router
from ubos.apps.api.routes.health import router as health_router
from ubos.apps.api.routes.rbac import router as rbac_router
from ubos.core.config import get_settings
from ubos.core.logging import configure_logging
from ubos.persistence.guards import TenantPredicateError
from ubos.services.audit import get_audit_logger


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Run the expired-counter sweeper for the app's lifetime.
    sweeper = asyncio.create_task(run_sweeper_loop())
    logger.info("rate_limit_sweeper_started interval_s=%s", get_settings().rl_sweep_interval_s)
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        # Flush background audit writes before the process exits.
        await get_audit_logger().drain()
        close = getattr(get_rate_limit_store(), "close", None)
        if close is not None:
            await close()
        logger.info("governance_shutdown_completed")


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(rbac_router)
    app.include_router(audit_router)

    return app


app = create_app()
