from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from sandboxproxy.apps.api.errors import (
    gateway_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sandboxproxy.apps.api.routes.admin import router as admin_router
from sandboxproxy.apps.api.routes.health import router as health_router
from sandboxproxy.apps.api.routes.me import router as me_router
from sandboxproxy.apps.api.routes.proxy import router as proxy_router
from sandboxproxy.apps.api.routes.sandboxes import router as sandboxes_router
from sandboxproxy.core.config import get_settings
from sandboxproxy.core.errors import GatewayError
from sandboxproxy.core.logging import configure_logging
from sandboxproxy.persistence.db import engine
from sandboxproxy.services.forwarding import close_http_client
from sandboxproxy.services.telemetry import record_request


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Refuse to serve admin routes that could never authenticate.
    if not get_settings().admin_api_key:
        logger.error("admin_api_key_not_configured startup=aborted")
        raise RuntimeError("ADMIN_API_KEY must be set")
    logger.info("gateway_started app=%s", get_settings().app_name)
    yield
    await close_http_client()
    await engine.dispose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Sandbox Proxy", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return await gateway_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(admin_router)
    app.include_router(me_router)
    app.include_router(sandboxes_router)
    app.include_router(proxy_router)
    return app


app = create_app()
