from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sandboxproxy.core.errors import GatewayError, UnauthenticatedError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "ALREADY_EXISTS",
    500: "INTERNAL",
    503: "UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "INTERNAL" if status_code >= 500 else "INVALID_ARGUMENT")


def error_body(code: str, message: str) -> dict[str, str]:
    return {"error": code, "message": message}


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthenticatedError) else None
    return JSONResponse(
        content=error_body(exc.code, exc.message),
        status_code=exc.status_code,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routing errors (unknown path, wrong method) use the same body as gateway errors.
    detail: Any = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(exc.status_code))
        message = str(detail.get("message") or "Request failed")
    else:
        code = _default_code(exc.status_code)
        message = str(detail) if detail else "Request failed"
    return JSONResponse(
        content=error_body(code, message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Report the first failing field; request validation is a plain 400 here.
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(content=error_body("INVALID_ARGUMENT", message), status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; the full error goes to the log only.
    request_id = getattr(request.state, "request_id", None)
    logger.error("unhandled_exception path=%s request_id=%s", request.url.path, request_id, exc_info=exc)
    return JSONResponse(content=error_body("INTERNAL", "Internal server error"), status_code=500)
