from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncGenerator

import httpx
from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.core.config import get_settings
from sandboxproxy.core.errors import (
    ForbiddenError,
    InternalError,
    NotFoundError,
    UnauthenticatedError,
)
from sandboxproxy.domain.models import ApiKey, User
from sandboxproxy.persistence.db import SessionLocal, get_session
from sandboxproxy.persistence.repos import api_keys as api_keys_repo
from sandboxproxy.persistence.repos import audit as audit_repo
from sandboxproxy.persistence.repos import sandboxes as sandboxes_repo
from sandboxproxy.providers.orchestrator.base import Orchestrator
from sandboxproxy.providers.orchestrator.factory import get_orchestrator
from sandboxproxy.providers.storage.base import ObjectStore
from sandboxproxy.providers.storage.factory import get_object_store
from sandboxproxy.services.audit import STATUS_DENIED, STATUS_FAILED, STATUS_SUCCESS, record_event
from sandboxproxy.services.auth.api_keys import constant_time_equals, hash_api_key
from sandboxproxy.services.forwarding import SandboxRelay, get_http_client
from sandboxproxy.services.sandboxes import SandboxService


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; only for routes that make no collaborator calls.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Verified caller identity threaded into handlers through dependencies.
    user_id: str
    username: str
    email: str | None = None
    api_key_id: str


def _parse_bearer_token(header_value: str | None) -> str:
    # Enforce "Bearer <token>" before any credential lookup happens.
    if header_value is None:
        raise UnauthenticatedError("Missing Authorization header", reason="missing_header")
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise UnauthenticatedError(
            "Invalid Authorization header format. Expected: Bearer <api-key>",
            reason="malformed_header",
        )
    token = token.strip()
    if not token:
        raise UnauthenticatedError("Empty API key", reason="empty_token")
    if any(ch.isspace() for ch in token):
        raise UnauthenticatedError(
            "Invalid Authorization header format. Expected: Bearer <api-key>",
            reason="malformed_header",
        )
    return token


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _rejection_reason(row: tuple[ApiKey, User] | None) -> str | None:
    if row is None:
        return "unknown_key"
    api_key, user = row
    if not api_key.is_active:
        return "key_inactive"
    if not user.is_active:
        return "user_inactive"
    if api_key.expires_at is not None and _as_utc(api_key.expires_at) <= datetime.now(timezone.utc):
        return "key_expired"
    return None


async def _touch_last_used(api_key_id: str) -> None:
    # Runs detached from the request; a failure here is logged and dropped.
    async with SessionLocal() as session:
        try:
            await api_keys_repo.touch_last_used(session, api_key_id)
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("api_key_touch_failed key_id=%s", api_key_id, exc_info=exc)


async def get_current_principal(request: Request) -> Principal:
    try:
        token = _parse_bearer_token(request.headers.get("Authorization"))
    except UnauthenticatedError as exc:
        # Header problems are rejected before the credential store is consulted.
        logger.info("auth_rejected reason=%s path=%s", exc.reason, request.url.path)
        raise

    async with SessionLocal() as session:
        row = await api_keys_repo.find_by_hash(session, hash_api_key(token))

    reason = _rejection_reason(row)
    if reason is not None:
        user_id = row[1].id if row is not None else None
        details: dict[str, str] = {"reason": reason, "path": request.url.path, "method": request.method}
        if row is not None:
            details["key_id"] = row[0].id
        await record_event(
            user_id=user_id,
            action="auth.access.failure",
            status=STATUS_FAILED,
            resource_type="auth",
            request=request,
            details=details,
        )
        logger.info("auth_rejected reason=%s path=%s", reason, request.url.path)
        raise UnauthenticatedError("Invalid or expired API key", reason=reason)

    api_key, user = row  # type: ignore[misc]
    asyncio.create_task(_touch_last_used(api_key.id))
    return Principal(
        user_id=user.id,
        username=user.username,
        email=user.email,
        api_key_id=api_key.id,
    )


async def require_admin(request: Request) -> None:
    token = _parse_bearer_token(request.headers.get("Authorization"))
    admin_key = get_settings().admin_api_key
    if not admin_key:
        # Startup refuses to run without the secret; reaching this means it was unset afterwards.
        logger.error("admin_api_key_not_configured path=%s", request.url.path)
        raise InternalError("Admin authentication not configured")
    if not constant_time_equals(token, admin_key):
        logger.warning("admin_auth_rejected path=%s", request.url.path)
        raise ForbiddenError("Invalid admin API key")


async def require_sandbox_owner(
    name: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    async with SessionLocal() as session:
        if await sandboxes_repo.user_owns_sandbox(session, principal.user_id, name):
            return principal
        # A name this caller deleted reads as gone rather than forbidden.
        deleted = await audit_repo.has_event(
            session,
            user_id=principal.user_id,
            action="sandbox.delete",
            status=STATUS_SUCCESS,
            resource_id=name,
        )
    if deleted:
        raise NotFoundError("Sandbox not found")
    await record_event(
        user_id=principal.user_id,
        action="sandbox.access.denied",
        status=STATUS_DENIED,
        resource_type="sandbox",
        request=request,
        details={"path": request.url.path, "method": request.method},
    )
    raise ForbiddenError("You do not have access to this sandbox")


def get_orchestrator_client() -> Orchestrator:
    return get_orchestrator()


def get_object_store_client() -> ObjectStore:
    return get_object_store()


def get_relay_http_client() -> httpx.AsyncClient:
    return get_http_client()


def get_sandbox_service(
    orchestrator: Orchestrator = Depends(get_orchestrator_client),
    object_store: ObjectStore = Depends(get_object_store_client),
) -> SandboxService:
    return SandboxService(orchestrator=orchestrator, object_store=object_store)


def get_sandbox_relay(
    orchestrator: Orchestrator = Depends(get_orchestrator_client),
    client: httpx.AsyncClient = Depends(get_relay_http_client),
) -> SandboxRelay:
    return SandboxRelay(orchestrator=orchestrator, client=client)
