from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.apps.api.deps import get_db, require_admin
from sandboxproxy.apps.api.schemas import (
    CreateApiKeyRequest,
    api_key_payload,
    audit_event_payload,
    issued_key_payload,
    user_payload,
)
from sandboxproxy.core.errors import InvalidArgumentError, NotFoundError
from sandboxproxy.persistence.db import pool_stats
from sandboxproxy.persistence.repos import api_keys as api_keys_repo
from sandboxproxy.persistence.repos import audit as audit_repo
from sandboxproxy.persistence.repos import sandboxes as sandboxes_repo
from sandboxproxy.persistence.repos import users as users_repo
from sandboxproxy.services import telemetry
from sandboxproxy.services.audit import STATUS_SUCCESS, record_event
from sandboxproxy.services.sandboxes import DNS_LABEL_MAX_LENGTH, is_dns_label


logger = logging.getLogger(__name__)

# Every route here is gated on the process-wide admin secret, never on a user key.
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class CreateUserRequest(BaseModel):
    username: str | None = None
    email: str | None = Field(default=None, max_length=320)


class UpdateUserRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    is_active: bool | None = None


def _validate_username(username: str | None) -> str:
    if not username:
        raise InvalidArgumentError("username is required")
    if not is_dns_label(username):
        raise InvalidArgumentError(
            "username must be a DNS label: lowercase letters, digits and '-', "
            f"starting and ending with an alphanumeric, at most {DNS_LABEL_MAX_LENGTH} characters"
        )
    return username


@router.post("/users", status_code=201)
async def create_user(
    payload: CreateUserRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    username = _validate_username(payload.username)
    user = await users_repo.create_user(db, username=username, email=payload.email)
    await record_event(
        user_id=user.id,
        action="admin.user.create",
        status=STATUS_SUCCESS,
        resource_type="user",
        resource_id=user.id,
        request=request,
        details={"username": user.username},
    )
    return {"success": True, "user": user_payload(user).model_dump()}


@router.get("/users")
async def list_users(
    active_only: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    users = await users_repo.list_users(db, active_only=active_only)
    return {"count": len(users), "users": [user_payload(user).model_dump() for user in users]}


@router.get("/users/{user_id}")
async def get_user(user_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user_payload(user).model_dump()


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    payload: UpdateUserRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if payload.email is None and payload.is_active is None:
        raise InvalidArgumentError("Provide email and/or is_active")
    user = await users_repo.update_user(db, user_id, email=payload.email, is_active=payload.is_active)
    if user is None:
        raise NotFoundError("User not found")
    await record_event(
        user_id=user.id,
        action="admin.user.update",
        status=STATUS_SUCCESS,
        resource_type="user",
        resource_id=user.id,
        request=request,
        details=payload.model_dump(exclude_none=True),
    )
    return {"success": True, "user": user_payload(user).model_dump()}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    username = user.username
    await users_repo.delete_user(db, user_id)
    # The row is gone, so the entry cannot reference it; the id lives on as the resource id.
    await record_event(
        user_id=None,
        action="admin.user.delete",
        status=STATUS_SUCCESS,
        resource_type="user",
        resource_id=user_id,
        request=request,
        details={"username": username},
    )
    logger.info("user_deleted user_id=%s username=%s", user_id, username)
    return {"success": True, "message": f"User '{username}' deleted successfully"}


@router.post("/users/{user_id}/apikeys", status_code=201)
async def create_user_api_key(
    user_id: str,
    payload: CreateApiKeyRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    api_key, issued = await api_keys_repo.create_api_key(
        db, user_id=user.id, name=payload.name, expires_at=payload.expires_at
    )
    await record_event(
        user_id=user.id,
        action="admin.api_key.create",
        status=STATUS_SUCCESS,
        resource_type="api_key",
        resource_id=api_key.id,
        request=request,
        details={"key_id": api_key.id, "key_prefix": api_key.key_prefix, "name": api_key.name},
    )
    return issued_key_payload(api_key, issued.raw_key)


@router.get("/users/{user_id}/apikeys")
async def list_user_api_keys(user_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    keys = await api_keys_repo.list_api_keys_for_user(db, user.id)
    return {"count": len(keys), "api_keys": [api_key_payload(key).model_dump() for key in keys]}


async def _revoke_or_purge(
    db: AsyncSession,
    *,
    key_id: str,
    user_id: str | None,
    purge: bool,
    request: Request,
) -> dict[str, Any]:
    api_key = await api_keys_repo.get_api_key(db, key_id)
    if api_key is None or (user_id is not None and api_key.user_id != user_id):
        raise NotFoundError("API key not found")
    owner_id = api_key.user_id
    if purge:
        await api_keys_repo.purge_api_key(db, key_id)
    else:
        await api_keys_repo.revoke_api_key(db, key_id)
    await record_event(
        user_id=owner_id,
        action="admin.api_key.purge" if purge else "admin.api_key.revoke",
        status=STATUS_SUCCESS,
        resource_type="api_key",
        resource_id=key_id,
        request=request,
        details={"key_id": key_id},
    )
    verb = "purged" if purge else "revoked"
    return {"success": True, "message": f"API key {verb} successfully"}


@router.delete("/users/{user_id}/apikeys/{key_id}")
async def revoke_user_api_key(
    user_id: str,
    key_id: str,
    request: Request,
    purge: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await _revoke_or_purge(db, key_id=key_id, user_id=user_id, purge=purge, request=request)


@router.delete("/apikeys/{key_id}")
async def revoke_api_key(
    key_id: str,
    request: Request,
    purge: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await _revoke_or_purge(db, key_id=key_id, user_id=None, purge=purge, request=request)


@router.get("/sandboxes")
async def list_all_sandboxes(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    # Ownership records only; live status stays behind the per-user routes.
    rows = await sandboxes_repo.list_all_sandboxes(db)
    sandboxes = [
        {
            "id": sandbox.id,
            "name": sandbox.name,
            "owner": username,
            "user_id": sandbox.user_id,
            "namespace": sandbox.namespace,
            "k8s_resource_name": sandbox.k8s_resource_name,
            "image": sandbox.image,
            "created_at": sandbox.created_at.isoformat() if sandbox.created_at else None,
        }
        for sandbox, username in rows
    ]
    return {"count": len(sandboxes), "sandboxes": sandboxes}


@router.get("/audit-logs")
async def list_audit_logs(
    user_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    events = await audit_repo.list_events(db, user_id=user_id, action=action, status=status, limit=limit)
    return {"count": len(events), "logs": [audit_event_payload(event).model_dump() for event in events]}


@router.get("/ops/metrics")
async def ops_metrics() -> dict[str, Any]:
    window_s = 300
    return {
        "window_s": window_s,
        "requests": {
            "availability_pct": telemetry.availability(window_s),
            "p95_ms": telemetry.p95_latency(window_s),
            "proxy_p95_ms": telemetry.p95_latency(window_s, path_prefix="/proxy/"),
        },
        "external_calls": telemetry.external_call_summary(window_s),
        "db_pool": pool_stats(),
    }
