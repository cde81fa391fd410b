from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.apps.api.deps import Principal, get_current_principal, get_db
from sandboxproxy.apps.api.schemas import (
    CreateApiKeyRequest,
    api_key_payload,
    audit_event_payload,
    issued_key_payload,
    user_payload,
)
from sandboxproxy.core.errors import ForbiddenError, NotFoundError
from sandboxproxy.persistence.repos import api_keys as api_keys_repo
from sandboxproxy.persistence.repos import audit as audit_repo
from sandboxproxy.persistence.repos import users as users_repo
from sandboxproxy.services.audit import STATUS_DENIED, STATUS_SUCCESS, record_event


router = APIRouter(prefix="/api/me", tags=["self-service"])


@router.get("")
async def get_me(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    user = await users_repo.get_user(db, principal.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user_payload(user).model_dump()


@router.post("/apikeys", status_code=201)
async def create_my_api_key(
    payload: CreateApiKeyRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    api_key, issued = await api_keys_repo.create_api_key(
        db, user_id=principal.user_id, name=payload.name, expires_at=payload.expires_at
    )
    await record_event(
        user_id=principal.user_id,
        action="api_key.create",
        status=STATUS_SUCCESS,
        resource_type="api_key",
        resource_id=api_key.id,
        request=request,
        details={"key_id": api_key.id, "key_prefix": api_key.key_prefix, "name": api_key.name},
    )
    return issued_key_payload(api_key, issued.raw_key)


@router.get("/apikeys")
async def list_my_api_keys(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    keys = await api_keys_repo.list_api_keys_for_user(db, principal.user_id)
    return {"count": len(keys), "api_keys": [api_key_payload(key).model_dump() for key in keys]}


@router.delete("/apikeys/{key_id}")
async def revoke_my_api_key(
    key_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    api_key = await api_keys_repo.get_api_key(db, key_id)
    if api_key is None:
        raise NotFoundError("API key not found")
    if api_key.user_id != principal.user_id:
        await record_event(
            user_id=principal.user_id,
            action="api_key.revoke",
            status=STATUS_DENIED,
            resource_type="api_key",
            request=request,
            details={"key_id": key_id},
        )
        raise ForbiddenError("You do not have access to this API key")
    await api_keys_repo.revoke_api_key(db, key_id)
    await record_event(
        user_id=principal.user_id,
        action="api_key.revoke",
        status=STATUS_SUCCESS,
        resource_type="api_key",
        resource_id=key_id,
        request=request,
        details={"key_id": key_id},
    )
    return {"success": True, "message": "API key revoked successfully"}


@router.get("/audit-logs")
async def list_my_audit_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    events = await audit_repo.list_events(db, user_id=principal.user_id, limit=limit)
    return {"count": len(events), "logs": [audit_event_payload(event).model_dump() for event in events]}
