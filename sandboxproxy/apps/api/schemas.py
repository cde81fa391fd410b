from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from sandboxproxy.domain.models import ApiKey, AuditEvent, User


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    # SQLite drops tzinfo; stored values are UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class CreateApiKeyRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _future_expiry(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= datetime.now(timezone.utc):
            raise ValueError("expires_at must be in the future")
        return value


class UserResponse(BaseModel):
    id: str
    username: str
    email: str | None
    is_active: bool
    created_at: str | None
    updated_at: str | None


class ApiKeyResponse(BaseModel):
    # Listing shape; the digest never leaves the store.
    id: str
    key_prefix: str
    name: str | None
    created_at: str | None
    expires_at: str | None
    last_used_at: str | None
    is_active: bool


class AuditEventResponse(BaseModel):
    id: int
    user_id: str | None
    action: str
    resource_type: str | None
    resource_id: str | None
    ip_address: str | None
    user_agent: str | None
    status: str
    details: dict[str, Any] | None
    created_at: str | None


def user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        is_active=user.is_active,
        created_at=_iso(user.created_at),
        updated_at=_iso(user.updated_at),
    )


def api_key_payload(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=api_key.id,
        key_prefix=api_key.key_prefix,
        name=api_key.name,
        created_at=_iso(api_key.created_at),
        expires_at=_iso(api_key.expires_at),
        last_used_at=_iso(api_key.last_used_at),
        is_active=api_key.is_active,
    )


def issued_key_payload(api_key: ApiKey, raw_key: str) -> dict[str, Any]:
    # The only response that ever carries the plaintext key.
    return {
        "success": True,
        "api_key": raw_key,
        "key_info": {
            "id": api_key.id,
            "key_prefix": api_key.key_prefix,
            "name": api_key.name,
            "created_at": _iso(api_key.created_at),
            "expires_at": _iso(api_key.expires_at),
        },
        "warning": "Store this key securely. It will not be shown again.",
    }


def audit_event_payload(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        user_id=event.user_id,
        action=event.action,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        status=event.status,
        details=event.details,
        created_at=_iso(event.created_at),
    )
