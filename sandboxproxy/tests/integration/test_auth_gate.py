from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from sandboxproxy.core.config import get_settings
from sandboxproxy.domain.models import ApiKey, AuditEvent
from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.persistence.repos import api_keys as api_keys_repo
from sandboxproxy.tests.utils.app import api_client
from sandboxproxy.tests.utils.auth import admin_headers, bearer, create_test_user_and_key


async def _audit_rows() -> list[AuditEvent]:
    async with SessionLocal() as session:
        return list((await session.execute(select(AuditEvent).order_by(AuditEvent.id))).scalars().all())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": ""},
        {"Authorization": "Bearer"},
        {"Authorization": "Bearer "},
        {"Authorization": "Basic dXNlcjpwYXNz"},
        {"Authorization": "Token sk_live_abc"},
        {"Authorization": "Bearer two tokens"},
    ],
)
async def test_malformed_headers_are_rejected_before_lookup(
    headers: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _must_not_be_called(*args, **kwargs):
        raise AssertionError("credential store consulted")

    monkeypatch.setattr(api_keys_repo, "find_by_hash", _must_not_be_called)
    async with api_client() as client:
        response = await client.get("/api/sandboxes", headers=headers)

    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHENTICATED"
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert await _audit_rows() == []


@pytest.mark.asyncio
async def test_unknown_key_is_rejected_and_audited_without_user() -> None:
    async with api_client() as client:
        response = await client.get("/api/me", headers=bearer("sk_live_" + "x" * 32))

    assert response.status_code == 401
    rows = await _audit_rows()
    assert len(rows) == 1
    assert rows[0].action == "auth.access.failure"
    assert rows[0].user_id is None
    assert rows[0].details["reason"] == "unknown_key"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "reason"),
    [
        ({"key_active": False}, "key_inactive"),
        ({"user_active": False}, "user_inactive"),
        ({"key_expires_at": datetime.now(timezone.utc) - timedelta(minutes=1)}, "key_expired"),
    ],
)
async def test_matching_digest_is_still_rejected_when_not_usable(kwargs: dict, reason: str) -> None:
    _raw, headers, user_id, key_id = await create_test_user_and_key("alice", **kwargs)
    async with api_client() as client:
        response = await client.get("/api/me", headers=headers)

    assert response.status_code == 401
    rows = await _audit_rows()
    assert rows[-1].user_id == user_id
    assert rows[-1].details["reason"] == reason
    assert rows[-1].details["key_id"] == key_id


@pytest.mark.asyncio
async def test_future_expiry_authenticates() -> None:
    _raw, headers, user_id, _key_id = await create_test_user_and_key(
        "alice", key_expires_at=datetime.now(timezone.utc) + timedelta(days=1)
    )
    async with api_client() as client:
        response = await client.get("/api/me", headers=headers)
    assert response.status_code == 200
    assert response.json()["id"] == user_id
    assert response.json()["username"] == "alice"


@pytest.mark.asyncio
async def test_successful_auth_eventually_touches_last_used() -> None:
    _raw, headers, _user_id, key_id = await create_test_user_and_key("alice")
    async with api_client() as client:
        assert (await client.get("/api/me", headers=headers)).status_code == 200

    last_used = None
    for _ in range(50):
        async with SessionLocal() as session:
            last_used = (
                await session.execute(select(ApiKey.last_used_at).where(ApiKey.id == key_id))
            ).scalar_one()
        if last_used is not None:
            break
        await asyncio.sleep(0.02)
    assert last_used is not None


@pytest.mark.asyncio
async def test_user_key_is_not_an_admin_key() -> None:
    _raw, headers, _user_id, _key_id = await create_test_user_and_key("alice")
    async with api_client() as client:
        response = await client.get("/api/admin/users", headers=headers)
    assert response.status_code == 403
    assert response.json() == {"error": "FORBIDDEN", "message": "Invalid admin API key"}


@pytest.mark.asyncio
async def test_admin_gate_requires_bearer_header() -> None:
    async with api_client() as client:
        missing = await client.get("/api/admin/users")
        malformed = await client.get("/api/admin/users", headers={"Authorization": "sk_admin_test_secret"})
        ok = await client.get("/api/admin/users", headers=admin_headers())
    assert missing.status_code == 401
    assert malformed.status_code == 401
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_admin_secret_missing_at_request_time_is_500(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(get_settings(), "admin_api_key", None)
    async with api_client() as client:
        response = await client.get("/api/admin/users", headers=bearer("anything"))
    assert response.status_code == 500
    assert response.json()["error"] == "INTERNAL"
