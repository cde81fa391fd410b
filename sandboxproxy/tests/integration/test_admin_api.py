from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from sandboxproxy.domain.models import ApiKey, Sandbox
from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.services.auth.api_keys import hash_api_key
from sandboxproxy.tests.utils.app import api_client
from sandboxproxy.tests.utils.auth import admin_headers, bearer


@pytest.mark.asyncio
async def test_user_crud_lifecycle() -> None:
    async with api_client() as client:
        created = await client.post(
            "/api/admin/users", json={"username": "alice", "email": "alice@example.com"}, headers=admin_headers()
        )
        assert created.status_code == 201
        user = created.json()["user"]
        assert user["username"] == "alice"
        assert user["is_active"] is True

        duplicate = await client.post("/api/admin/users", json={"username": "alice"}, headers=admin_headers())
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "ALREADY_EXISTS"

        fetched = await client.get(f"/api/admin/users/{user['id']}", headers=admin_headers())
        assert fetched.json()["email"] == "alice@example.com"

        updated = await client.put(
            f"/api/admin/users/{user['id']}", json={"is_active": False}, headers=admin_headers()
        )
        assert updated.status_code == 200
        assert updated.json()["user"]["is_active"] is False

        all_users = await client.get("/api/admin/users", headers=admin_headers())
        active_users = await client.get("/api/admin/users?active_only=true", headers=admin_headers())
        assert all_users.json()["count"] == 1
        assert active_users.json()["count"] == 0

        deleted = await client.delete(f"/api/admin/users/{user['id']}", headers=admin_headers())
        assert deleted.status_code == 200
        missing = await client.get(f"/api/admin/users/{user['id']}", headers=admin_headers())
        assert missing.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("username", ["", "Alice", "alice_1", "-alice", "a" * 64])
async def test_invalid_usernames_are_rejected(username: str) -> None:
    async with api_client() as client:
        response = await client.post("/api/admin/users", json={"username": username}, headers=admin_headers())
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_ARGUMENT"


@pytest.mark.asyncio
async def test_update_requires_a_field_and_an_existing_user() -> None:
    async with api_client() as client:
        empty = await client.put("/api/admin/users/nope", json={}, headers=admin_headers())
        missing = await client.put("/api/admin/users/nope", json={"email": "x@example.com"}, headers=admin_headers())
    assert empty.status_code == 400
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_key_issuance_returns_plaintext_once() -> None:
    expires_at = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()
    async with api_client() as client:
        user = (await client.post("/api/admin/users", json={"username": "alice"}, headers=admin_headers())).json()["user"]
        issued = await client.post(
            f"/api/admin/users/{user['id']}/apikeys",
            json={"name": "ci", "expires_at": expires_at},
            headers=admin_headers(),
        )
        assert issued.status_code == 201
        payload = issued.json()
        raw_key = payload["api_key"]
        assert raw_key.startswith("sk_live_")
        assert payload["key_info"]["name"] == "ci"
        assert payload["key_info"]["key_prefix"] == raw_key[:12]
        assert payload["key_info"]["expires_at"] is not None

        listed = await client.get(f"/api/admin/users/{user['id']}/apikeys", headers=admin_headers())
        rows = listed.json()["api_keys"]
        assert len(rows) == 1
        assert "api_key" not in rows[0]
        assert "key_hash" not in rows[0]

        me = await client.get("/api/me", headers=bearer(raw_key))
        assert me.status_code == 200

        audit = await client.get("/api/admin/audit-logs?limit=10", headers=admin_headers())
        assert raw_key not in audit.text

    async with SessionLocal() as session:
        stored = (await session.execute(select(ApiKey))).scalar_one()
    assert stored.key_hash == hash_api_key(raw_key)


@pytest.mark.asyncio
async def test_past_expiry_is_rejected() -> None:
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    async with api_client() as client:
        user = (await client.post("/api/admin/users", json={"username": "alice"}, headers=admin_headers())).json()["user"]
        response = await client.post(
            f"/api/admin/users/{user['id']}/apikeys", json={"expires_at": past}, headers=admin_headers()
        )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_revoke_and_purge_paths() -> None:
    async with api_client() as client:
        alice = (await client.post("/api/admin/users", json={"username": "alice"}, headers=admin_headers())).json()["user"]
        bob = (await client.post("/api/admin/users", json={"username": "bob"}, headers=admin_headers())).json()["user"]
        first = (await client.post(f"/api/admin/users/{alice['id']}/apikeys", json={}, headers=admin_headers())).json()
        second = (await client.post(f"/api/admin/users/{alice['id']}/apikeys", json={}, headers=admin_headers())).json()
        first_id = first["key_info"]["id"]
        second_id = second["key_info"]["id"]

        wrong_owner = await client.delete(
            f"/api/admin/users/{bob['id']}/apikeys/{first_id}", headers=admin_headers()
        )
        assert wrong_owner.status_code == 404

        revoked = await client.delete(f"/api/admin/users/{alice['id']}/apikeys/{first_id}", headers=admin_headers())
        assert revoked.status_code == 200
        purged = await client.delete(f"/api/admin/apikeys/{second_id}?purge=true", headers=admin_headers())
        assert purged.status_code == 200
        unknown = await client.delete("/api/admin/apikeys/does-not-exist", headers=admin_headers())
        assert unknown.status_code == 404

        listed = (await client.get(f"/api/admin/users/{alice['id']}/apikeys", headers=admin_headers())).json()
        assert [(row["id"], row["is_active"]) for row in listed["api_keys"]] == [(first_id, False)]
        assert (await client.get("/api/me", headers=bearer(first["api_key"]))).status_code == 401
        assert (await client.get("/api/me", headers=bearer(second["api_key"]))).status_code == 401


@pytest.mark.asyncio
async def test_deleting_user_cascades_keys_and_sandboxes() -> None:
    async with api_client() as client:
        user = (await client.post("/api/admin/users", json={"username": "alice"}, headers=admin_headers())).json()["user"]
        issued = (await client.post(f"/api/admin/users/{user['id']}/apikeys", json={}, headers=admin_headers())).json()
        headers = bearer(issued["api_key"])
        assert (await client.post("/api/sandboxes", json={"name": "demo"}, headers=headers)).status_code == 201

        inventory = await client.get("/api/admin/sandboxes", headers=admin_headers())
        assert inventory.json()["count"] == 1
        assert inventory.json()["sandboxes"][0]["owner"] == "alice"

        assert (await client.delete(f"/api/admin/users/{user['id']}", headers=admin_headers())).status_code == 200

        logs = await client.get("/api/admin/audit-logs", headers=admin_headers())
        actions = [entry["action"] for entry in logs.json()["logs"]]
        assert actions[0] == "admin.user.delete"
        # Entries that referenced the user survive with the link cleared.
        assert "sandbox.create" in actions

    async with SessionLocal() as session:
        assert (await session.execute(select(ApiKey))).scalars().all() == []
        assert (await session.execute(select(Sandbox))).scalars().all() == []


@pytest.mark.asyncio
async def test_audit_log_limit_bounds() -> None:
    async with api_client() as client:
        too_big = await client.get("/api/admin/audit-logs?limit=1001", headers=admin_headers())
        too_small = await client.get("/api/admin/audit-logs?limit=0", headers=admin_headers())
    assert too_big.status_code == 400
    assert too_small.status_code == 400


@pytest.mark.asyncio
async def test_ops_metrics_reports_requests_and_pool() -> None:
    async with api_client() as client:
        await client.get("/health")
        response = await client.get("/api/admin/ops/metrics", headers=admin_headers())
    assert response.status_code == 200
    body = response.json()
    assert body["requests"]["availability_pct"] == 100.0
    assert "db_pool" in body
    assert isinstance(body["external_calls"], dict)
