from __future__ import annotations

import json

import httpx
import pytest

from sandboxproxy.tests.utils.app import api_client
from sandboxproxy.tests.utils.auth import create_test_user_and_key


@pytest.mark.asyncio
async def test_proxy_relays_json_exchange() -> None:
    _raw, headers, _user_id, _key_id = await create_test_user_and_key("alice")
    seen: list[httpx.Request] = []

    def sandbox(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"path": request.url.path, "got": json.loads(request.content)})

    async with api_client(relay_transport=httpx.MockTransport(sandbox)) as client:
        assert (await client.post("/api/sandboxes", json={"name": "demo"}, headers=headers)).status_code == 201
        response = await client.post(
            "/proxy/demo/v1/files/write",
            json={"path": "/sandbox/a.txt"},
            headers={**headers, "X-Request-Id": "req-proxy-1"},
        )

    assert response.status_code == 201
    assert response.json() == {"path": "/v1/files/write", "got": {"path": "/sandbox/a.txt"}}
    assert response.headers["X-Request-Id"] == "req-proxy-1"
    assert str(seen[0].url) == "http://demo.user-alice.svc.cluster.local:8080/v1/files/write"
    assert seen[0].headers["X-Request-Id"] == "req-proxy-1"


@pytest.mark.asyncio
async def test_proxy_requires_ownership() -> None:
    _raw, alice, _alice_id, _ = await create_test_user_and_key("alice")
    _raw, bob, _bob_id, _ = await create_test_user_and_key("bob")
    calls: list[httpx.Request] = []

    def sandbox(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    async with api_client(relay_transport=httpx.MockTransport(sandbox)) as client:
        assert (await client.post("/api/sandboxes", json={"name": "demo"}, headers=alice)).status_code == 201
        response = await client.get("/proxy/demo/anything", headers=bob)
        unauthenticated = await client.get("/proxy/demo/anything")

    assert response.status_code == 403
    assert unauthenticated.status_code == 401
    assert calls == []


@pytest.mark.asyncio
async def test_proxy_upstream_failure_is_500_with_message() -> None:
    _raw, headers, _user_id, _key_id = await create_test_user_and_key("alice")
    async with api_client() as client:
        assert (await client.post("/api/sandboxes", json={"name": "demo"}, headers=headers)).status_code == 201
        response = await client.get("/proxy/demo/status", headers=headers)

    assert response.status_code == 500
    assert response.json()["error"] == "INTERNAL"
    assert "sandbox unreachable" in response.json()["message"]


@pytest.mark.asyncio
async def test_proxy_head_returns_no_body() -> None:
    _raw, headers, _user_id, _key_id = await create_test_user_and_key("alice")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
    async with api_client(relay_transport=transport) as client:
        assert (await client.post("/api/sandboxes", json={"name": "demo"}, headers=headers)).status_code == 201
        response = await client.head("/proxy/demo/health", headers=headers)
    assert response.status_code == 200
    assert response.content == b""
