from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from sandboxproxy.apps.api.routes import health
from sandboxproxy.tests.utils.app import api_client


@pytest.mark.asyncio
async def test_health_reports_database_and_request_id() -> None:
    async with api_client() as client:
        response = await client.get("/health", headers={"X-Request-Id": "req-health"})
        generated = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["database"] == "connected"
    assert body["timestamp"]
    assert response.headers["X-Request-Id"] == "req-health"
    assert generated.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_health_is_503_when_database_is_down(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _down() -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(health, "ping", _down)
    async with api_client() as client:
        response = await client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert response.json()["database"] == "disconnected"


@pytest.mark.asyncio
async def test_unknown_route_uses_error_body() -> None:
    async with api_client() as client:
        response = await client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.json() == {"error": "NOT_FOUND", "message": "Not Found"}
