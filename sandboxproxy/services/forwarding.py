from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from sandboxproxy.core.config import Settings, get_settings
from sandboxproxy.core.errors import (
    ForbiddenError,
    GatewayError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    OrchestratorError,
    UnavailableError,
)
from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.persistence.repos import sandboxes as sandboxes_repo
from sandboxproxy.providers.orchestrator.base import Orchestrator, SandboxStatus
from sandboxproxy.services.audit import STATUS_DENIED, STATUS_FAILED, STATUS_SUCCESS, record_event
from sandboxproxy.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "relay"
_BODYLESS_METHODS = {"GET", "HEAD"}

_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    # One pooled client per process; each request still gets its own timeout.
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(timeout=get_settings().proxy_timeout_ms / 1000.0)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


@dataclass(frozen=True)
class RelayResult:
    status_code: int
    # None when the upstream sent no body (or the method was HEAD).
    body: Any | None


def parse_json_body(method: str, raw: bytes) -> Any | None:
    if method in _BODYLESS_METHODS:
        return None
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise InvalidArgumentError("Request body must be valid JSON") from exc


class SandboxRelay:
    """Relays one HTTP exchange to a sandbox's runtime service.

    Each call re-checks ownership and re-resolves the service address from the
    orchestrator; nothing about the target is cached between requests.
    """

    def __init__(
        self,
        *,
        orchestrator: Orchestrator,
        client: httpx.AsyncClient,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        settings: Settings | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._client = client
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def forward(
        self,
        *,
        user_id: str,
        name: str,
        method: str,
        suffix: str,
        body: bytes = b"",
        query: str = "",
        request_id: str | None = None,
        request: Request | None = None,
    ) -> RelayResult:
        method = method.upper()
        async with self._session_factory() as session:
            owns = await sandboxes_repo.user_owns_sandbox(session, user_id, name)
            sandbox = await sandboxes_repo.get_sandbox_for_user(session, user_id, name) if owns else None
        if not owns:
            await record_event(
                user_id=user_id,
                action="sandbox.access.denied",
                status=STATUS_DENIED,
                resource_type="sandbox",
                request=request,
                details={"path": f"/proxy/{name}/{suffix}", "method": method},
            )
            raise ForbiddenError("You do not have access to this sandbox")
        if sandbox is None:
            raise NotFoundError("Sandbox not found")

        details: dict[str, Any] = {"method": method, "path": f"/{suffix}"}
        try:
            result = await self._relay(
                namespace=sandbox.namespace,
                resource_name=sandbox.k8s_resource_name,
                method=method,
                suffix=suffix,
                body=body,
                query=query,
                request_id=request_id,
            )
        except GatewayError as exc:
            details.update({"error": exc.message, "status_code": exc.status_code})
            await record_event(
                user_id=user_id,
                action="proxy.forward",
                status=STATUS_FAILED,
                resource_type="sandbox",
                resource_id=name,
                request=request,
                details=details,
            )
            raise

        details["upstream_status"] = result.status_code
        await record_event(
            user_id=user_id,
            action="proxy.forward",
            status=STATUS_SUCCESS,
            resource_type="sandbox",
            resource_id=name,
            request=request,
            details=details,
        )
        return result

    async def _relay(
        self,
        *,
        namespace: str,
        resource_name: str,
        method: str,
        suffix: str,
        body: bytes,
        query: str,
        request_id: str | None,
    ) -> RelayResult:
        try:
            obj = await self._orchestrator.get_sandbox(namespace, resource_name)
        except OrchestratorError as exc:
            raise InternalError(str(exc)) from exc
        status = SandboxStatus.from_object(obj)
        if not status.service_fqdn:
            raise UnavailableError("Sandbox service not ready")
        if not status.ready:
            raise UnavailableError("Sandbox not ready")

        payload = parse_json_body(method, body)
        target_url = f"http://{status.service_fqdn}:{self._settings.sandbox_runtime_port}/{suffix}"
        if query:
            target_url = f"{target_url}?{query}"
        headers = {"Content-Type": "application/json"}
        if request_id:
            headers["X-Request-Id"] = request_id
        logger.info("proxy_forward method=%s target=%s request_id=%s", method, target_url, request_id)

        started = time.monotonic()
        success = False
        try:
            response = await self._client.request(
                method,
                target_url,
                headers=headers,
                json=payload,
                timeout=self._settings.proxy_timeout_ms / 1000.0,
            )
            success = True
        except httpx.TimeoutException as exc:
            logger.warning("proxy_timeout target=%s request_id=%s", target_url, request_id)
            raise InternalError(
                f"Upstream request timed out after {self._settings.proxy_timeout_ms}ms"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("proxy_failed target=%s request_id=%s error=%s", target_url, request_id, exc)
            raise InternalError(str(exc) or exc.__class__.__name__) from exc
        finally:
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

        if method == "HEAD" or not response.content:
            return RelayResult(status_code=response.status_code, body=None)
        try:
            data = response.json()
        except ValueError as exc:
            raise InternalError(
                f"Upstream returned a non-JSON response (status {response.status_code})"
            ) from exc
        return RelayResult(status_code=response.status_code, body=data)
