from __future__ import annotations

import json
import logging
from typing import Any, Callable

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from sandboxproxy.core.config import Settings, get_settings
from sandboxproxy.core.errors import OrchestratorError
from sandboxproxy.services.resilience import call_blocking


logger = logging.getLogger(__name__)

_INTEGRATION = "orchestrator.kubernetes"


class KubernetesOrchestrator:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        custom_api: Any | None = None,
        core_api: Any | None = None,
        networking_api: Any | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._custom_api = custom_api
        self._core_api = core_api
        self._networking_api = networking_api
        self._configured = custom_api is not None and core_api is not None and networking_api is not None

    def _load_clients(self) -> None:
        if self._configured:
            return
        try:
            if self._settings.k8s_in_cluster:
                try:
                    config.load_incluster_config()
                except ConfigException:
                    # Outside a pod there is no service account token; use the developer kubeconfig.
                    config.load_kube_config()
            else:
                config.load_kube_config()
        except ConfigException as exc:
            raise OrchestratorError(f"Kubernetes client configuration unavailable: {exc}") from exc
        self._custom_api = self._custom_api or client.CustomObjectsApi()
        self._core_api = self._core_api or client.CoreV1Api()
        self._networking_api = self._networking_api or client.NetworkingV1Api()
        self._configured = True

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        timeout_ms = self._settings.orchestrator_timeout_ms
        try:
            return await call_blocking(
                func,
                *args,
                integration=_INTEGRATION,
                timeout_ms=timeout_ms,
                _request_timeout=timeout_ms / 1000.0,
                **kwargs,
            )
        except ApiException as exc:
            raise OrchestratorError(_api_message(exc), status=exc.status) from exc
        except TimeoutError as exc:
            raise OrchestratorError(f"Kubernetes API call timed out after {timeout_ms}ms") from exc
        except (Urllib3HTTPError, OSError) as exc:
            # Refused connections and read timeouts arrive as urllib3 MaxRetryError / ReadTimeoutError.
            raise OrchestratorError(f"Kubernetes API unreachable: {exc}") from exc

    def _crd_args(self, namespace: str) -> tuple[str, str, str, str]:
        return (
            self._settings.sandbox_crd_group,
            self._settings.sandbox_crd_version,
            namespace,
            self._settings.sandbox_crd_plural,
        )

    async def namespace_exists(self, namespace: str) -> bool:
        self._load_clients()
        try:
            await self._call(self._core_api.read_namespace, namespace)
        except OrchestratorError as exc:
            if exc.is_not_found:
                return False
            raise
        return True

    async def create_namespace(self, namespace: str, labels: dict[str, str]) -> bool:
        self._load_clients()
        body = {"metadata": {"name": namespace, "labels": labels}}
        try:
            await self._call(self._core_api.create_namespace, body)
        except OrchestratorError as exc:
            # A concurrent create of the same tenant namespace is not an error.
            if exc.is_conflict:
                return False
            raise
        logger.info("namespace_created namespace=%s", namespace)
        return True

    async def create_resource_quota(self, namespace: str, body: dict[str, Any]) -> None:
        self._load_clients()
        await self._call(self._core_api.create_namespaced_resource_quota, namespace, body)

    async def create_network_policy(self, namespace: str, body: dict[str, Any]) -> None:
        self._load_clients()
        await self._call(self._networking_api.create_namespaced_network_policy, namespace, body)

    async def create_sandbox(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        self._load_clients()
        return await self._call(
            self._custom_api.create_namespaced_custom_object, *self._crd_args(namespace), body
        )

    async def get_sandbox(self, namespace: str, name: str) -> dict[str, Any]:
        self._load_clients()
        return await self._call(
            self._custom_api.get_namespaced_custom_object, *self._crd_args(namespace), name
        )

    async def replace_sandbox(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        self._load_clients()
        return await self._call(
            self._custom_api.replace_namespaced_custom_object, *self._crd_args(namespace), name, body
        )

    async def delete_sandbox(self, namespace: str, name: str) -> None:
        self._load_clients()
        await self._call(
            self._custom_api.delete_namespaced_custom_object, *self._crd_args(namespace), name
        )

    async def list_sandboxes(self, namespace: str | None = None) -> list[dict[str, Any]]:
        self._load_clients()
        if namespace is None:
            response = await self._call(
                self._custom_api.list_cluster_custom_object,
                self._settings.sandbox_crd_group,
                self._settings.sandbox_crd_version,
                self._settings.sandbox_crd_plural,
            )
        else:
            response = await self._call(
                self._custom_api.list_namespaced_custom_object, *self._crd_args(namespace)
            )
        return list((response or {}).get("items") or [])


def _api_message(exc: Any) -> str:
    # Kubernetes Status bodies carry a human-readable message; fall back to the HTTP reason.
    body = getattr(exc, "body", None)
    if body:
        try:
            payload = json.loads(body)
            if isinstance(payload, dict) and payload.get("message"):
                return str(payload["message"])
        except (TypeError, ValueError):
            pass
    return f"Kubernetes API error {getattr(exc, 'status', '?')}: {getattr(exc, 'reason', 'unknown')}"
