from __future__ import annotations

import copy
from typing import Any

from sandboxproxy.core.errors import OrchestratorError


class FakeOrchestrator:
    """In-memory orchestrator for tests and local development.

    Created sandboxes report a ready service at ``<name>.<namespace>.svc.cluster.local``
    unless ``auto_ready`` is False; tests can reshape status with ``set_status``.
    """

    def __init__(self, *, auto_ready: bool = True) -> None:
        self.auto_ready = auto_ready
        self.namespaces: dict[str, dict[str, str]] = {}
        self.quotas: dict[str, dict[str, Any]] = {}
        self.network_policies: dict[str, dict[str, Any]] = {}
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        # Operation name -> error raised on the next matching call.
        self.failures: dict[str, OrchestratorError] = {}

    def fail_next(self, operation: str, error: OrchestratorError | None = None) -> None:
        self.failures[operation] = error or OrchestratorError(f"{operation} failed", status=500)

    def _maybe_fail(self, operation: str) -> None:
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    async def namespace_exists(self, namespace: str) -> bool:
        self._maybe_fail("namespace_exists")
        return namespace in self.namespaces

    async def create_namespace(self, namespace: str, labels: dict[str, str]) -> bool:
        self._maybe_fail("create_namespace")
        if namespace in self.namespaces:
            return False
        self.namespaces[namespace] = dict(labels)
        return True

    async def create_resource_quota(self, namespace: str, body: dict[str, Any]) -> None:
        self._maybe_fail("create_resource_quota")
        self.quotas[namespace] = copy.deepcopy(body)

    async def create_network_policy(self, namespace: str, body: dict[str, Any]) -> None:
        self._maybe_fail("create_network_policy")
        self.network_policies[namespace] = copy.deepcopy(body)

    async def create_sandbox(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("create_sandbox")
        name = body["metadata"]["name"]
        if (namespace, name) in self.objects:
            raise OrchestratorError(f'sandboxes "{name}" already exists', status=409)
        obj = copy.deepcopy(body)
        obj.setdefault("metadata", {})["namespace"] = namespace
        if self.auto_ready:
            obj["status"] = {
                "serviceFQDN": f"{name}.{namespace}.svc.cluster.local",
                "service": name,
                "replicas": 1,
                "conditions": [{"type": "Ready", "status": "True", "reason": "DependenciesReady"}],
            }
        else:
            obj["status"] = {}
        self.objects[(namespace, name)] = obj
        return copy.deepcopy(obj)

    async def get_sandbox(self, namespace: str, name: str) -> dict[str, Any]:
        self._maybe_fail("get_sandbox")
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise OrchestratorError(f'sandboxes "{name}" not found', status=404)
        return copy.deepcopy(obj)

    async def replace_sandbox(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("replace_sandbox")
        if (namespace, name) not in self.objects:
            raise OrchestratorError(f'sandboxes "{name}" not found', status=404)
        self.objects[(namespace, name)] = copy.deepcopy(body)
        return copy.deepcopy(body)

    async def delete_sandbox(self, namespace: str, name: str) -> None:
        self._maybe_fail("delete_sandbox")
        if self.objects.pop((namespace, name), None) is None:
            raise OrchestratorError(f'sandboxes "{name}" not found', status=404)

    async def list_sandboxes(self, namespace: str | None = None) -> list[dict[str, Any]]:
        self._maybe_fail("list_sandboxes")
        return [
            copy.deepcopy(obj)
            for (obj_namespace, _), obj in sorted(self.objects.items())
            if namespace is None or obj_namespace == namespace
        ]

    def set_status(self, namespace: str, name: str, status: dict[str, Any]) -> None:
        self.objects[(namespace, name)]["status"] = copy.deepcopy(status)
