from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


STATE_PENDING = "pending"
STATE_READY = "ready"
STATE_PAUSED = "paused"
STATE_ERROR = "error"


class Orchestrator(Protocol):
    """Namespaced sandbox objects plus per-tenant namespace provisioning."""

    async def namespace_exists(self, namespace: str) -> bool:
        ...

    async def create_namespace(self, namespace: str, labels: dict[str, str]) -> bool:
        """Create the namespace; return False when it already existed."""
        ...

    async def create_resource_quota(self, namespace: str, body: dict[str, Any]) -> None:
        ...

    async def create_network_policy(self, namespace: str, body: dict[str, Any]) -> None:
        ...

    async def create_sandbox(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        ...

    async def get_sandbox(self, namespace: str, name: str) -> dict[str, Any]:
        ...

    async def replace_sandbox(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        ...

    async def delete_sandbox(self, namespace: str, name: str) -> None:
        ...

    async def list_sandboxes(self, namespace: str | None = None) -> list[dict[str, Any]]:
        """List sandbox objects in one namespace, or cluster-wide when None."""
        ...


def _ready_condition(status: dict[str, Any]) -> dict[str, Any] | None:
    for condition in status.get("conditions") or []:
        if isinstance(condition, dict) and condition.get("type") == "Ready":
            return condition
    return None


@dataclass(frozen=True)
class SandboxStatus:
    """Observed runtime state of a sandbox object. Never written back."""

    service_fqdn: str | None
    service: str | None
    replicas: int
    desired_replicas: int | None
    ready: bool
    ready_reason: str | None
    ready_message: str | None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "SandboxStatus":
        status = obj.get("status") or {}
        spec = obj.get("spec") or {}
        condition = _ready_condition(status)
        desired = spec.get("replicas")
        return cls(
            service_fqdn=status.get("serviceFQDN") or None,
            service=status.get("service") or None,
            replicas=int(status.get("replicas") or 0),
            desired_replicas=int(desired) if desired is not None else None,
            ready=bool(condition and str(condition.get("status")) == "True"),
            ready_reason=condition.get("reason") if condition else None,
            ready_message=condition.get("message") if condition else None,
        )

    @property
    def state(self) -> str:
        # Paused tracks desired replicas; Ready tracks convergence of whatever is desired.
        if self.desired_replicas == 0:
            return STATE_PAUSED
        if self.ready:
            return STATE_READY
        return STATE_PENDING

    def as_view(self) -> dict[str, Any]:
        return {
            "serviceFQDN": self.service_fqdn or STATE_PENDING,
            "service": self.service or STATE_PENDING,
            "replicas": self.replicas,
            "ready": self.ready,
            "readyReason": self.ready_reason,
            "readyMessage": self.ready_message,
            "state": self.state,
        }


def degraded_view() -> dict[str, Any]:
    # Shown when the live lookup failed; ownership still comes from the database.
    return {
        "serviceFQDN": STATE_ERROR,
        "service": STATE_ERROR,
        "replicas": 0,
        "ready": False,
        "readyReason": None,
        "readyMessage": None,
        "state": STATE_ERROR,
    }
