from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from sandboxproxy.core.config import Settings, get_settings
from sandboxproxy.core.errors import (
    AlreadyExistsError,
    CollaboratorError,
    GatewayError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    OrchestratorError,
)
from sandboxproxy.domain.models import Sandbox
from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.persistence.repos import sandboxes as sandboxes_repo
from sandboxproxy.providers.orchestrator.base import Orchestrator, SandboxStatus, degraded_view
from sandboxproxy.providers.storage.base import ObjectStore
from sandboxproxy.services.audit import STATUS_FAILED, STATUS_SUCCESS, record_event


logger = logging.getLogger(__name__)

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DNS_LABEL_MAX_LENGTH = 63
MANAGED_BY = "sandbox-proxy"

# Ports exposed by the sandbox runtime image; the public API port comes from settings.
RUNTIME_PORTS: tuple[tuple[str, int], ...] = (
    ("vnc", 5900),
    ("auth-backend", 8081),
    ("websocket-proxy", 6080),
    ("gem-server", 8088),
    ("mcp-hub", 8079),
    ("sandbox-srv", 8091),
    ("jupyter-lab", 8888),
    ("code-server", 8200),
    ("mcp-browser", 8100),
    ("tinyproxy", 8118),
    ("mcp-markitdown", 8101),
    ("mcp-devtools", 8102),
    ("browser-debug", 9222),
)
_STORAGE_VOLUME = "gcs-storage"
_HOME_VOLUME = "sandbox-home"
_HOME_MOUNT_PATH = "/home/gem"

SessionFactory = Callable[[], AsyncSession]


def is_dns_label(value: str | None) -> bool:
    return bool(value) and len(value) <= DNS_LABEL_MAX_LENGTH and DNS_LABEL_RE.match(value) is not None


def validate_sandbox_name(name: str | None) -> str:
    if not name:
        raise InvalidArgumentError("name is required")
    if not is_dns_label(name):
        raise InvalidArgumentError(
            "name must be a DNS label: lowercase letters, digits and '-', "
            f"starting and ending with an alphanumeric, at most {DNS_LABEL_MAX_LENGTH} characters"
        )
    return name


def tenant_namespace(username: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return f"{settings.tenant_namespace_prefix}{username}"


def storage_path(username: str, name: str) -> str:
    return f"{username}/{name}"


def build_resource_quota(settings: Settings) -> dict[str, Any]:
    sandbox_count_key = f"count/{settings.sandbox_crd_plural}.{settings.sandbox_crd_group}"
    return {
        "metadata": {"name": "user-quota"},
        "spec": {
            "hard": {
                "requests.cpu": settings.quota_requests_cpu,
                "requests.memory": settings.quota_requests_memory,
                "limits.cpu": settings.quota_limits_cpu,
                "limits.memory": settings.quota_limits_memory,
                "persistentvolumeclaims": settings.quota_pvc_count,
                sandbox_count_key: settings.quota_sandbox_count,
            }
        },
    }


def build_network_policy(settings: Settings) -> dict[str, Any]:
    # Admit ingress from the gateway namespace and from pods in the same tenant namespace only.
    return {
        "metadata": {"name": "allow-from-default"},
        "spec": {
            "podSelector": {},
            "policyTypes": ["Ingress"],
            "ingress": [
                {
                    "from": [
                        {
                            "namespaceSelector": {
                                "matchLabels": {
                                    "kubernetes.io/metadata.name": settings.gateway_namespace
                                }
                            }
                        },
                        {"podSelector": {}},
                    ]
                }
            ],
        },
    }


def build_sandbox_descriptor(
    *,
    name: str,
    username: str,
    image: str,
    settings: Settings,
) -> dict[str, Any]:
    """Render the Sandbox custom object submitted to the tenant namespace.

    The storage volume mounts only ``<username>/<name>`` from the bucket, which
    must already exist as a folder placeholder.
    """
    ports = [{"containerPort": settings.sandbox_runtime_port, "name": "public"}]
    ports.extend({"containerPort": port, "name": port_name} for port_name, port in RUNTIME_PORTS)
    env = [
        {"name": "GOOGLE_GENAI_USE_VERTEXAI", "value": "true"},
        {"name": "GOOGLE_CLOUD_PROJECT", "value": settings.google_cloud_project or ""},
        {"name": "GOOGLE_CLOUD_LOCATION", "value": settings.google_cloud_location},
    ]
    mount_options = (
        f"only-dir={storage_path(username, name)},file-mode=0666,dir-mode=0777,implicit-dirs"
    )
    return {
        "apiVersion": f"{settings.sandbox_crd_group}/{settings.sandbox_crd_version}",
        "kind": "Sandbox",
        "metadata": {
            "name": name,
            "labels": {"user": username, "managed-by": MANAGED_BY},
        },
        "spec": {
            "podTemplate": {
                "metadata": {
                    "labels": {"sandbox": name, "managed-by": MANAGED_BY},
                    "annotations": {"gke-gcsfuse/volumes": "true"},
                },
                "spec": {
                    "serviceAccountName": settings.sandbox_service_account,
                    "containers": [
                        {
                            "name": "sandbox-runtime",
                            "image": image,
                            "imagePullPolicy": "IfNotPresent",
                            "ports": ports,
                            "env": env,
                            "volumeMounts": [
                                {"name": _STORAGE_VOLUME, "mountPath": "/sandbox"},
                                {"name": _HOME_VOLUME, "mountPath": _HOME_MOUNT_PATH},
                            ],
                        }
                    ],
                    "volumes": [
                        {
                            "name": _STORAGE_VOLUME,
                            "csi": {
                                "driver": "gcsfuse.csi.storage.gke.io",
                                "volumeAttributes": {
                                    "bucketName": settings.gcs_bucket_name,
                                    "mountOptions": mount_options,
                                },
                            },
                        },
                        {"name": _HOME_VOLUME, "emptyDir": {}},
                    ],
                },
            }
        },
    }


def _created_at(sandbox: Sandbox) -> str | None:
    return sandbox.created_at.isoformat() if sandbox.created_at else None


class SandboxService:
    """Keeps ownership records and orchestrator objects in step.

    Every step that touches the database opens its own short session so no
    pool connection is held across an orchestrator or object store call.
    """

    def __init__(
        self,
        *,
        orchestrator: Orchestrator,
        object_store: ObjectStore,
        session_factory: SessionFactory = SessionLocal,
        settings: Settings | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._object_store = object_store
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def _load(self, user_id: str, name: str) -> Sandbox:
        async with self._session_factory() as session:
            sandbox = await sandboxes_repo.get_sandbox_for_user(session, user_id, name)
        if sandbox is None:
            raise NotFoundError("Sandbox not found")
        return sandbox

    async def _ensure_namespace(self, namespace: str, username: str) -> None:
        if await self._orchestrator.namespace_exists(namespace):
            return
        created = await self._orchestrator.create_namespace(
            namespace, {"user": username, "managed-by": MANAGED_BY}
        )
        if not created:
            return
        # Quota and policy only follow a fresh namespace; failures leave a usable namespace behind.
        try:
            await self._orchestrator.create_resource_quota(namespace, build_resource_quota(self._settings))
            logger.info("namespace_quota_created namespace=%s", namespace)
        except OrchestratorError as exc:
            logger.warning("namespace_quota_failed namespace=%s error=%s", namespace, exc)
        try:
            await self._orchestrator.create_network_policy(namespace, build_network_policy(self._settings))
            logger.info("namespace_policy_created namespace=%s", namespace)
        except OrchestratorError as exc:
            logger.warning("namespace_policy_failed namespace=%s error=%s", namespace, exc)

    async def create(
        self,
        *,
        user_id: str,
        username: str,
        name: str | None,
        image: str | None = None,
        request: Request | None = None,
    ) -> dict[str, Any]:
        step = "validate"
        namespace: str | None = None
        sandbox_image = image or self._settings.default_sandbox_image
        try:
            name = validate_sandbox_name(name)

            step = "check_existing"
            try:
                async with self._session_factory() as session:
                    existing = await sandboxes_repo.get_sandbox_for_user(session, user_id, name)
            except SQLAlchemyError as exc:
                raise InternalError(f"Failed to look up existing sandboxes: {exc}") from exc
            if existing is not None:
                raise AlreadyExistsError(f"Sandbox '{name}' already exists")

            step = "ensure_namespace"
            namespace = tenant_namespace(username, self._settings)
            await self._ensure_namespace(namespace, username)

            step = "ensure_storage"
            await self._object_store.ensure_folder(storage_path(username, name))

            step = "create_object"
            descriptor = build_sandbox_descriptor(
                name=name, username=username, image=sandbox_image, settings=self._settings
            )
            try:
                await self._orchestrator.create_sandbox(namespace, descriptor)
            except OrchestratorError as exc:
                if exc.is_conflict:
                    raise AlreadyExistsError(f"Sandbox '{name}' already exists") from exc
                raise

            step = "persist"
            try:
                async with self._session_factory() as session:
                    sandbox = await sandboxes_repo.create_sandbox(
                        session,
                        user_id=user_id,
                        name=name,
                        namespace=namespace,
                        k8s_resource_name=name,
                        image=sandbox_image,
                    )
            except (AlreadyExistsError, SQLAlchemyError) as exc:
                # The orchestrator object now exists without an owner record; reconciliation reports it.
                logger.error(
                    "sandbox_persist_failed namespace=%s name=%s orphaned=true error=%s",
                    namespace,
                    name,
                    exc,
                )
                if isinstance(exc, SQLAlchemyError):
                    raise InternalError(f"Failed to record sandbox ownership: {exc}") from exc
                raise
        except (GatewayError, CollaboratorError) as exc:
            error = exc if isinstance(exc, GatewayError) else InternalError(str(exc))
            await record_event(
                user_id=user_id,
                action="sandbox.create",
                status=STATUS_FAILED,
                resource_type="sandbox",
                resource_id=name if name else None,
                request=request,
                details={"step": step, "error": error.message, "namespace": namespace},
            )
            if error is exc:
                raise
            logger.warning("sandbox_create_failed step=%s name=%s error=%s", step, name, exc)
            raise error from exc

        await record_event(
            user_id=user_id,
            action="sandbox.create",
            status=STATUS_SUCCESS,
            resource_type="sandbox",
            resource_id=name,
            request=request,
            details={"name": name, "namespace": namespace, "image": sandbox_image},
        )
        logger.info("sandbox_created user_id=%s namespace=%s name=%s", user_id, namespace, name)
        return {
            "name": sandbox.name,
            "namespace": sandbox.namespace,
            "image": sandbox.image,
            "createdAt": _created_at(sandbox),
        }

    async def _live_view(self, sandbox: Sandbox) -> dict[str, Any]:
        try:
            obj = await self._orchestrator.get_sandbox(sandbox.namespace, sandbox.k8s_resource_name)
        except CollaboratorError as exc:
            logger.warning(
                "sandbox_status_unavailable namespace=%s name=%s error=%s",
                sandbox.namespace,
                sandbox.k8s_resource_name,
                exc,
            )
            return degraded_view()
        return SandboxStatus.from_object(obj).as_view()

    async def list_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            records = await sandboxes_repo.list_sandboxes_for_user(session, user_id)
        views = await asyncio.gather(*(self._live_view(record) for record in records))
        return [
            {
                "name": record.name,
                "namespace": record.namespace,
                **view,
                "createdAt": _created_at(record),
            }
            for record, view in zip(records, views)
        ]

    async def get(self, *, user_id: str, name: str) -> dict[str, Any]:
        sandbox = await self._load(user_id, name)
        try:
            obj = await self._orchestrator.get_sandbox(sandbox.namespace, sandbox.k8s_resource_name)
        except OrchestratorError as exc:
            raise InternalError(str(exc)) from exc
        return {
            "name": sandbox.name,
            "namespace": sandbox.namespace,
            "image": sandbox.image,
            **SandboxStatus.from_object(obj).as_view(),
            "createdAt": _created_at(sandbox),
        }

    async def delete(self, *, user_id: str, name: str, request: Request | None = None) -> None:
        sandbox = await self._load(user_id, name)
        try:
            await self._orchestrator.delete_sandbox(sandbox.namespace, sandbox.k8s_resource_name)
        except OrchestratorError as exc:
            if not exc.is_not_found:
                await record_event(
                    user_id=user_id,
                    action="sandbox.delete",
                    status=STATUS_FAILED,
                    resource_type="sandbox",
                    resource_id=name,
                    request=request,
                    details={"step": "delete_object", "error": str(exc)},
                )
                raise InternalError(str(exc)) from exc
            logger.info(
                "sandbox_object_already_gone namespace=%s name=%s",
                sandbox.namespace,
                sandbox.k8s_resource_name,
            )

        try:
            async with self._session_factory() as session:
                await sandboxes_repo.delete_sandbox_for_user(session, user_id, name)
        except SQLAlchemyError as exc:
            # The orchestrator object is gone but the owner record stays; reconciliation reports it.
            logger.error(
                "sandbox_record_delete_failed namespace=%s name=%s leaked=true error=%s",
                sandbox.namespace,
                name,
                exc,
            )
            await record_event(
                user_id=user_id,
                action="sandbox.delete",
                status=STATUS_FAILED,
                resource_type="sandbox",
                resource_id=name,
                request=request,
                details={"step": "delete_record", "error": str(exc), "namespace": sandbox.namespace},
            )
            raise InternalError(f"Failed to remove sandbox record: {exc}") from exc
        await record_event(
            user_id=user_id,
            action="sandbox.delete",
            status=STATUS_SUCCESS,
            resource_type="sandbox",
            resource_id=name,
            request=request,
            details={"namespace": sandbox.namespace},
        )
        logger.info("sandbox_deleted user_id=%s namespace=%s name=%s", user_id, sandbox.namespace, name)

    async def pause(self, *, user_id: str, name: str, request: Request | None = None) -> int:
        return await self._set_replicas(user_id, name, 0, action="sandbox.pause", request=request)

    async def resume(self, *, user_id: str, name: str, request: Request | None = None) -> int:
        return await self._set_replicas(user_id, name, 1, action="sandbox.resume", request=request)

    async def _set_replicas(
        self,
        user_id: str,
        name: str,
        replicas: int,
        *,
        action: str,
        request: Request | None,
    ) -> int:
        sandbox = await self._load(user_id, name)
        # Read-modify-write of the whole object: only spec.replicas changes, the rest is resubmitted as read.
        try:
            obj = await self._orchestrator.get_sandbox(sandbox.namespace, sandbox.k8s_resource_name)
            obj.setdefault("spec", {})["replicas"] = replicas
            await self._orchestrator.replace_sandbox(sandbox.namespace, sandbox.k8s_resource_name, obj)
        except OrchestratorError as exc:
            await record_event(
                user_id=user_id,
                action=action,
                status=STATUS_FAILED,
                resource_type="sandbox",
                resource_id=name,
                request=request,
                details={"replicas": replicas, "error": str(exc)},
            )
            raise InternalError(str(exc)) from exc

        await record_event(
            user_id=user_id,
            action=action,
            status=STATUS_SUCCESS,
            resource_type="sandbox",
            resource_id=name,
            request=request,
            details={"replicas": replicas},
        )
        logger.info("sandbox_replicas_set namespace=%s name=%s replicas=%s", sandbox.namespace, name, replicas)
        return replicas
