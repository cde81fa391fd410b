from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from sandboxproxy.apps.api.deps import (
    Principal,
    get_current_principal,
    get_sandbox_service,
    require_sandbox_owner,
)
from sandboxproxy.services.sandboxes import SandboxService


router = APIRouter(prefix="/api/sandboxes", tags=["sandboxes"])


class CreateSandboxRequest(BaseModel):
    # Name is validated by the lifecycle manager so the failure is audited with its step.
    name: str | None = Field(default=None, max_length=253)
    image: str | None = Field(default=None, min_length=1)


@router.get("")
async def list_sandboxes(
    principal: Principal = Depends(get_current_principal),
    service: SandboxService = Depends(get_sandbox_service),
) -> dict[str, Any]:
    sandboxes = await service.list_for_user(user_id=principal.user_id)
    return {"count": len(sandboxes), "sandboxes": sandboxes}


@router.post("", status_code=201)
async def create_sandbox(
    payload: CreateSandboxRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: SandboxService = Depends(get_sandbox_service),
) -> dict[str, Any]:
    sandbox = await service.create(
        user_id=principal.user_id,
        username=principal.username,
        name=payload.name,
        image=payload.image,
        request=request,
    )
    return {
        "success": True,
        "message": f"Sandbox '{sandbox['name']}' created successfully",
        "sandbox": sandbox,
    }


@router.get("/{name}")
async def get_sandbox(
    name: str,
    principal: Principal = Depends(require_sandbox_owner),
    service: SandboxService = Depends(get_sandbox_service),
) -> dict[str, Any]:
    return await service.get(user_id=principal.user_id, name=name)


@router.delete("/{name}")
async def delete_sandbox(
    name: str,
    request: Request,
    principal: Principal = Depends(require_sandbox_owner),
    service: SandboxService = Depends(get_sandbox_service),
) -> dict[str, Any]:
    await service.delete(user_id=principal.user_id, name=name, request=request)
    return {"success": True, "message": f"Sandbox '{name}' deleted successfully"}


@router.post("/{name}/pause")
async def pause_sandbox(
    name: str,
    request: Request,
    principal: Principal = Depends(require_sandbox_owner),
    service: SandboxService = Depends(get_sandbox_service),
) -> dict[str, Any]:
    replicas = await service.pause(user_id=principal.user_id, name=name, request=request)
    return {"success": True, "message": f"Sandbox '{name}' paused successfully", "replicas": replicas}


@router.post("/{name}/resume")
async def resume_sandbox(
    name: str,
    request: Request,
    principal: Principal = Depends(require_sandbox_owner),
    service: SandboxService = Depends(get_sandbox_service),
) -> dict[str, Any]:
    replicas = await service.resume(user_id=principal.user_id, name=name, request=request)
    return {"success": True, "message": f"Sandbox '{name}' resumed successfully", "replicas": replicas}
