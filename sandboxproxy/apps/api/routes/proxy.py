from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from sandboxproxy.apps.api.deps import Principal, get_sandbox_relay, require_sandbox_owner
from sandboxproxy.services.forwarding import SandboxRelay


router = APIRouter(tags=["proxy"])

_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/proxy/{name}/{suffix:path}", methods=_METHODS)
async def proxy(
    name: str,
    suffix: str,
    request: Request,
    principal: Principal = Depends(require_sandbox_owner),
    relay: SandboxRelay = Depends(get_sandbox_relay),
) -> Response:
    result = await relay.forward(
        user_id=principal.user_id,
        name=name,
        method=request.method,
        suffix=suffix,
        body=await request.body(),
        query=request.url.query,
        request_id=getattr(request.state, "request_id", None),
        request=request,
    )
    if result.body is None:
        return Response(status_code=result.status_code)
    return JSONResponse(content=result.body, status_code=result.status_code)
