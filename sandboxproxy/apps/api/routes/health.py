from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from sandboxproxy.persistence.db import ping

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: str
    timestamp: str


@router.get("/health", response_model=HealthResponse)
async def health() -> JSONResponse:
    # Liveness plus a DB round trip; no authentication.
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        await ping()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_db_unreachable error=%s", exc)
        payload = HealthResponse(status="unhealthy", database="disconnected", timestamp=timestamp)
        return JSONResponse(content=payload.model_dump(), status_code=503)
    payload = HealthResponse(status="ok", database="connected", timestamp=timestamp)
    return JSONResponse(content=payload.model_dump(), status_code=200)
