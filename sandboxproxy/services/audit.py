from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request

from sandboxproxy.domain.models import AuditEvent
from sandboxproxy.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_DENIED = "denied"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub secret-looking fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_details(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Client hints for audit rows; never includes credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_event(
    *,
    user_id: str | None,
    action: str,
    status: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request: Request | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Append an audit row in its own session.

    Never raises: a failed audit write is logged and swallowed so it cannot
    change the outcome of the request it describes.
    """
    request_ctx = get_request_context(request)
    payload = dict(details or {})
    if request_ctx["request_id"]:
        payload.setdefault("request_id", request_ctx["request_id"])
    try:
        event = AuditEvent(
            user_id=user_id,
            action=action,
            status=status,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            details=sanitize_details(payload) or None,
        )
        async with SessionLocal() as session:
            session.add(event)
            await session.commit()
    except Exception as exc:  # noqa: BLE001 - audit failures are non-fatal
        logger.warning(
            "audit_event_write_failed action=%s status=%s request_id=%s",
            action,
            status,
            request_ctx["request_id"],
            exc_info=exc,
        )
