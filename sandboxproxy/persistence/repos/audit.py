from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    action: str | None = None,
    status: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    stmt = select(AuditEvent)
    if user_id:
        stmt = stmt.where(AuditEvent.user_id == user_id)
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if status:
        stmt = stmt.where(AuditEvent.status == status)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def has_event(
    session: AsyncSession,
    *,
    user_id: str,
    action: str,
    status: str,
    resource_id: str,
) -> bool:
    result = await session.execute(
        select(AuditEvent.id)
        .where(
            AuditEvent.user_id == user_id,
            AuditEvent.action == action,
            AuditEvent.status == status,
            AuditEvent.resource_id == resource_id,
        )
        .limit(1)
    )
    return result.first() is not None
