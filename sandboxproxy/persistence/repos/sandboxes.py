from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.core.errors import AlreadyExistsError
from sandboxproxy.domain.models import Sandbox, User


async def create_sandbox(
    session: AsyncSession,
    *,
    user_id: str,
    name: str,
    namespace: str,
    k8s_resource_name: str,
    image: str | None,
) -> Sandbox:
    # Concurrent creates race here; the (user_id, name) constraint picks exactly one winner.
    sandbox = Sandbox(
        id=uuid4().hex,
        user_id=user_id,
        name=name,
        namespace=namespace,
        k8s_resource_name=k8s_resource_name,
        image=image,
    )
    session.add(sandbox)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise AlreadyExistsError(f"Sandbox '{name}' already exists") from exc
    await session.refresh(sandbox)
    return sandbox


async def get_sandbox_for_user(session: AsyncSession, user_id: str, name: str) -> Sandbox | None:
    # Exact match on the stored lowercase name; no case folding or prefix matching.
    result = await session.execute(
        select(Sandbox).where(Sandbox.user_id == user_id, Sandbox.name == name)
    )
    return result.scalar_one_or_none()


async def user_owns_sandbox(session: AsyncSession, user_id: str, name: str) -> bool:
    result = await session.execute(
        select(Sandbox.id).where(Sandbox.user_id == user_id, Sandbox.name == name).limit(1)
    )
    return result.first() is not None


async def list_sandboxes_for_user(session: AsyncSession, user_id: str) -> list[Sandbox]:
    result = await session.execute(
        select(Sandbox).where(Sandbox.user_id == user_id).order_by(Sandbox.created_at.desc(), Sandbox.id)
    )
    return list(result.scalars().all())


async def list_all_sandboxes(session: AsyncSession) -> list[tuple[Sandbox, str]]:
    # Include the owner handle for admin inventory and reconciliation reports.
    result = await session.execute(
        select(Sandbox, User.username)
        .join(User, Sandbox.user_id == User.id)
        .order_by(Sandbox.created_at.desc(), Sandbox.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def delete_sandbox_for_user(session: AsyncSession, user_id: str, name: str) -> bool:
    result = await session.execute(
        delete(Sandbox).where(Sandbox.user_id == user_id, Sandbox.name == name)
    )
    await session.commit()
    return (result.rowcount or 0) > 0
