from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.core.errors import AlreadyExistsError
from sandboxproxy.domain.models import User


async def create_user(session: AsyncSession, *, username: str, email: str | None) -> User:
    # The unique index on username is the final arbiter for concurrent creates.
    user = User(id=uuid4().hex, username=username, email=email, is_active=True)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise AlreadyExistsError(f"User with username '{username}' already exists") from exc
    await session.refresh(user)
    return user


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_username(session: AsyncSession, username: str) -> User | None:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def list_users(session: AsyncSession, *, active_only: bool = False) -> list[User]:
    stmt = select(User)
    if active_only:
        stmt = stmt.where(User.is_active.is_(True))
    result = await session.execute(stmt.order_by(User.created_at.desc(), User.id))
    return list(result.scalars().all())


async def update_user(
    session: AsyncSession,
    user_id: str,
    *,
    email: str | None = None,
    is_active: bool | None = None,
) -> User | None:
    user = await get_user(session, user_id)
    if user is None:
        return None
    if email is not None:
        user.email = email
    if is_active is not None:
        user.is_active = is_active
    await session.commit()
    await session.refresh(user)
    return user


async def delete_user(session: AsyncSession, user_id: str) -> bool:
    # API keys and sandbox records go with the user via ON DELETE CASCADE.
    result = await session.execute(delete(User).where(User.id == user_id))
    await session.commit()
    return (result.rowcount or 0) > 0
