from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sandboxproxy.domain.models import ApiKey, User
from sandboxproxy.services.auth.api_keys import IssuedKey, generate_api_key


async def create_api_key(
    session: AsyncSession,
    *,
    user_id: str,
    name: str | None = None,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, IssuedKey]:
    # Persist the digest and display prefix; the caller returns the plaintext once.
    issued = generate_api_key()
    api_key = ApiKey(
        id=issued.key_id,
        user_id=user_id,
        key_hash=issued.key_hash,
        key_prefix=issued.key_prefix,
        name=name,
        expires_at=expires_at,
        is_active=True,
    )
    session.add(api_key)
    await session.commit()
    await session.refresh(api_key)
    return api_key, issued


async def find_by_hash(session: AsyncSession, key_hash: str) -> tuple[ApiKey, User] | None:
    # Join the owner so one round trip decides key and user activity.
    result = await session.execute(
        select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def get_api_key(session: AsyncSession, key_id: str) -> ApiKey | None:
    result = await session.execute(select(ApiKey).where(ApiKey.id == key_id))
    return result.scalar_one_or_none()


async def list_api_keys_for_user(session: AsyncSession, user_id: str) -> list[ApiKey]:
    result = await session.execute(
        select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.created_at.desc(), ApiKey.id)
    )
    return list(result.scalars().all())


async def revoke_api_key(session: AsyncSession, key_id: str) -> bool:
    result = await session.execute(update(ApiKey).where(ApiKey.id == key_id).values(is_active=False))
    await session.commit()
    return (result.rowcount or 0) > 0


async def purge_api_key(session: AsyncSession, key_id: str) -> bool:
    result = await session.execute(delete(ApiKey).where(ApiKey.id == key_id))
    await session.commit()
    return (result.rowcount or 0) > 0


async def touch_last_used(session: AsyncSession, key_id: str) -> None:
    await session.execute(update(ApiKey).where(ApiKey.id == key_id).values(last_used_at=func.now()))
    await session.commit()
