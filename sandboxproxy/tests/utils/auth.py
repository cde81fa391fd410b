from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sandboxproxy.core.config import get_settings
from sandboxproxy.domain.models import ApiKey, User
from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.services.auth.api_keys import generate_api_key


def bearer(raw_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {raw_key}"}


def admin_headers() -> dict[str, str]:
    return bearer(get_settings().admin_api_key or "")


async def create_test_user_and_key(
    username: str,
    *,
    email: str | None = None,
    user_active: bool = True,
    key_active: bool = True,
    key_expires_at: datetime | None = None,
    name: str = "test-key",
) -> tuple[str, dict[str, str], str, str]:
    # Provision a user + API key pair directly in the store.
    issued = generate_api_key()
    user_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(User(id=user_id, username=username, email=email, is_active=user_active))
        # Flush the user insert before the API key to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=issued.key_id,
                user_id=user_id,
                key_hash=issued.key_hash,
                key_prefix=issued.key_prefix,
                name=name,
                expires_at=key_expires_at,
                is_active=key_active,
            )
        )
        await session.commit()
    return issued.raw_key, bearer(issued.raw_key), user_id, issued.key_id
