from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone

from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.persistence.repos import api_keys as api_keys_repo
from sandboxproxy.persistence.repos import users as users_repo
from sandboxproxy.services.audit import STATUS_SUCCESS, record_event
from sandboxproxy.services.sandboxes import is_dns_label


def _build_parser() -> argparse.ArgumentParser:
    # Bootstrap path for the first user when no admin client is at hand.
    parser = argparse.ArgumentParser(description="Create a user (if absent) and issue an API key")
    parser.add_argument("--username", required=True, help="DNS-label handle, e.g. alice")
    parser.add_argument("--email", default=None, help="Optional contact address for a new user")
    parser.add_argument("--name", default=None, help="Key label shown in listings")
    parser.add_argument("--expires-days", type=int, default=None, help="Expire the key after N days")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    if not is_dns_label(args.username):
        raise ValueError(f"username {args.username!r} is not a DNS label")
    expires_at = None
    if args.expires_days is not None:
        if args.expires_days <= 0:
            raise ValueError("--expires-days must be positive")
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_days)

    async with SessionLocal() as session:
        user = await users_repo.get_user_by_username(session, args.username)
        created_user = user is None
        if user is None:
            user = await users_repo.create_user(session, username=args.username, email=args.email)
        api_key, issued = await api_keys_repo.create_api_key(
            session, user_id=user.id, name=args.name, expires_at=expires_at
        )

    await record_event(
        user_id=user.id,
        action="admin.api_key.create",
        status=STATUS_SUCCESS,
        resource_type="api_key",
        resource_id=api_key.id,
        details={
            "source": "create_api_key",
            "key_id": api_key.id,
            "key_prefix": api_key.key_prefix,
            "user_created": created_user,
        },
    )

    print("API key created:")
    print(f"  user: {user.username} ({user.id}){' [new]' if created_user else ''}")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    if expires_at is not None:
        print(f"  expires_at: {expires_at.isoformat()}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
