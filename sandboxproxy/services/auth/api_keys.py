from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from uuid import uuid4

from sandboxproxy.core.config import get_settings


# 24 random bytes render to exactly 32 URL-safe base64 characters.
_RANDOM_BYTES = 24
_RANDOM_LENGTH = 32
_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9]+(_[A-Za-z0-9]+)*$")


def generate_secret(prefix: str | None = None) -> str:
    """Return ``<prefix>_<32 url-safe chars>`` from the OS CSPRNG."""
    label = prefix or get_settings().api_key_prefix
    if not _PREFIX_PATTERN.match(label):
        raise ValueError(f"Invalid API key prefix: {label!r}")
    random_part = secrets.token_urlsafe(_RANDOM_BYTES)[:_RANDOM_LENGTH]
    return f"{label}_{random_part}"


def hash_api_key(raw_key: str) -> str:
    # SHA-256 hex digest is the only persisted form of a key.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def display_prefix(raw_key: str, length: int | None = None) -> str:
    return raw_key[: length or get_settings().api_key_display_length]


def constant_time_equals(a: str, b: str) -> bool:
    # Compare secrets without leaking the position of the first mismatch.
    left = a.encode("utf-8")
    right = b.encode("utf-8")
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


@dataclass(frozen=True)
class IssuedKey:
    key_id: str
    raw_key: str
    key_prefix: str
    key_hash: str


def generate_api_key(*, prefix: str | None = None, key_id: str | None = None) -> IssuedKey:
    # Bundle the plaintext with its derived forms; only the plaintext leaves the process.
    raw_key = generate_secret(prefix)
    return IssuedKey(
        key_id=key_id or uuid4().hex,
        raw_key=raw_key,
        key_prefix=display_prefix(raw_key),
        key_hash=hash_api_key(raw_key),
    )
