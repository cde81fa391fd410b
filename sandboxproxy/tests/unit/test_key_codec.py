from __future__ import annotations

import re

import pytest

from sandboxproxy.services.auth.api_keys import (
    constant_time_equals,
    display_prefix,
    generate_api_key,
    generate_secret,
    hash_api_key,
)


def test_generated_secret_has_label_and_fixed_random_part() -> None:
    secret = generate_secret("sk_live")
    assert secret.startswith("sk_live_")
    random_part = secret[len("sk_live_"):]
    assert len(random_part) == 32
    assert re.fullmatch(r"[A-Za-z0-9_-]{32}", random_part)


def test_generated_secrets_do_not_repeat() -> None:
    assert len({generate_secret("sk_test") for _ in range(50)}) == 50


def test_invalid_prefix_is_rejected() -> None:
    with pytest.raises(ValueError):
        generate_secret("bad prefix")


def test_digest_is_deterministic_sha256_hex() -> None:
    secret = generate_secret()
    digest = hash_api_key(secret)
    assert digest == hash_api_key(secret)
    assert re.fullmatch(r"[0-9a-f]{64}", digest)
    assert digest != hash_api_key(secret + "x")


def test_constant_time_equals() -> None:
    secret = generate_secret()
    assert constant_time_equals(secret, secret)
    assert not constant_time_equals(secret, secret[:-1] + ("A" if secret[-1] != "A" else "B"))
    # Different lengths short-circuit to False.
    assert not constant_time_equals(secret, secret + "x")
    assert not constant_time_equals("", secret)


def test_issued_key_round_trips_to_stored_digest() -> None:
    issued = generate_api_key()
    assert hash_api_key(issued.raw_key) == issued.key_hash
    assert issued.key_prefix == display_prefix(issued.raw_key)
    assert len(issued.key_prefix) == 12
    assert issued.raw_key.startswith(issued.key_prefix)
