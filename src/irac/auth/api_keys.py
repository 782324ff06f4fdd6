"""Service API key hashing and verification using argon2id."""

from __future__ import annotations

import secrets

import argon2

from irac.config import get_settings

KEY_PREFIX = "sk-irac-"

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,
)


def generate_api_key() -> tuple[str, str]:
    """
    Generate a new service API key.

    Returns:
        (full_key, argon2_hash).
        The full key is handed to the collaborating service once; only the
        hash goes into IRAC_SERVICE_API_KEY_HASHES.
    """
    full_key = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return full_key, hash_api_key(full_key)


def hash_api_key(full_key: str) -> str:
    return _hasher.hash(full_key)


def verify_api_key(full_key: str, stored_hash: str) -> bool:
    """Verify an API key against its stored argon2 hash."""
    try:
        return _hasher.verify(stored_hash, full_key)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def verify_service_key(full_key: str) -> bool:
    """True if the key matches any configured service key hash."""
    return any(verify_api_key(full_key, h) for h in get_settings().service_api_key_hashes)
