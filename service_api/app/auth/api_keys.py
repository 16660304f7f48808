"""
API key format, hashing and generation.

Keys are presented as ``<key_id>.<secret>``: an 8 character public id and a
32 character secret. Only the SHA-256 hex digest of the secret is stored.
"""

import hashlib
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple

from shared.errors import APIError, ErrorCode

KEY_ID_LENGTH = 8
SECRET_LENGTH = 32


def parse_api_key(raw: str) -> Tuple[str, str]:
    """Split a presented key into ``(key_id, secret)``."""
    if "." not in raw:
        raise APIError(
            ErrorCode.API_KEY_INVALID_FORMAT,
            "API key must be in format: keyId.secret",
        )

    parts = raw.split(".")
    if len(parts) != 2:
        raise APIError(ErrorCode.API_KEY_INVALID_FORMAT, "Invalid API key format")

    key_id, secret = parts
    if len(key_id) != KEY_ID_LENGTH or len(secret) != SECRET_LENGTH:
        raise APIError(
            ErrorCode.API_KEY_INVALID_FORMAT,
            "Invalid API key format",
            details={"key_id_length": KEY_ID_LENGTH, "secret_length": SECRET_LENGTH},
        )
    return key_id, secret


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_api_key() -> Tuple[str, str, str]:
    """Return ``(full_key, key_id, secret_hash)`` for a new key."""
    key_id = secrets.token_hex(KEY_ID_LENGTH // 2)
    secret = secrets.token_hex(SECRET_LENGTH // 2)
    return f"{key_id}.{secret}", key_id, hash_secret(secret)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse Postgres/ISO timestamps, treating naive values as UTC."""
    if not value:
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expired(expires_at: Optional[str], now: Optional[datetime] = None) -> bool:
    expiry = parse_timestamp(expires_at)
    if expiry is None:
        return False
    return expiry < (now or datetime.now(timezone.utc))
