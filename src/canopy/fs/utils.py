"""Name validation, token generation, and datetime helpers."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime

# Base58: no 0, O, I or l.
TOKEN_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
DEFAULT_TOKEN_LENGTH = 16

MAX_NAME_LENGTH = 255


def generate_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """Return a cryptographically random base58 token of *length* characters.

    16 characters carry ~93 bits of entropy.
    """
    if length < 8:
        raise ValueError(f"Token length too short: {length}")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def validate_name(name: str) -> tuple[bool, str]:
    """Validate a file or folder name.

    Returns:
        (is_valid, error_message) - error_message is empty if valid
    """
    if not name or not name.strip():
        return False, "Name must not be empty"

    if "\x00" in name:
        return False, "Name contains null bytes"

    for ch in name:
        code = ord(ch)
        if 0x01 <= code <= 0x1F:
            return False, f"Name contains control character: 0x{code:02x}"

    if "/" in name or "\\" in name:
        return False, "Name must not contain path separators"

    if name in (".", ".."):
        return False, f"Reserved name: {name}"

    if len(name) > MAX_NAME_LENGTH:
        return False, f"Name too long (max {MAX_NAME_LENGTH} characters)"

    return True, ""


def require_valid_name(name: str) -> str:
    """Return *name* unchanged or raise ``ValueError``."""
    valid, error = validate_name(name)
    if not valid:
        raise ValueError(error)
    return name


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def utcnow() -> datetime:
    return datetime.now(UTC)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when *expires_at* is set and not in the future."""
    exp = ensure_utc(expires_at)
    if exp is None:
        return False
    return exp <= (now or utcnow())


def dedupe(ids: list[str]) -> list[str]:
    """Drop duplicates while keeping first-seen order."""
    return list(dict.fromkeys(ids))
