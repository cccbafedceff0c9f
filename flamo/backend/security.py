"""Random public identifiers for shareable presence sessions."""

from __future__ import annotations

import secrets
import string


SESSION_CODE_LENGTH = 10
SESSION_CODE_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_session_code(length: int = SESSION_CODE_LENGTH) -> str:
    """Generate a URL-safe session code (64^10 space; collisions are retried by the caller)."""
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def is_session_code(value: str) -> bool:
    return len(value) == SESSION_CODE_LENGTH and all(char in SESSION_CODE_ALPHABET for char in value)
