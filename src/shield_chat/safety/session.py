"""Anti-forgery token and honeypot helpers."""

from __future__ import annotations

import hmac
import secrets

ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-"
CSRF_TOKEN_LENGTH = 24
HONEYPOT_FIELD = "hp"


def random_id(length: int = 22) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def csrf_token() -> str:
    """Create a session-scoped anti-forgery token."""
    return random_id(CSRF_TOKEN_LENGTH)


def tokens_match(expected: str, presented: str | None) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def honeypot_tripped(value: str | None) -> bool:
    """Humans never fill the hidden field; automated submitters often do."""
    return bool(value and value.strip())
