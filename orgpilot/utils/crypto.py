"""*Fernet* encryption helper for org tokens and client secrets.

The key comes from ``FERNET_SECRET``.  It is resolved on first use rather
than at import so test-suites can inject a generated key beforehand.
"""

from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken

from orgpilot.config import get_settings


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    try:
        return Fernet(secret.encode())
    except ValueError as exc:
        raise RuntimeError("FERNET_SECRET is not a valid url-safe base64 32-byte key") from exc


def _fernet() -> Fernet:
    secret = get_settings().fernet_secret
    if not secret:
        raise RuntimeError("FERNET_SECRET environment variable must be set.")
    return _fernet_for(secret)


def encrypt(text: str) -> str:  # noqa: D401
    """Encrypt *text* and return url-safe base64 ciphertext."""

    return _fernet().encrypt(text.encode()).decode()


def decrypt(token: str) -> str:  # noqa: D401
    """Decrypt *token* back to UTF-8 string."""

    try:
        return _fernet().decrypt(token.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("decryption failed: invalid key or ciphertext") from exc


__all__ = [
    "encrypt",
    "decrypt",
]
