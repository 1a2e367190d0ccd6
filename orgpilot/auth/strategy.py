"""Authentication strategies for the job and org endpoints.

**DevAuthStrategy** resolves a fixed development user (``DEV_USER_EMAIL``)
and is used when ``AUTH_DISABLED`` is set.  **JWTAuthStrategy** validates
HS256 bearer tokens whose ``sub`` claim is the user id.
"""

from __future__ import annotations

from abc import ABC
from abc import abstractmethod
from typing import Any

from fastapi import HTTPException
from fastapi import Request
from fastapi import status
from jose import JWTError
from jose import jwt
from sqlalchemy.orm import Session

from orgpilot.crud import crud


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthStrategy(ABC):
    """Pluggable authentication backend (strategy pattern)."""

    @abstractmethod
    def get_current_user(self, request: Request, db: Session):  # noqa: D401
        """Return the authenticated user or raise **401**."""


class DevAuthStrategy(AuthStrategy):
    """Bypass token checks and act as the configured development user."""

    def __init__(self, dev_email: str):
        self.dev_email = dev_email

    def get_current_user(self, request: Request, db: Session):  # noqa: D401
        user = crud.get_user_by_email(db, self.dev_email)
        if user is None:
            raise _unauthorized(f"Development user {self.dev_email} does not exist")
        return user


class JWTAuthStrategy(AuthStrategy):
    """Production strategy that validates HS256 tokens."""

    def __init__(self, secret: str):
        self._secret = secret

    def _decode(self, token: str) -> dict[str, Any]:  # noqa: D401
        return jwt.decode(token, self._secret, algorithms=["HS256"])

    def get_current_user(self, request: Request, db: Session):  # noqa: D401
        auth_header: str | None = request.headers.get("Authorization")
        if not auth_header or not auth_header.lower().startswith("bearer "):
            raise _unauthorized("Missing bearer token")

        token = auth_header[7:].strip()
        if not token:
            raise _unauthorized("Missing bearer token")

        try:
            payload = self._decode(token)
        except JWTError:
            raise _unauthorized("Invalid or expired token")

        try:
            user_id_int = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise _unauthorized("Invalid token subject")

        user = crud.get_user(db, user_id_int)
        if user is None:
            raise _unauthorized("User not found")
        return user


__all__ = [
    "AuthStrategy",
    "DevAuthStrategy",
    "JWTAuthStrategy",
]
