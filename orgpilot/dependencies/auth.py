"""FastAPI dependency that exposes the *current user*.

The concrete strategy (development bypass vs. JWT validation) is picked
from the runtime settings and cached per mode, so handlers stay
branch-free.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi import Request
from sqlalchemy.orm import Session

from orgpilot.auth.strategy import AuthStrategy
from orgpilot.auth.strategy import DevAuthStrategy
from orgpilot.auth.strategy import JWTAuthStrategy
from orgpilot.database import get_db

_strategy_cache: dict[tuple, AuthStrategy] = {}


def _get_strategy(request: Request) -> AuthStrategy:
    settings = request.app.state.runtime.settings
    if settings.auth_disabled:
        key = ("dev", settings.dev_user_email)
        if key not in _strategy_cache:
            _strategy_cache[key] = DevAuthStrategy(settings.dev_user_email)
    else:
        key = ("jwt", settings.jwt_secret)
        if key not in _strategy_cache:
            _strategy_cache[key] = JWTAuthStrategy(settings.jwt_secret)
    return _strategy_cache[key]


def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Return the authenticated *User* row or raise **401**."""

    return _get_strategy(request).get_current_user(request, db)


__all__ = ["get_current_user"]
