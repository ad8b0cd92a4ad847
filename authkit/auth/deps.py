from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from authkit.auth.models import AuthUser


def authenticate_request(request: Request) -> Optional[AuthUser]:
    """
    Authenticate a request and return an AuthUser if present/valid.

    Uses the AuthHandler the application mounted at startup (`app.state.auth`).
    """
    handler = getattr(request.app.state, "auth", None)
    if handler is None:
        # No engine mounted: fail closed.
        return None
    return handler.authenticate(request)


def require_user(request: Request) -> AuthUser:
    """FastAPI dependency for routes that need a signed-in user."""
    user = getattr(request.state, "user", None) or authenticate_request(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
