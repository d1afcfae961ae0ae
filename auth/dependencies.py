"""
FastAPI dependencies for authentication.

Provides ``get_current_user_id``, used by every wearable route.  The user
identity itself is owned by the external login service; here we only check
its signed bearer token.
"""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from config.settings import config

_bearer_scheme = HTTPBearer()


async def get_current_user_id(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    ``user_id``.
    """
    settings = getattr(request.app.state, "settings", config)
    return verify_token(credentials.credentials, secret=settings.jwt_secret)
