"""
Session token verification.

Tokens are base64-encoded JSON payloads (``sub`` + ``exp``) signed with
HMAC-SHA256 under ``jwt_secret``.  Issuing them belongs to the login
service; ``create_token`` exists for that service and for tests.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


def _sign(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, *, secret: str, expiry_seconds: int) -> str:
    """Create a signed token for ``user_id``."""
    payload = {"sub": user_id, "exp": int(time.time()) + expiry_seconds}
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(secret, raw)


def verify_token(token: str, *, secret: str) -> str:
    """
    Verify token and return the user id.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        encoded, sig = token.split(".", 1)
        raw = urlsafe_b64decode(encoded.encode())
        if not hmac.compare_digest(sig, _sign(secret, raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        user_id = payload["sub"]
    except (ValueError, KeyError, TypeError) as exc:
        logger.info("Rejected session token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from None
    return str(user_id)
