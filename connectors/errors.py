"""
Error taxonomy for the credential lifecycle.

Every error a caller can see derives from ``ConnectorError`` and carries a
generic, non-leaking ``message``.  Provider detail stays in server logs,
keyed by ``error_id``.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional


def new_error_id() -> str:
    return uuid.uuid4().hex[:16]


class ConnectorError(Exception):
    status_code = 500
    error_code = "internal_error"
    message = "Unexpected error"

    def __init__(self, message: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ConfigurationError(ConnectorError):
    """Missing or malformed secrets; fatal for the component, not the request."""

    status_code = 503
    error_code = "configuration_error"
    message = "Wearable integration is not configured"


class RateLimited(ConnectorError):
    status_code = 429
    error_code = "rate_limited"
    message = "Rate limit exceeded. Please try again later."

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__()

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "retry_after": self.retry_after}


class MissingState(ConnectorError):
    status_code = 400
    error_code = "missing_state"
    message = "OAuth state is required"


class MissingCode(ConnectorError):
    status_code = 400
    error_code = "missing_code"
    message = "Authorization code is required"


class InvalidOrExpiredState(ConnectorError):
    """Unknown, mismatched, replayed or timed-out state; never distinguished."""

    status_code = 400
    error_code = "invalid_state"
    message = "Invalid or expired OAuth state"


class _OpaqueProviderFailure(ConnectorError):
    status_code = 502

    def __init__(self, error_id: str) -> None:
        self.error_id = error_id
        super().__init__()

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "error_id": self.error_id}


class OAuthExchangeFailed(_OpaqueProviderFailure):
    error_code = "oauth_exchange_failed"
    message = "Could not complete authorization with the provider"


class OAuthRefreshFailed(_OpaqueProviderFailure):
    error_code = "oauth_refresh_failed"
    message = "Could not refresh provider credentials"

    def __init__(self, error_id: str, *, permanent: bool = False) -> None:
        self.permanent = permanent
        super().__init__(error_id)


class DecryptionError(ConnectorError):
    error_code = "decryption_failed"
    message = "Stored credentials could not be decrypted"


class ConnectionNotFound(ConnectorError):
    status_code = 404
    error_code = "connection_not_found"
    message = "Connection not found"


class RotationInProgress(ConnectorError):
    status_code = 409
    error_code = "rotation_in_progress"
    message = "Credentials are already being rotated"


class ProviderRequestError(Exception):
    """
    Raised by connectors when a provider call fails.

    Internal only: callers never see it directly, the services translate it
    into an opaque ``OAuthExchangeFailed`` / ``OAuthRefreshFailed``.
    """

    def __init__(
        self,
        operation: str,
        *,
        status_code: Optional[int] = None,
        oauth_error: Optional[str] = None,
        body: Any = None,
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        self.oauth_error = oauth_error
        self.body = body
        super().__init__(f"{operation} failed (status={status_code}, error={oauth_error})")

    @property
    def is_permanent(self) -> bool:
        """The grant itself was rejected (e.g. user revoked access at the provider)."""
        return self.oauth_error == "invalid_grant"
