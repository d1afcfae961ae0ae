"""
This module re-exports the ORM models from the database package for use in connector-related code.
"""

from database.models import (  # noqa: F401
    OAuthPendingState,
    RateLimitWindow,
    TokenAuditLog,
    WearableConnection,
)

__all__ = ["OAuthPendingState", "RateLimitWindow", "TokenAuditLog", "WearableConnection"]
