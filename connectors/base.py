"""
BaseConnector — abstract interface for all wearable OAuth2 providers.

Every provider (Google Fit, …) subclasses this and implements the core
methods.  Connectors only talk to the provider; persistence, encryption and
auditing live in the services that call them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class TokenGrant:
    """Tokens issued by a provider's token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    scopes: List[str] = field(default_factory=list)


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'google_fit', …"""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Google Fit', …"""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str, code_challenge: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Random CSRF nonce, echoed back on the callback.
        code_challenge : str
            PKCE S256 challenge derived from the pending ``code_verifier``.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: str) -> TokenGrant:
        """
        Exchange the authorization code (plus PKCE verifier) for tokens.

        Raises ``ProviderRequestError`` when the provider rejects the request
        or cannot be reached in time.
        """
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Refresh an expiring access token.

        ``refresh_token`` on the result is ``None`` when the provider did not
        rotate it.
        """
        ...

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """
        Return True if this connector has all required config
        (client id, secret, …).
        """
        return True
