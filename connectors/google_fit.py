"""
GoogleFitConnector — OAuth2 web flow (with PKCE) for Google Fit.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import urlencode

import httpx

from connectors.base import BaseConnector, TokenGrant
from connectors.errors import ProviderRequestError

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

_FITNESS_SCOPES = [
    "https://www.googleapis.com/auth/fitness.activity.read",
    "https://www.googleapis.com/auth/fitness.heart_rate.read",
    "https://www.googleapis.com/auth/fitness.sleep.read",
]


class GoogleFitConnector(BaseConnector):
    """OAuth2 connector for Google Fit."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_base: str,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_base = redirect_base.rstrip("/")
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return "google_fit"

    @property
    def display_name(self) -> str:
        return "Google Fit"

    @property
    def scopes(self) -> List[str]:
        return list(_FITNESS_SCOPES)

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _redirect_uri(self) -> str:
        return f"{self._redirect_base}/api/v1/wearables/google_fit/callback"

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token(self, operation: str, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(_GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise ProviderRequestError(operation, body=repr(exc)) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {"raw": resp.text}

        if resp.status_code != 200 or "access_token" not in payload:
            raise ProviderRequestError(
                operation,
                status_code=resp.status_code,
                oauth_error=payload.get("error") if isinstance(payload, dict) else None,
                body=payload,
            )
        return payload

    @staticmethod
    def _grant_from(payload: Dict[str, Any], default_scopes: List[str]) -> TokenGrant:
        scope = payload.get("scope")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            expires_in=int(payload.get("expires_in") or 3600),
            scopes=scope.split() if scope else list(default_scopes),
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenGrant:
        """Exchange auth code + PKCE verifier for tokens."""
        payload = await self._post_token(
            "authorization_code",
            {
                "code": code,
                "code_verifier": code_verifier,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri(),
                "grant_type": "authorization_code",
            },
        )
        return self._grant_from(payload, self.scopes)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Use refresh token to get a new access token."""
        payload = await self._post_token(
            "refresh_token",
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._grant_from(payload, [])

    async def revoke_token(self, token: str) -> bool:
        """Revoke the token at Google."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                _GOOGLE_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        if resp.status_code != 200:
            logger.warning("Google revoke returned HTTP %s", resp.status_code)
        return resp.status_code == 200
