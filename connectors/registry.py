"""
ConnectorRegistry — the set of wearable providers known to this deployment.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.errors import ConfigurationError
from connectors.google_fit import GoogleFitConnector

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Registry built from explicit settings; unconfigured providers stay listed but unusable."""

    def __init__(self, connectors: Iterable[BaseConnector]) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in connectors:
            self._connectors[conn.provider_name] = conn
            if conn.is_configured():
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider_name)
            else:
                logger.warning(
                    "Connector %s not configured (missing client_id/secret)",
                    conn.provider_name,
                )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectorRegistry":
        # ── All known connectors; add new ones here ──────────────────────
        return cls(
            [
                GoogleFitConnector(
                    settings.google_fit_client_id,
                    settings.google_fit_client_secret,
                    settings.oauth_redirect_base,
                    timeout=settings.provider_timeout_seconds,
                ),
            ]
        )

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a configured connector by provider name."""
        conn = self._connectors.get(provider)
        if conn is None or not conn.is_configured():
            return None
        return conn

    def require(self, provider: str) -> BaseConnector:
        """Like ``get`` but raises ``ConfigurationError`` (HTTP 503)."""
        conn = self.get(provider)
        if conn is None:
            logger.error("Provider %s is unknown or missing client credentials", provider)
            raise ConfigurationError()
        return conn

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all known connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "configured": c.is_configured(),
            }
            for c in self._connectors.values()
        ]
