"""
CredentialManager — wires the lifecycle components around one session factory.

Built once at cold start via ``build_credential_manager``; configuration
problems (missing/invalid encryption key) surface there as
``ConfigurationError`` instead of on the first request.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.audit import AuditTrail, RequestMeta
from connectors.authorization import AuthorizationInitiator, CallbackHandler, ConnectionSummary
from connectors.encryption import TokenCipher
from connectors.oauth_state import PendingStateStore
from connectors.rate_limiter import RateLimiter
from connectors.registry import ConnectorRegistry
from connectors.revocation import RevocationService
from connectors.token_manager import SweepSummary, TokenRotationEngine
from database.models import utcnow

logger = logging.getLogger(__name__)


class CredentialManager:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        registry: ConnectorRegistry,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.cipher = cipher
        self.rate_limiter = RateLimiter(session_factory, clock=clock)
        self.state_store = PendingStateStore(
            session_factory, ttl_seconds=settings.pending_state_ttl_seconds, clock=clock
        )
        self.audit = AuditTrail(session_factory)
        self.initiator = AuthorizationInitiator(settings, registry, self.rate_limiter, self.state_store)
        self.callback = CallbackHandler(
            settings,
            session_factory,
            registry,
            self.rate_limiter,
            self.state_store,
            cipher,
            self.audit,
            clock=clock,
        )
        self.rotation = TokenRotationEngine(
            settings, session_factory, registry, cipher, self.audit, self.rate_limiter, clock=clock
        )
        self.revocation = RevocationService(
            settings, session_factory, registry, self.rate_limiter, cipher, self.audit
        )

    # ── Entry points ───────────────────────────────────────────────────

    async def initiate(self, user_id: str, provider: str = "google_fit") -> str:
        return await self.initiator.initiate(user_id, provider)

    async def complete(
        self,
        user_id: str,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> ConnectionSummary:
        return await self.callback.complete(user_id, provider, code, state, meta=meta)

    async def complete_redirect(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> ConnectionSummary:
        return await self.callback.complete_redirect(provider, code, state, meta=meta)

    async def revoke(
        self,
        user_id: str,
        connection_id: Union[str, uuid.UUID],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        return await self.revocation.revoke(user_id, connection_id, meta=meta)

    async def proactive_sweep(self) -> SweepSummary:
        return await self.rotation.proactive_sweep()

    async def purge_expired_states(self) -> int:
        return await self.state_store.purge_expired()

    async def get_valid_access_token(
        self, user_id: str, provider: str, *, meta: Optional[RequestMeta] = None
    ) -> str:
        return await self.rotation.get_valid_access_token(user_id, provider, meta=meta)

    async def refresh_due_connections(self, user_id: str) -> SweepSummary:
        return await self.rotation.refresh_due_connections(user_id)

    async def list_connections(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.rotation.list_connections(user_id)

    async def recent_audit(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.audit.recent_for_user(user_id, limit)


def build_credential_manager(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    clock: Callable[[], datetime] = utcnow,
) -> CredentialManager:
    """Validate configuration once and assemble the manager."""
    cipher = TokenCipher.from_base64(settings.oauth_encryption_key)
    registry = ConnectorRegistry.from_settings(settings)
    return CredentialManager(settings, session_factory, cipher, registry, clock=clock)
