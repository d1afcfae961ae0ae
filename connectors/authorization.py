"""
Authorization flow — consent URL generation and the code-for-token callback.

    initiate ──► user consents at provider ──► complete
       │                                          │
       └─ PendingStateStore.create       consume ─┘ (single use, 10 min TTL)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.audit import AuditAction, AuditTrail, RequestMeta
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.errors import (
    DecryptionError,
    MissingCode,
    MissingState,
    OAuthExchangeFailed,
    ProviderRequestError,
    new_error_id,
)
from connectors.oauth_state import PendingStateStore
from connectors.rate_limiter import RateLimiter
from connectors.registry import ConnectorRegistry
from database.models import WearableConnection, utcnow

logger = logging.getLogger(__name__)

AUTH_ENDPOINT = "wearable-auth"


@dataclass(frozen=True)
class ConnectionSummary:
    success: bool
    connection_id: uuid.UUID
    provider: str
    scopes: List[str] = field(default_factory=list)
    token_expires_at: Optional[datetime] = None


class AuthorizationInitiator:
    def __init__(
        self,
        settings: Settings,
        registry: ConnectorRegistry,
        rate_limiter: RateLimiter,
        state_store: PendingStateStore,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._state_store = state_store

    async def initiate(self, user_id: str, provider: str = "google_fit") -> str:
        """Return the provider consent URL; redirecting the user is the UI's job."""
        connector = self._registry.require(provider)
        max_requests, window = self._settings.rate_limit_for(AUTH_ENDPOINT)
        await self._rate_limiter.enforce(user_id, AUTH_ENDPOINT, max_requests, window)

        pending = await self._state_store.create(user_id, provider)
        auth_url = connector.get_auth_url(pending.state, pending.code_challenge)
        logger.info("Generated %s auth URL for user %s", provider, user_id)
        return auth_url


class CallbackHandler:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ConnectorRegistry,
        rate_limiter: RateLimiter,
        state_store: PendingStateStore,
        cipher: TokenCipher,
        audit: AuditTrail,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._state_store = state_store
        self._cipher = cipher
        self._audit = audit
        self._clock = clock

    async def complete(
        self,
        user_id: str,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> ConnectionSummary:
        """
        Finish an authorization attempt.

        A given (code, state) pair is honoured exactly once: the pending state
        is consumed before the provider is contacted, so a replay fails with
        ``InvalidOrExpiredState`` even if the first exchange failed.
        """
        connector = self._registry.require(provider)
        await self._enforce_rate_limit(user_id)

        if not state:
            raise MissingState()
        code_verifier = await self._state_store.consume(user_id, provider, state)
        return await self._exchange_and_store(connector, user_id, provider, code, code_verifier, meta)

    async def complete_redirect(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> ConnectionSummary:
        """
        Finish an attempt from the provider's browser redirect.

        The redirect carries no session credentials, so the user is the one
        the single-use state was issued to.
        """
        connector = self._registry.require(provider)
        if not state:
            raise MissingState()
        user_id, code_verifier = await self._state_store.consume_by_state(provider, state)
        await self._enforce_rate_limit(user_id)
        return await self._exchange_and_store(connector, user_id, provider, code, code_verifier, meta)

    async def _enforce_rate_limit(self, user_id: str) -> None:
        max_requests, window = self._settings.rate_limit_for(AUTH_ENDPOINT)
        await self._rate_limiter.enforce(user_id, AUTH_ENDPOINT, max_requests, window)

    async def _exchange_and_store(
        self,
        connector: BaseConnector,
        user_id: str,
        provider: str,
        code: Optional[str],
        code_verifier: str,
        meta: Optional[RequestMeta],
    ) -> ConnectionSummary:
        if not code:
            raise MissingCode()

        try:
            grant = await connector.exchange_code(code, code_verifier)
        except ProviderRequestError as exc:
            error_id = new_error_id()
            logger.error(
                "OAuth code exchange failed [error_id=%s] user=%s provider=%s status=%s body=%s",
                error_id, user_id, provider, exc.status_code, exc.body,
            )
            raise OAuthExchangeFailed(error_id) from exc

        now = self._clock()
        async with self._session_factory() as session:
            existing = (
                await session.execute(
                    select(WearableConnection).where(
                        WearableConnection.user_id == user_id,
                        WearableConnection.provider == provider,
                    )
                )
            ).scalar_one_or_none()

            refresh_token = grant.refresh_token or self._previous_refresh_token(existing)
            if not refresh_token:
                error_id = new_error_id()
                logger.error(
                    "Provider issued no refresh token [error_id=%s] user=%s provider=%s",
                    error_id, user_id, provider,
                )
                raise OAuthExchangeFailed(error_id)

            conn = existing or WearableConnection(
                id=uuid.uuid4(), user_id=user_id, provider=provider, connected_at=now
            )
            conn.access_token = self._cipher.encrypt(grant.access_token)
            conn.refresh_token = self._cipher.encrypt(refresh_token)
            conn.token_expires_at = now + timedelta(seconds=grant.expires_in)
            conn.scopes = grant.scopes or connector.scopes
            conn.sync_enabled = True
            conn.tokens_encrypted = True
            conn.last_token_rotation = now
            conn.consecutive_refresh_failures = 0
            conn.error_message = None
            if existing is None:
                conn.rotation_count = 1
                session.add(conn)
            else:
                # Bumped, never reset, so a rotation in flight on the old grant fails its
                # rotation_count guard. Its lease stays for the holder to release.
                conn.rotation_count = WearableConnection.rotation_count + 1

            self._audit.record(
                session,
                conn,
                AuditAction.STORED,
                meta=meta,
                details={"reconnected": existing is not None, "expires_in": grant.expires_in},
            )
            await session.commit()

        logger.info("OAuth connected: user=%s provider=%s connection=%s", user_id, provider, conn.id)
        return ConnectionSummary(
            success=True,
            connection_id=conn.id,
            provider=provider,
            scopes=list(conn.scopes or []),
            token_expires_at=conn.token_expires_at,
        )

    def _previous_refresh_token(self, existing: Optional[WearableConnection]) -> Optional[str]:
        """Reuse a still-readable refresh token when reconnecting without a new one."""
        if existing is None or not existing.refresh_token:
            return None
        if not existing.tokens_encrypted:
            return existing.refresh_token
        try:
            return self._cipher.decrypt(existing.refresh_token)
        except DecryptionError:
            logger.warning("Existing refresh token for connection %s is unreadable", existing.id)
            return None
