"""
Revocation — disconnect a wearable.

Local deletion is the source of truth: the provider-side revoke is attempted
at most once and its failure (or an unreadable token) is only logged.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Union

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.audit import AuditAction, AuditTrail, RequestMeta
from connectors.encryption import TokenCipher
from connectors.errors import ConnectionNotFound, DecryptionError
from connectors.rate_limiter import RateLimiter
from connectors.registry import ConnectorRegistry
from database.models import WearableConnection

logger = logging.getLogger(__name__)

DISCONNECT_ENDPOINT = "disconnect-wearable"


def _parse_connection_id(value: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class RevocationService:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ConnectorRegistry,
        rate_limiter: RateLimiter,
        cipher: TokenCipher,
        audit: AuditTrail,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._cipher = cipher
        self._audit = audit

    async def revoke(
        self,
        user_id: str,
        connection_id: Union[str, uuid.UUID],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        max_requests, window = self._settings.rate_limit_for(DISCONNECT_ENDPOINT)
        await self._rate_limiter.enforce(user_id, DISCONNECT_ENDPOINT, max_requests, window)

        cid = _parse_connection_id(connection_id)
        if cid is None:
            raise ConnectionNotFound()

        async with self._session_factory() as session:
            conn = (
                await session.execute(
                    select(WearableConnection).where(
                        WearableConnection.id == cid,
                        WearableConnection.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()
            if conn is None:
                raise ConnectionNotFound()

            logger.info("Disconnecting %s connection %s for user %s", conn.provider, cid, user_id)
            provider_revoked = await self._revoke_at_provider(conn)

            await session.delete(conn)
            self._audit.record(
                session,
                conn,
                AuditAction.REVOKED,
                meta=meta,
                details={"provider_revoked": provider_revoked},
            )
            await session.commit()

        logger.info("Revoked and deleted connection %s", cid)
        return True

    async def _revoke_at_provider(self, conn: WearableConnection) -> bool:
        token: Optional[str] = conn.access_token
        if conn.tokens_encrypted and token:
            try:
                token = self._cipher.decrypt(token)
            except DecryptionError:
                logger.error("Failed to decrypt token for revocation of connection %s", conn.id)
                return False
        if not token:
            return False

        connector = self._registry.get(conn.provider)
        if connector is None:
            logger.warning("Provider %s not configured; skipping remote revoke", conn.provider)
            return False

        try:
            revoked = await connector.revoke_token(token)
        except httpx.HTTPError as exc:
            # The revoke URL carries the token, so only the exception type is logged.
            logger.error(
                "Error revoking %s token for connection %s: %s", conn.provider, conn.id, type(exc).__name__
            )
            return False
        if not revoked:
            logger.warning("Provider refused revoke for connection %s, continuing with deletion", conn.id)
        return revoked
