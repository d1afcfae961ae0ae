"""
Token manager — reactive and proactive rotation of stored OAuth credentials.

Both modes share ``TokenRotationEngine.rotate``:

1. Claim the connection with a short lease (conditional UPDATE), so a
   reactive refresh and the scheduled sweep never present the same refresh
   token twice.
2. Decrypt the stored refresh token and call the provider's refresh grant.
3. Re-encrypt and write access token, refresh token, expiry and rotation
   metadata in one UPDATE guarded by the observed ``rotation_count``, and
   append one audit entry in the same transaction.

A failed rotation leaves the tokens untouched and is audited with
``details.success = false``; repeated or permanent failures switch
``sync_enabled`` off.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.audit import AuditAction, AuditTrail, RequestMeta
from connectors.encryption import TokenCipher
from connectors.errors import (
    ConnectionNotFound,
    ConnectorError,
    DecryptionError,
    OAuthRefreshFailed,
    ProviderRequestError,
    RotationInProgress,
    new_error_id,
)
from connectors.rate_limiter import RateLimiter
from connectors.registry import ConnectorRegistry
from database.models import WearableConnection, utcnow

logger = logging.getLogger(__name__)

SYNC_ENDPOINT = "sync-wearable"


@dataclass(frozen=True)
class RotationResult:
    access_token: str
    refresh_token_ciphertext: str
    expires_at: datetime
    rotation_count: int


@dataclass
class SweepSummary:
    checked: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class TokenRotationEngine:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ConnectorRegistry,
        cipher: TokenCipher,
        audit: AuditTrail,
        rate_limiter: RateLimiter,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._cipher = cipher
        self._audit = audit
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._lock_ttl = timedelta(seconds=settings.rotation_lock_seconds)
        self._reactive_window = timedelta(seconds=settings.reactive_refresh_window_seconds)
        self._proactive_window = timedelta(days=settings.proactive_refresh_window_days)

    # ── Core rotation ──────────────────────────────────────────────────

    async def rotate(
        self,
        connection_id: uuid.UUID,
        *,
        action: AuditAction = AuditAction.REFRESHED,
        meta: Optional[RequestMeta] = None,
    ) -> RotationResult:
        """
        Rotate one connection's credentials.

        Raises
        ------
        ConnectionNotFound
            The connection no longer exists.
        RotationInProgress
            Another rotation holds the lease for this connection.
        OAuthRefreshFailed
            The provider rejected the refresh grant or timed out.
        DecryptionError
            The stored refresh token cannot be decrypted.
        """
        await self._claim(connection_id)
        try:
            return await self._rotate_claimed(connection_id, action, meta)
        except (OAuthRefreshFailed, DecryptionError):
            raise
        except Exception:
            await self._release(connection_id)
            raise

    async def _claim(self, connection_id: uuid.UUID) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(WearableConnection)
                .where(
                    WearableConnection.id == connection_id,
                    or_(
                        WearableConnection.rotation_lock_until.is_(None),
                        WearableConnection.rotation_lock_until < now,
                    ),
                )
                .values(rotation_lock_until=now + self._lock_ttl)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 1:
                return
            exists = await session.scalar(
                select(WearableConnection.id).where(WearableConnection.id == connection_id)
            )
        if exists is None:
            raise ConnectionNotFound()
        logger.info("Rotation already in progress for connection %s", connection_id)
        raise RotationInProgress()

    async def _release(self, connection_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WearableConnection)
                .where(WearableConnection.id == connection_id)
                .values(rotation_lock_until=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _rotate_claimed(
        self,
        connection_id: uuid.UUID,
        action: AuditAction,
        meta: Optional[RequestMeta],
    ) -> RotationResult:
        async with self._session_factory() as session:
            conn = await session.get(WearableConnection, connection_id)
        if conn is None:
            raise ConnectionNotFound()

        connector = self._registry.require(conn.provider)
        observed_count = conn.rotation_count or 0

        try:
            current_refresh = self._read_token(conn, conn.refresh_token)
        except DecryptionError:
            error_id = new_error_id()
            logger.error(
                "Stored refresh token undecryptable [error_id=%s] connection=%s",
                error_id, connection_id,
            )
            await self._record_failure(
                connection_id, action, error_id, observed_count, permanent=False, meta=meta
            )
            raise

        try:
            grant = await connector.refresh_access_token(current_refresh)
        except ProviderRequestError as exc:
            error_id = new_error_id()
            logger.error(
                "Token refresh failed [error_id=%s] connection=%s provider=%s status=%s body=%s",
                error_id, connection_id, conn.provider, exc.status_code, exc.body,
            )
            await self._record_failure(
                connection_id, action, error_id, observed_count, permanent=exc.is_permanent, meta=meta
            )
            raise OAuthRefreshFailed(error_id, permanent=exc.is_permanent) from exc

        # Providers may omit the refresh token; keep the previous one rather than orphan the connection.
        new_refresh = grant.refresh_token or current_refresh
        access_ct = self._cipher.encrypt(grant.access_token)
        refresh_ct = self._cipher.encrypt(new_refresh)
        now = self._clock()
        expires_at = now + timedelta(seconds=grant.expires_in)

        async with self._session_factory() as session:
            result = await session.execute(
                update(WearableConnection)
                .where(
                    WearableConnection.id == connection_id,
                    WearableConnection.rotation_count == observed_count,
                )
                .values(
                    access_token=access_ct,
                    refresh_token=refresh_ct,
                    token_expires_at=expires_at,
                    tokens_encrypted=True,
                    rotation_count=observed_count + 1,
                    last_token_rotation=now,
                    consecutive_refresh_failures=0,
                    rotation_lock_until=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.warning("Connection %s changed during rotation; discarding result", connection_id)
                raise RotationInProgress()

            self._audit.record(
                session,
                conn,
                action,
                meta=meta,
                details={
                    "new_refresh_token_issued": grant.refresh_token is not None,
                    "expires_in": grant.expires_in,
                },
            )
            await session.commit()

        logger.info(
            "Rotated %s token for connection %s (%s, rotation #%d)",
            conn.provider, connection_id, action.value, observed_count + 1,
        )
        return RotationResult(
            access_token=grant.access_token,
            refresh_token_ciphertext=refresh_ct,
            expires_at=expires_at,
            rotation_count=observed_count + 1,
        )

    async def _record_failure(
        self,
        connection_id: uuid.UUID,
        action: AuditAction,
        error_id: str,
        observed_count: int,
        *,
        permanent: bool,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        async with self._session_factory() as session:
            conn = await session.get(WearableConnection, connection_id)
            if conn is None:
                return
            conn.rotation_lock_until = None
            if conn.rotation_count != observed_count:
                # Reconnected meanwhile; the failure belongs to a grant that is already gone.
                await session.commit()
                return
            conn.consecutive_refresh_failures = (conn.consecutive_refresh_failures or 0) + 1
            conn.error_message = f"Token refresh failed (error id {error_id})"
            limit = self._settings.max_consecutive_refresh_failures
            disable = permanent or conn.consecutive_refresh_failures >= limit
            if disable:
                conn.sync_enabled = False
                logger.warning(
                    "Sync disabled for connection %s after %d failed refresh(es)%s",
                    connection_id,
                    conn.consecutive_refresh_failures,
                    " (grant rejected)" if permanent else "",
                )
            self._audit.record(
                session,
                conn,
                action,
                meta=meta,
                details={
                    "success": False,
                    "error_id": error_id,
                    "consecutive_failures": conn.consecutive_refresh_failures,
                    "sync_disabled": disable,
                },
            )
            await session.commit()

    def _read_token(self, conn: WearableConnection, value: str) -> str:
        """Plaintext of a stored token; legacy rows hold plaintext already."""
        if conn.tokens_encrypted:
            return self._cipher.decrypt(value)
        return value

    # ── Reactive path ──────────────────────────────────────────────────

    async def get_valid_access_token(
        self,
        user_id: str,
        provider: str,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> str:
        """
        Return a usable plaintext access token for a sync collaborator,
        rotating first when it expires within the reactive window.
        """
        conn = await self._load(user_id, provider)
        now = self._clock()

        if conn.token_expires_at <= now + self._reactive_window:
            try:
                access_token = (await self.rotate(conn.id, action=AuditAction.REFRESHED, meta=meta)).access_token
            except RotationInProgress:
                conn = await self._load(user_id, provider)
                if conn.token_expires_at <= now:
                    raise
                access_token = self._read_token(conn, conn.access_token)
        else:
            access_token = self._read_token(conn, conn.access_token)

        async with self._session_factory() as session:
            self._audit.record(session, conn, AuditAction.ACCESSED, meta=meta)
            await session.commit()
        return access_token

    async def refresh_due_connections(self, user_id: str) -> SweepSummary:
        """Reactively rotate every sync-enabled connection of the user that is about to expire."""
        max_requests, window = self._settings.rate_limit_for(SYNC_ENDPOINT)
        await self._rate_limiter.enforce(user_id, SYNC_ENDPOINT, max_requests, window)

        cutoff = self._clock() + self._reactive_window
        async with self._session_factory() as session:
            ids = (
                await session.execute(
                    select(WearableConnection.id).where(
                        WearableConnection.user_id == user_id,
                        WearableConnection.sync_enabled.is_(True),
                        WearableConnection.token_expires_at <= cutoff,
                    )
                )
            ).scalars().all()
        return await self._rotate_batch(ids, AuditAction.REFRESHED)

    # ── Proactive path ─────────────────────────────────────────────────

    async def proactive_sweep(self) -> SweepSummary:
        """Rotate sync-enabled tokens expiring within the next 7 days."""
        now = self._clock()
        horizon = now + self._proactive_window
        async with self._session_factory() as session:
            ids = (
                await session.execute(
                    select(WearableConnection.id).where(
                        WearableConnection.sync_enabled.is_(True),
                        WearableConnection.token_expires_at > now,
                        WearableConnection.token_expires_at <= horizon,
                    )
                )
            ).scalars().all()

        if not ids:
            logger.info("No tokens expiring in the next %d days", self._proactive_window.days)
            return SweepSummary()

        logger.info("Found %d tokens expiring soon", len(ids))
        summary = await self._rotate_batch(ids, AuditAction.PROACTIVE_REFRESH)
        logger.info(
            "Proactive refresh completed: %d refreshed, %d failed, %d skipped",
            summary.refreshed, summary.failed, summary.skipped,
        )
        return summary

    async def _rotate_batch(self, connection_ids: Iterable[uuid.UUID], action: AuditAction) -> SweepSummary:
        ids = list(connection_ids)
        semaphore = asyncio.Semaphore(max(1, self._settings.sweep_concurrency))

        async def _one(connection_id: uuid.UUID) -> str:
            async with semaphore:
                try:
                    await self.rotate(connection_id, action=action)
                    return "refreshed"
                except (RotationInProgress, ConnectionNotFound):
                    return "skipped"
                except ConnectorError as exc:
                    logger.warning("Rotation failed for connection %s: %s", connection_id, exc.error_code)
                    return "failed"
                except Exception:
                    logger.exception("Unexpected error rotating connection %s", connection_id)
                    return "failed"

        outcomes = await asyncio.gather(*(_one(cid) for cid in ids))
        return SweepSummary(
            checked=len(ids),
            refreshed=outcomes.count("refreshed"),
            failed=outcomes.count("failed"),
            skipped=outcomes.count("skipped"),
        )

    # ── Maintenance / bookkeeping ──────────────────────────────────────

    async def encrypt_legacy_connections(self) -> int:
        """Encrypt tokens of rows stored before encryption was enabled."""
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(WearableConnection).where(WearableConnection.tokens_encrypted.is_(False))
                )
            ).scalars().all()
            for conn in rows:
                conn.access_token = self._cipher.encrypt(conn.access_token)
                conn.refresh_token = self._cipher.encrypt(conn.refresh_token)
                conn.tokens_encrypted = True
                self._audit.record(session, conn, AuditAction.ROTATED, details={"reason": "legacy_encryption"})
            await session.commit()

        if rows:
            logger.info("Encrypted tokens for %d legacy connection(s)", len(rows))
        return len(rows)

    async def record_sync(self, user_id: str, provider: str, at: Optional[datetime] = None) -> bool:
        """Stamp ``last_sync_at`` after a successful data sync."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(WearableConnection)
                .where(WearableConnection.user_id == user_id, WearableConnection.provider == provider)
                .values(last_sync_at=at or self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def list_connections(self, user_id: str) -> List[Dict[str, Any]]:
        """Return all connections for a user (no tokens exposed)."""
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(WearableConnection)
                    .where(WearableConnection.user_id == user_id)
                    .order_by(WearableConnection.provider)
                )
            ).scalars().all()
        return [
            {
                "connection_id": str(c.id),
                "provider": c.provider,
                "scopes": c.scopes or [],
                "sync_enabled": c.sync_enabled,
                "token_expires_at": c.token_expires_at.isoformat() if c.token_expires_at else None,
                "last_sync_at": c.last_sync_at.isoformat() if c.last_sync_at else None,
                "rotation_count": c.rotation_count,
                "last_token_rotation": c.last_token_rotation.isoformat() if c.last_token_rotation else None,
                "connected_at": c.connected_at.isoformat() if c.connected_at else None,
                "error_message": c.error_message,
            }
            for c in rows
        ]

    async def _load(self, user_id: str, provider: str) -> WearableConnection:
        async with self._session_factory() as session:
            conn = (
                await session.execute(
                    select(WearableConnection).where(
                        WearableConnection.user_id == user_id,
                        WearableConnection.provider == provider,
                    )
                )
            ).scalar_one_or_none()
        if conn is None:
            raise ConnectionNotFound()
        return conn
