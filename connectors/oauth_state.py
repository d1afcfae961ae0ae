"""
Pending authorization state — CSRF nonce + PKCE verifier per in-flight login.

At most one pending state exists per (user, provider): creating a new one
replaces the previous attempt.  ``consume`` is a single ``DELETE … RETURNING``
so two callbacks racing on the same state cannot both succeed.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import InvalidOrExpiredState
from database.helpers import upsert_for
from database.models import OAuthPendingState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 chars, RFC 7636)."""
    return _b64url(secrets.token_bytes(32))


def code_challenge_for(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier))."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class PendingAuthorization:
    state: str
    code_verifier: str
    code_challenge: str


class PendingStateStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def create(self, user_id: str, provider: str) -> PendingAuthorization:
        code_verifier = generate_code_verifier()
        state = secrets.token_urlsafe(32)
        now = self._clock()

        async with self._session_factory() as session:
            insert = upsert_for(session, OAuthPendingState)
            stmt = insert.values(
                user_id=user_id,
                provider=provider,
                state=state,
                code_verifier=code_verifier,
                created_at=now,
            ).on_conflict_do_update(
                index_elements=["user_id", "provider"],
                set_={"state": state, "code_verifier": code_verifier, "created_at": now},
            )
            await session.execute(stmt)
            await session.commit()

        logger.debug("Pending OAuth state created for user %s (%s)", user_id, provider)
        return PendingAuthorization(
            state=state,
            code_verifier=code_verifier,
            code_challenge=code_challenge_for(code_verifier),
        )

    async def consume(self, user_id: str, provider: str, state: str) -> str:
        """
        Atomically delete the matching, unexpired record and return its
        ``code_verifier``.

        Raises ``InvalidOrExpiredState`` for a missing record, a state
        mismatch or an expired record alike.  A mismatch leaves the genuine
        pending record in place.
        """
        row = await self._delete_matching(provider, state, OAuthPendingState.user_id == user_id)
        if row is None:
            logger.warning("Rejected OAuth state for user %s (%s)", user_id, provider)
            raise InvalidOrExpiredState()
        return row.code_verifier

    async def consume_by_state(self, provider: str, state: str) -> Tuple[str, str]:
        """
        Like ``consume`` for the provider's browser redirect, which carries
        no session: the unguessable state itself identifies the attempt.

        Returns ``(user_id, code_verifier)``.
        """
        row = await self._delete_matching(provider, state)
        if row is None:
            logger.warning("Rejected OAuth state on %s redirect", provider)
            raise InvalidOrExpiredState()
        return row.user_id, row.code_verifier

    async def _delete_matching(self, provider: str, state: str, *criteria):
        cutoff = self._clock() - self._ttl
        async with self._session_factory() as session:
            stmt = (
                delete(OAuthPendingState)
                .where(
                    OAuthPendingState.provider == provider,
                    OAuthPendingState.state == state,
                    OAuthPendingState.created_at >= cutoff,
                    *criteria,
                )
                .returning(OAuthPendingState.user_id, OAuthPendingState.code_verifier)
                .execution_options(synchronize_session=False)
            )
            row = (await session.execute(stmt)).first()
            await session.commit()
        return row

    async def purge_expired(self) -> int:
        """Delete abandoned attempts older than the TTL. Returns rows removed."""
        cutoff = self._clock() - self._ttl
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OAuthPendingState)
                .where(OAuthPendingState.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired OAuth states", purged)
        return purged
