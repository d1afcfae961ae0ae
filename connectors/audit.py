"""
Audit trail — append-only log of credential lifecycle actions.

Writers add entries to the caller's session so the entry commits (or rolls
back) together with the state change it describes.  There is no update or
delete API.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import TokenAuditLog, WearableConnection

logger = logging.getLogger(__name__)

MAX_AUDIT_PAGE = 500


class AuditAction(str, enum.Enum):
    STORED = "stored"
    ACCESSED = "accessed"
    ROTATED = "rotated"
    REFRESHED = "refreshed"
    PROACTIVE_REFRESH = "proactive_refresh"
    REVOKED = "revoked"


@dataclass(frozen=True)
class RequestMeta:
    """Caller context captured at the HTTP edge."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditTrail:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def record(
        self,
        session: AsyncSession,
        connection: WearableConnection,
        action: AuditAction,
        *,
        meta: Optional[RequestMeta] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> TokenAuditLog:
        entry = TokenAuditLog(
            connection_id=connection.id,
            user_id=connection.user_id,
            provider=connection.provider,
            action=action.value,
            ip_address=meta.ip_address if meta else None,
            user_agent=meta.user_agent if meta else None,
            details=details or {},
        )
        session.add(entry)
        logger.debug("audit %s connection=%s", action.value, connection.id)
        return entry

    async def recent_for_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Last ``limit`` entries across all of the user's connections, newest first."""
        limit = max(1, min(limit, MAX_AUDIT_PAGE))
        async with self._session_factory() as session:
            result = await session.execute(
                select(TokenAuditLog)
                .where(TokenAuditLog.user_id == user_id)
                .order_by(TokenAuditLog.created_at.desc())
                .limit(limit)
            )
            rows = result.scalars().all()
        return [
            {
                "id": str(e.id),
                "connection_id": str(e.connection_id),
                "provider": e.provider,
                "action": e.action,
                "ip_address": e.ip_address,
                "user_agent": e.user_agent,
                "details": e.details or {},
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in rows
        ]
