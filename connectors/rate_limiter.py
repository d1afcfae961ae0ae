"""
Per-user / per-endpoint rate limiting backed by the ``rate_limits`` table.

The check-and-increment is one ``INSERT … ON CONFLICT DO UPDATE … RETURNING``
statement, so concurrent requests for the same (user, endpoint) cannot both
slip under the limit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import RateLimited
from database.helpers import upsert_for
from database.models import RateLimitWindow, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int
    remaining: int


class RateLimiter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def check_and_increment(
        self,
        user_id: str,
        endpoint: str,
        max_requests: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        now = self._clock()
        window_expired = RateLimitWindow.window_start <= now - timedelta(seconds=window_seconds)

        async with self._session_factory() as session:
            insert = upsert_for(session, RateLimitWindow)
            stmt = (
                insert.values(user_id=user_id, endpoint=endpoint, window_start=now, request_count=1)
                .on_conflict_do_update(
                    index_elements=["user_id", "endpoint"],
                    set_={
                        "request_count": case(
                            (window_expired, 1),
                            else_=RateLimitWindow.request_count + 1,
                        ),
                        "window_start": case(
                            (window_expired, now),
                            else_=RateLimitWindow.window_start,
                        ),
                    },
                )
                .returning(RateLimitWindow.request_count, RateLimitWindow.window_start)
            )
            row = (await session.execute(stmt)).one()
            await session.commit()

        count, window_start = row
        if count <= max_requests:
            return RateLimitDecision(allowed=True, retry_after=0, remaining=max_requests - count)

        reset_at = window_start + timedelta(seconds=window_seconds)
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        logger.info("Rate limit exceeded for user %s on %s", user_id, endpoint)
        return RateLimitDecision(allowed=False, retry_after=retry_after, remaining=0)

    async def enforce(
        self,
        user_id: str,
        endpoint: str,
        max_requests: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """Like ``check_and_increment`` but raises ``RateLimited`` when blocked."""
        decision = await self.check_and_increment(user_id, endpoint, max_requests, window_seconds)
        if not decision.allowed:
            raise RateLimited(decision.retry_after)
        return decision
