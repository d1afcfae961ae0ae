"""
Database helper functions — dialect-aware upserts.
"""

from __future__ import annotations

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_for(session: AsyncSession, model):
    """
    Return an ``INSERT`` construct for ``model`` that supports
    ``on_conflict_do_update`` on the session's backend.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)
