"""
SQLAlchemy ORM models for wearable OAuth connections.

Types are kept dialect-neutral (``Uuid``, ``JSON``) so the same schema runs
on PostgreSQL in production and on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class WearableConnection(Base):
    """One delegated credential pair per (user, provider)."""

    __tablename__ = "wearable_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_wearable_connections_user_provider"),
        Index("ix_wearable_connections_expiry", "sync_enabled", "token_expires_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(UTCDateTime, nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(UTCDateTime)
    tokens_encrypted = Column(Boolean, nullable=False, default=True)
    rotation_count = Column(Integer, nullable=False, default=0)
    last_token_rotation = Column(UTCDateTime)
    consecutive_refresh_failures = Column(Integer, nullable=False, default=0)
    rotation_lock_until = Column(UTCDateTime)
    error_message = Column(Text)
    connected_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class OAuthPendingState(Base):
    """In-flight authorization attempt: CSRF nonce + PKCE verifier, 10-minute TTL."""

    __tablename__ = "oauth_pending_states"

    user_id = Column(String(64), primary_key=True)
    provider = Column(String(32), primary_key=True)
    state = Column(String(128), nullable=False, index=True)
    code_verifier = Column(String(128), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class TokenAuditLog(Base):
    """
    Append-only lifecycle log.

    ``connection_id`` is a plain reference (no foreign key) so entries outlive
    the connection they describe.
    """

    __tablename__ = "wearable_token_audit"
    __table_args__ = (Index("ix_wearable_token_audit_user_created", "user_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    action = Column(String(32), nullable=False)
    ip_address = Column(String(64))
    user_agent = Column(Text)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class RateLimitWindow(Base):
    """Fixed request window per (user, endpoint)."""

    __tablename__ = "rate_limits"

    user_id = Column(String(64), primary_key=True)
    endpoint = Column(String(64), primary_key=True)
    window_start = Column(UTCDateTime, nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
