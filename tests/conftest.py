"""
Shared fixtures: a throwaway SQLite database, a controllable clock and a
fully wired CredentialManager.
"""

import base64
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.settings import Settings
from connectors.encryption import TokenCipher
from connectors.manager import build_credential_manager
from connectors.models import WearableConnection
from database.session import build_engine, build_session_factory, create_tables


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def encryption_key():
    return base64.b64encode(os.urandom(32)).decode()


@pytest.fixture
def settings(encryption_key):
    return Settings(
        _env_file=None,
        google_fit_client_id="client-id",
        google_fit_client_secret="client-secret",
        oauth_redirect_base="https://app.test",
        oauth_encryption_key=encryption_key,
        cron_secret="cron-secret",
        jwt_secret="jwt-secret",
        sweep_concurrency=1,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'wearables.db'}")
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def manager(settings, session_factory, clock):
    return build_credential_manager(settings, session_factory, clock=clock)


@pytest.fixture
def cipher(manager) -> TokenCipher:
    return manager.cipher


@pytest.fixture
def seed_connection(session_factory, cipher, clock):
    """Insert a connection row directly, bypassing the OAuth flow."""

    async def _seed(
        user_id="u1",
        provider="google_fit",
        *,
        access_token="access-0",
        refresh_token="refresh-0",
        expires_in=timedelta(hours=1),
        encrypted=True,
        sync_enabled=True,
        rotation_count=1,
    ) -> WearableConnection:
        conn = WearableConnection(
            id=uuid.uuid4(),
            user_id=user_id,
            provider=provider,
            access_token=cipher.encrypt(access_token) if encrypted else access_token,
            refresh_token=cipher.encrypt(refresh_token) if encrypted else refresh_token,
            token_expires_at=clock() + expires_in,
            scopes=["https://www.googleapis.com/auth/fitness.activity.read"],
            sync_enabled=sync_enabled,
            tokens_encrypted=encrypted,
            rotation_count=rotation_count,
            last_token_rotation=clock(),
        )
        async with session_factory() as session:
            session.add(conn)
            await session.commit()
        return conn

    return _seed


@pytest.fixture
def fetch_connection(session_factory):
    async def _fetch(connection_id):
        async with session_factory() as session:
            return await session.get(WearableConnection, connection_id)

    return _fetch
