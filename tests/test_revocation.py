"""
Tests for disconnecting a wearable: best-effort provider revoke, local
deletion and the audit entry that outlives the connection.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx
from sqlalchemy import update

from connectors.errors import ConnectionNotFound, RateLimited
from database.models import WearableConnection

GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"


async def _only_audit(manager, user_id="u1"):
    entries = await manager.recent_audit(user_id)
    assert len(entries) == 1
    return entries[0]


class TestRevoke:
    @pytest.mark.asyncio
    @respx.mock
    async def test_revokes_and_deletes(self, manager, seed_connection, fetch_connection):
        route = respx.post(GOOGLE_REVOKE_URL).respond(200)
        conn = await seed_connection(access_token="access-live")

        assert await manager.revoke("u1", str(conn.id)) is True

        sent = parse_qs(urlparse(str(route.calls.last.request.url)).query)
        assert sent["token"] == ["access-live"]
        assert await fetch_connection(conn.id) is None

        entry = await _only_audit(manager)
        assert entry["action"] == "revoked"
        assert entry["connection_id"] == str(conn.id)
        assert entry["details"] == {"provider_revoked": True}

    @pytest.mark.asyncio
    @respx.mock
    async def test_corrupted_token_still_deletes(self, manager, seed_connection, session_factory, fetch_connection):
        route = respx.post(GOOGLE_REVOKE_URL).respond(200)
        conn = await seed_connection()
        async with session_factory() as session:
            await session.execute(
                update(WearableConnection)
                .where(WearableConnection.id == conn.id)
                .values(access_token="not-a-ciphertext")
            )
            await session.commit()

        assert await manager.revoke("u1", conn.id)

        assert not route.called
        assert await fetch_connection(conn.id) is None
        assert (await _only_audit(manager))["details"] == {"provider_revoked": False}

    @pytest.mark.asyncio
    @respx.mock
    async def test_provider_refusal_still_deletes(self, manager, seed_connection, fetch_connection):
        respx.post(GOOGLE_REVOKE_URL).respond(400, json={"error": "invalid_token"})
        conn = await seed_connection()

        assert await manager.revoke("u1", str(conn.id))
        assert await fetch_connection(conn.id) is None
        assert (await _only_audit(manager))["details"] == {"provider_revoked": False}

    @pytest.mark.asyncio
    @respx.mock
    async def test_provider_timeout_still_deletes(self, manager, seed_connection, fetch_connection):
        respx.post(GOOGLE_REVOKE_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        conn = await seed_connection()

        assert await manager.revoke("u1", str(conn.id))
        assert await fetch_connection(conn.id) is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_legacy_plaintext_token(self, manager, seed_connection):
        route = respx.post(GOOGLE_REVOKE_URL).respond(200)
        conn = await seed_connection(access_token="plain-access", encrypted=False)

        await manager.revoke("u1", str(conn.id))
        sent = parse_qs(urlparse(str(route.calls.last.request.url)).query)
        assert sent["token"] == ["plain-access"]

    @pytest.mark.asyncio
    async def test_unconfigured_provider_skips_remote_revoke(self, manager, seed_connection, fetch_connection):
        conn = await seed_connection(provider="fitbit")
        assert await manager.revoke("u1", str(conn.id))
        assert await fetch_connection(conn.id) is None


class TestOwnership:
    @pytest.mark.asyncio
    async def test_other_users_connection(self, manager, seed_connection, fetch_connection):
        conn = await seed_connection("owner")
        with pytest.raises(ConnectionNotFound):
            await manager.revoke("intruder", str(conn.id))
        assert await fetch_connection(conn.id) is not None

    @pytest.mark.asyncio
    async def test_malformed_connection_id(self, manager):
        with pytest.raises(ConnectionNotFound):
            await manager.revoke("u1", "not-a-uuid")

    @pytest.mark.asyncio
    async def test_rate_limited(self, manager, settings):
        for _ in range(settings.disconnect_rate_limit_max_requests):
            with pytest.raises(ConnectionNotFound):
                await manager.revoke("u1", "missing")
        with pytest.raises(RateLimited):
            await manager.revoke("u1", "missing")
