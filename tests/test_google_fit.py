"""
Contract tests for GoogleFitConnector against stubbed Google endpoints.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from connectors.errors import ProviderRequestError
from connectors.google_fit import GoogleFitConnector

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"


@pytest.fixture
def connector():
    return GoogleFitConnector("client-id", "client-secret", "https://app.test/", timeout=2.0)


class TestConfiguration:
    def test_configured_only_with_both_credentials(self):
        assert not GoogleFitConnector("", "secret", "https://app.test").is_configured()
        assert not GoogleFitConnector("id", "", "https://app.test").is_configured()
        assert GoogleFitConnector("id", "secret", "https://app.test").is_configured()

    def test_auth_url(self, connector):
        url = connector.get_auth_url("state-1", "challenge-1")
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        assert params["redirect_uri"] == "https://app.test/api/v1/wearables/google_fit/callback"
        assert params["state"] == "state-1"
        assert params["code_challenge"] == "challenge-1"
        assert params["scope"].split() == connector.scopes


class TestExchange:
    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code(self, connector):
        route = respx.post(GOOGLE_TOKEN_URL).respond(
            200,
            json={
                "access_token": "A",
                "refresh_token": "R",
                "expires_in": 3599,
                "scope": "https://www.googleapis.com/auth/fitness.activity.read",
            },
        )
        grant = await connector.exchange_code("code-1", "verifier-1")

        assert grant.access_token == "A"
        assert grant.refresh_token == "R"
        assert grant.expires_in == 3599
        assert grant.scopes == ["https://www.googleapis.com/auth/fitness.activity.read"]

        sent = parse_qs(route.calls.last.request.content.decode())
        assert sent["code_verifier"] == ["verifier-1"]
        assert sent["client_secret"] == ["client-secret"]
        assert sent["redirect_uri"] == ["https://app.test/api/v1/wearables/google_fit/callback"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_defaults_when_fields_missing(self, connector):
        respx.post(GOOGLE_TOKEN_URL).respond(200, json={"access_token": "A"})
        grant = await connector.exchange_code("code-1", "verifier-1")
        assert grant.refresh_token is None
        assert grant.expires_in == 3600
        assert grant.scopes == connector.scopes

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejection_carries_oauth_error(self, connector):
        respx.post(GOOGLE_TOKEN_URL).respond(400, json={"error": "invalid_grant"})
        with pytest.raises(ProviderRequestError) as excinfo:
            await connector.refresh_access_token("R")
        assert excinfo.value.status_code == 400
        assert excinfo.value.is_permanent

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_json_error_body(self, connector):
        respx.post(GOOGLE_TOKEN_URL).respond(502, text="<html>bad gateway</html>")
        with pytest.raises(ProviderRequestError) as excinfo:
            await connector.refresh_access_token("R")
        assert excinfo.value.status_code == 502
        assert not excinfo.value.is_permanent

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self, connector):
        respx.post(GOOGLE_TOKEN_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ProviderRequestError) as excinfo:
            await connector.refresh_access_token("R")
        assert excinfo.value.status_code is None


class TestRevoke:
    @pytest.mark.asyncio
    @respx.mock
    async def test_revoke_success(self, connector):
        respx.post(GOOGLE_REVOKE_URL).respond(200)
        assert await connector.revoke_token("A") is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_revoke_refused(self, connector):
        respx.post(GOOGLE_REVOKE_URL).respond(400)
        assert await connector.revoke_token("A") is False
