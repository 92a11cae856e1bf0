"""
Tests for OAuthTokenClient: grant requests and error mapping.
"""
import base64
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from bitbucket_auth import ClientIdentity, OAuthTokenClient, TokenExchangeError
from bitbucket_auth.token_endpoint import (
    BITBUCKET_TOKEN_URL,
    DEFAULT_SCOPES,
    basic_auth_header,
)


@pytest.fixture
def client():
    return OAuthTokenClient(ClientIdentity(client_id="test-client", client_secret="test-secret"))


def test_basic_auth_header():
    header = basic_auth_header("test-client", "test-secret")

    assert header == "Basic " + base64.b64encode(b"test-client:test-secret").decode()


class TestAuthorizationUrl:
    def test_default_scopes(self, client):
        query = parse_qs(urlparse(client.authorization_url()).query)

        assert query["client_id"] == ["test-client"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == [" ".join(DEFAULT_SCOPES)]
        assert "redirect_uri" not in query

    def test_custom_scopes_and_redirect(self, client):
        url = client.authorization_url(["account"], redirect_uri="http://localhost:9876/callback")
        query = parse_qs(urlparse(url).query)

        assert query["scope"] == ["account"]
        assert query["redirect_uri"] == ["http://localhost:9876/callback"]


class TestExchange:
    @pytest.mark.asyncio
    async def test_exchange_code(self, client):
        before = time.time()
        with respx.mock() as mock:
            route = mock.post(BITBUCKET_TOKEN_URL).mock(
                return_value=httpx.Response(
                    200,
                    json={"access_token": "acc", "refresh_token": "ref", "expires_in": 7200},
                )
            )
            creds = await client.exchange_code("the-code")

        assert creds.access_token == "acc"
        assert creds.refresh_token == "ref"
        assert before + 7200 <= creds.expires_at + 0.001

        request = route.calls.last.request
        assert request.headers["Authorization"] == basic_auth_header("test-client", "test-secret")
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert parse_qs(request.content.decode()) == {
            "grant_type": ["authorization_code"],
            "code": ["the-code"],
        }

    @pytest.mark.asyncio
    async def test_non_success_status_carries_body(self, client):
        with respx.mock() as mock:
            mock.post(BITBUCKET_TOKEN_URL).mock(
                return_value=httpx.Response(400, text='{"error": "invalid_grant"}')
            )
            with pytest.raises(TokenExchangeError) as excinfo:
                await client.exchange_code("used-code")

        assert excinfo.value.status_code == 400
        assert excinfo.value.body == '{"error": "invalid_grant"}'
        assert str(excinfo.value).startswith("Failed to exchange code for token:")

    @pytest.mark.asyncio
    async def test_transport_failure_is_wrapped(self, client):
        with respx.mock() as mock:
            mock.post(BITBUCKET_TOKEN_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))
            with pytest.raises(TokenExchangeError) as excinfo:
                await client.exchange_code("the-code")

        assert excinfo.value.status_code == 0

    @pytest.mark.asyncio
    async def test_response_without_access_token(self, client):
        with respx.mock() as mock:
            mock.post(BITBUCKET_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"token_type": "bearer"})
            )
            with pytest.raises(TokenExchangeError):
                await client.exchange_code("the-code")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_grant(self, client):
        with respx.mock() as mock:
            route = mock.post(BITBUCKET_TOKEN_URL).mock(
                return_value=httpx.Response(
                    200, json={"access_token": "new-acc", "refresh_token": "new-ref", "expires_in": 3600}
                )
            )
            creds = await client.refresh("old-ref")

        assert creds.access_token == "new-acc"
        assert creds.refresh_token == "new-ref"
        assert parse_qs(route.calls.last.request.content.decode()) == {
            "grant_type": ["refresh_token"],
            "refresh_token": ["old-ref"],
        }

    @pytest.mark.asyncio
    async def test_refresh_keeps_previous_refresh_token(self, client):
        with respx.mock() as mock:
            mock.post(BITBUCKET_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "new-acc", "expires_in": 3600})
            )
            creds = await client.refresh("old-ref")

        assert creds.refresh_token == "old-ref"

    @pytest.mark.asyncio
    async def test_refresh_without_token_fails_without_request(self, client):
        with respx.mock(assert_all_called=False) as mock:
            with pytest.raises(TokenExchangeError) as excinfo:
                await client.refresh("")

        assert mock.calls.call_count == 0
        assert "refresh token" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_refresh_failure_message(self, client):
        with respx.mock() as mock:
            mock.post(BITBUCKET_TOKEN_URL).mock(return_value=httpx.Response(401, text="unauthorized"))
            with pytest.raises(TokenExchangeError) as excinfo:
                await client.refresh("old-ref")

        assert str(excinfo.value) == "Failed to refresh token: unauthorized"
