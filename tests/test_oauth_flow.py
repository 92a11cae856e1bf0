"""
Tests for AuthorizationFlow against a real callback listener on loopback.

The token endpoint is replaced by an AsyncMock so only the local redirect
traffic goes over the wire.
"""
import asyncio
import socket
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from bitbucket_auth import (
    AuthorizationError,
    AuthorizationFlow,
    ClientIdentity,
    OAuthTokenClient,
    TokenExchangeError,
)
from bitbucket_auth.oauth_flow import FlowState, error_page

from conftest import make_credentials


@pytest.fixture
def token_client():
    client = OAuthTokenClient(ClientIdentity(client_id="test-client", client_secret="test-secret"))
    client.exchange_code = AsyncMock(return_value=make_credentials(access_token="exchanged-token"))
    return client


@pytest.fixture
def make_flow(token_client, store, free_port):
    def _make(**kwargs):
        kwargs.setdefault("timeout", 10)
        return AuthorizationFlow(
            token_client=token_client,
            store=store,
            port=free_port,
            host="127.0.0.1",
            open_browser=False,
            **kwargs,
        )

    return _make


async def _wait_for_listener(flow):
    for _ in range(200):
        if flow.state is FlowState.AWAITING_REDIRECT:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"listener never became ready (state={flow.state})")


async def _callback(port, path="/callback", **params):
    async with httpx.AsyncClient(trust_env=False) as client:
        return await client.get(f"http://127.0.0.1:{port}{path}", params=params)


class TestSuccess:
    @pytest.mark.asyncio
    async def test_code_is_exchanged_and_persisted(self, make_flow, token_client, store, free_port):
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        response = await _callback(free_port, code="auth-code-123")
        creds = await run

        assert response.status_code == 200
        assert "Authentication Successful" in response.text
        assert creds.access_token == "exchanged-token"
        token_client.exchange_code.assert_awaited_once_with("auth-code-123")
        assert flow.state is FlowState.DONE

        record = store.load(client_id="test-client")
        assert record.credentials == creds

    @pytest.mark.asyncio
    async def test_listener_is_closed_after_success(self, make_flow, free_port):
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        await _callback(free_port, code="auth-code-123")
        await run

        with pytest.raises(httpx.ConnectError):
            await _callback(free_port, code="auth-code-456")

    @pytest.mark.asyncio
    async def test_missing_code_keeps_waiting(self, make_flow, free_port):
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        response = await _callback(free_port)
        assert response.status_code == 400
        assert not run.done()
        assert flow.state is FlowState.AWAITING_REDIRECT

        await _callback(free_port, code="auth-code-123")
        creds = await run
        assert creds.access_token == "exchanged-token"

    @pytest.mark.asyncio
    async def test_unknown_path_is_not_found(self, make_flow, free_port):
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        response = await _callback(free_port, path="/favicon.ico")
        assert response.status_code == 404

        await _callback(free_port, code="auth-code-123")
        await run


class TestFailure:
    @pytest.mark.asyncio
    async def test_provider_error_fails_flow(self, make_flow, token_client, free_port):
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        response = await _callback(
            free_port, error="access_denied", error_description="User denied access"
        )

        assert response.status_code == 400
        assert "access_denied" in response.text
        assert "User denied access" in response.text

        with pytest.raises(AuthorizationError) as excinfo:
            await run
        assert excinfo.value.error == "access_denied"
        assert "access_denied" in str(excinfo.value)
        token_client.exchange_code.assert_not_awaited()

        # The listener is gone once the flow has failed
        with pytest.raises(httpx.ConnectError):
            await _callback(free_port, code="late-code")

    @pytest.mark.asyncio
    async def test_exchange_failure_returns_server_error(self, make_flow, token_client, store, free_port):
        token_client.exchange_code.side_effect = TokenExchangeError(400, '{"error": "invalid_grant"}')
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        response = await _callback(free_port, code="used-code")

        assert response.status_code == 500
        with pytest.raises(TokenExchangeError) as excinfo:
            await run
        assert excinfo.value.status_code == 400
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_unexpected_exchange_error_settles_immediately(self, make_flow, token_client, store, free_port):
        token_client.exchange_code.side_effect = RuntimeError("connection pool exploded")
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        response = await _callback(free_port, code="auth-code-123")

        assert response.status_code == 500
        assert "token_exchange_failed" in response.text
        with pytest.raises(AuthorizationError) as excinfo:
            await asyncio.wait_for(run, timeout=2)
        assert excinfo.value.error == "token_exchange_failed"
        assert "connection pool exploded" in str(excinfo.value)
        assert flow.state is FlowState.FAILED
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_timeout(self, make_flow, free_port):
        flow = make_flow(timeout=0.2)

        with pytest.raises(AuthorizationError) as excinfo:
            await flow.run()

        assert excinfo.value.error == "timeout"
        assert "timed out" in str(excinfo.value)
        with pytest.raises(httpx.ConnectError):
            await _callback(free_port, code="late-code")

    @pytest.mark.asyncio
    async def test_port_in_use(self, make_flow, free_port):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", free_port))
            blocker.listen(1)

            flow = make_flow()
            with pytest.raises(AuthorizationError) as excinfo:
                await flow.run()

        assert excinfo.value.error == "listener_failed"
        assert "Failed to start OAuth callback server" in str(excinfo.value)
        assert flow.state is FlowState.FAILED

    @pytest.mark.asyncio
    async def test_flow_cannot_be_started_twice(self, make_flow, free_port):
        flow = make_flow()
        run = asyncio.ensure_future(flow.run())
        await _wait_for_listener(flow)

        with pytest.raises(RuntimeError):
            await flow.start()

        await _callback(free_port, code="auth-code-123")
        await run


class TestPrompt:
    @pytest.mark.asyncio
    async def test_browser_is_opened_when_allowed(self, token_client, store, free_port):
        flow = AuthorizationFlow(
            token_client=token_client, store=store, port=free_port, host="127.0.0.1", timeout=10
        )

        with patch("bitbucket_auth.oauth_flow.is_headless_environment", return_value=False), \
                patch("bitbucket_auth.oauth_flow.webbrowser.open", return_value=True) as mock_open:
            run = asyncio.ensure_future(flow.run())
            await _wait_for_listener(flow)
            await _callback(free_port, code="auth-code-123")
            await run

        mock_open.assert_called_once()
        url = mock_open.call_args[0][0]
        assert url.startswith("https://bitbucket.org/site/oauth2/authorize?")
        assert parse_qs(urlparse(url).query)["client_id"] == ["test-client"]

    @pytest.mark.asyncio
    async def test_browser_failure_does_not_fail_the_flow(self, token_client, store, free_port):
        flow = AuthorizationFlow(
            token_client=token_client, store=store, port=free_port, host="127.0.0.1", timeout=10
        )

        with patch("bitbucket_auth.oauth_flow.is_headless_environment", return_value=False), \
                patch("bitbucket_auth.oauth_flow.webbrowser.open", side_effect=RuntimeError("no browser")):
            run = asyncio.ensure_future(flow.run())
            await _wait_for_listener(flow)
            await _callback(free_port, code="auth-code-123")
            creds = await run

        assert creds.access_token == "exchanged-token"

    @pytest.mark.asyncio
    async def test_headless_never_opens_browser(self, token_client, store, free_port):
        flow = AuthorizationFlow(
            token_client=token_client, store=store, port=free_port, host="127.0.0.1", timeout=10
        )

        with patch("bitbucket_auth.oauth_flow.is_headless_environment", return_value=True), \
                patch("bitbucket_auth.oauth_flow.webbrowser.open") as mock_open:
            run = asyncio.ensure_future(flow.run())
            await _wait_for_listener(flow)
            await _callback(free_port, code="auth-code-123")
            await run

        mock_open.assert_not_called()


def test_error_page_escapes_provider_text():
    page = error_page("<script>", "a & b")

    assert "<script>" not in page.split("</h1>", 1)[1]
    assert "&lt;script&gt;" in page
    assert "a &amp; b" in page
