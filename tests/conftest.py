"""
Pytest configuration and fixtures for the test suite.
"""
import asyncio
import os
import socket
import sys
import time

import pytest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bitbucket_auth import AuthConfig, CredentialSet, TokenStore  # noqa: E402


ENV_VARS = [
    "BITBUCKET_CLIENT_ID",
    "BITBUCKET_CLIENT_SECRET",
    "BITBUCKET_ACCESS_TOKEN",
    "BITBUCKET_TOKEN",
    "BITBUCKET_REFRESH_TOKEN",
    "BITBUCKET_USERNAME",
    "BITBUCKET_OAUTH_PORT",
    "BITBUCKET_OAUTH_INTERACTIVE",
    "BITBUCKET_API_URL",
]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Never read the developer's real credentials or token file."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BITBUCKET_TOKEN_FILE", str(tmp_path / "tokens.json"))


@pytest.fixture
def token_path(tmp_path):
    return tmp_path / "tokens.json"


@pytest.fixture
def store(token_path):
    return TokenStore(token_path)


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago on the loopback interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def oauth_config():
    """Client id + secret only: the interactive strategy."""
    return AuthConfig(client_id="test-client", client_secret="test-secret")


def make_credentials(access_token="access-1234567890", refresh_token="refresh-abc", expires_in=3600):
    return CredentialSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=time.time() + expires_in,
    )


class FakeFlow:
    """Stands in for AuthorizationFlow; counts runs and can be held open."""

    def __init__(self, result=None, error=None, gate=None):
        self.result = result
        self.error = error
        self.gate = gate
        self.runs = 0

    async def run(self):
        self.runs += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result


class FlowFactory:
    """Callable handed to CredentialBroker; records how many flows were built."""

    def __init__(self, flow):
        self.flow = flow
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.flow


@pytest.fixture
def flow_factory():
    new_creds = make_credentials(access_token="fresh-access-token", refresh_token="fresh-refresh")
    return FlowFactory(FakeFlow(result=new_creds))
