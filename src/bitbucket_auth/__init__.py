from typing import Optional

from .client import AuthenticatedTransport
from .config import AuthConfig
from .credential_broker import CredentialBroker
from .error_handler import (
    AuthorizationError,
    BitbucketAuthError,
    ConfigurationError,
    PersistenceWarning,
    TokenExchangeError,
    UpstreamRequestError,
    describe_error,
)
from .models import (
    BasicAuth,
    ClientIdentity,
    CredentialSet,
    DirectToken,
    InteractiveOAuth,
    PersistedCredential,
)
from .oauth_flow import AuthorizationFlow
from .token_endpoint import OAuthTokenClient
from .token_store import TokenStore

__all__ = [
    "AuthenticatedTransport",
    "AuthConfig",
    "AuthorizationError",
    "AuthorizationFlow",
    "BasicAuth",
    "BitbucketAuthError",
    "ClientIdentity",
    "ConfigurationError",
    "CredentialBroker",
    "CredentialSet",
    "DirectToken",
    "InteractiveOAuth",
    "OAuthTokenClient",
    "PersistedCredential",
    "PersistenceWarning",
    "TokenExchangeError",
    "TokenStore",
    "UpstreamRequestError",
    "create_transport",
    "describe_error",
]


def create_transport(config: Optional[AuthConfig] = None) -> AuthenticatedTransport:
    """Build a broker and transport from the environment (or a given config)."""
    config = config or AuthConfig.from_env()
    return AuthenticatedTransport(CredentialBroker(config), base_url=config.api_url)
