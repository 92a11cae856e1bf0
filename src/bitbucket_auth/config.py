# src/bitbucket_auth/config.py
"""
Environment-style configuration for the credential subsystem.

    BITBUCKET_CLIENT_ID / BITBUCKET_CLIENT_SECRET  - OAuth consumer
    BITBUCKET_ACCESS_TOKEN (or BITBUCKET_TOKEN)    - directly supplied token
    BITBUCKET_REFRESH_TOKEN                        - refresh token for the direct token
    BITBUCKET_USERNAME                             - with a token, selects basic auth
    BITBUCKET_OAUTH_PORT                           - callback listener port
    BITBUCKET_OAUTH_INTERACTIVE                    - "false" disables the browser flow
    BITBUCKET_API_URL                              - API base URL
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .models import (
    AuthStrategy,
    BasicAuth,
    ClientIdentity,
    DirectToken,
    InteractiveOAuth,
)

lib_logger = logging.getLogger("bitbucket_auth")

BITBUCKET_API_URL = "https://api.bitbucket.org/2.0"
DEFAULT_OAUTH_CALLBACK_PORT: int = 9876

_FALSE_VALUES = {"0", "false", "no", "off"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_callback_port(value: Optional[str]) -> int:
    """Parse BITBUCKET_OAUTH_PORT, falling back to the default on bad input."""
    if value:
        try:
            port = int(value)
            if 0 < port < 65536:
                return port
        except ValueError:
            pass
        lib_logger.warning(
            f"Invalid BITBUCKET_OAUTH_PORT value: {value}, using default {DEFAULT_OAUTH_CALLBACK_PORT}"
        )
    return DEFAULT_OAUTH_CALLBACK_PORT


@dataclass(frozen=True)
class AuthConfig:
    client_id: str = ""
    client_secret: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    username: Optional[str] = None
    callback_port: int = DEFAULT_OAUTH_CALLBACK_PORT
    interactive: bool = True
    api_url: str = BITBUCKET_API_URL

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AuthConfig":
        env = os.environ if env is None else env
        interactive_flag = _clean(env.get("BITBUCKET_OAUTH_INTERACTIVE"))
        return cls(
            client_id=_clean(env.get("BITBUCKET_CLIENT_ID")) or "",
            client_secret=_clean(env.get("BITBUCKET_CLIENT_SECRET")) or "",
            # BITBUCKET_TOKEN is accepted for backwards compatibility
            access_token=_clean(env.get("BITBUCKET_ACCESS_TOKEN"))
            or _clean(env.get("BITBUCKET_TOKEN")),
            refresh_token=_clean(env.get("BITBUCKET_REFRESH_TOKEN")),
            username=_clean(env.get("BITBUCKET_USERNAME")),
            callback_port=parse_callback_port(env.get("BITBUCKET_OAUTH_PORT")),
            interactive=not (
                interactive_flag is not None
                and interactive_flag.lower() in _FALSE_VALUES
            ),
            api_url=(_clean(env.get("BITBUCKET_API_URL")) or BITBUCKET_API_URL).rstrip("/"),
        )

    @property
    def identity(self) -> ClientIdentity:
        return ClientIdentity(
            client_id=self.client_id,
            client_secret=self.client_secret,
            username=self.username,
        )

    def resolve_strategy(self) -> Optional[AuthStrategy]:
        """
        Pick the authentication strategy from the shape of the configuration.

        Returns None when none of the three shapes is satisfiable; the broker
        then fails closed at the first token request.
        """
        if self.username and self.access_token:
            return BasicAuth(username=self.username, token=self.access_token)
        if self.access_token:
            return DirectToken(
                access_token=self.access_token,
                refresh_token=self.refresh_token or "",
            )
        if self.client_id and self.client_secret:
            return InteractiveOAuth(client_id=self.client_id)
        return None
