# src/bitbucket_auth/token_endpoint.py
"""
Client for the Bitbucket OAuth2 endpoints.

- Authorization URL: https://bitbucket.org/site/oauth2/authorize
- Token URL: https://bitbucket.org/site/oauth2/access_token

Both grants (authorization_code, refresh_token) are form-encoded and
authenticated with HTTP Basic built from the client id and secret.
"""

import base64
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .error_handler import TokenExchangeError
from .models import ClientIdentity, CredentialSet
from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("bitbucket_auth")

BITBUCKET_AUTH_URL = "https://bitbucket.org/site/oauth2/authorize"
BITBUCKET_TOKEN_URL = "https://bitbucket.org/site/oauth2/access_token"

DEFAULT_SCOPES: List[str] = ["repository", "pullrequest", "issue", "pipeline"]


def basic_auth_header(user: str, secret: str) -> str:
    """Build an HTTP Basic Authorization header value."""
    encoded = base64.b64encode(f"{user}:{secret}".encode()).decode()
    return f"Basic {encoded}"


class OAuthTokenClient:
    def __init__(
        self,
        identity: ClientIdentity,
        auth_url: str = BITBUCKET_AUTH_URL,
        token_url: str = BITBUCKET_TOKEN_URL,
    ):
        self.identity = identity
        self.auth_url = auth_url
        self.token_url = token_url

    def authorization_url(
        self,
        scopes: Optional[List[str]] = None,
        redirect_uri: Optional[str] = None,
    ) -> str:
        """Build the URL the user visits to grant consent."""
        params = {
            "client_id": self.identity.client_id,
            "response_type": "code",
        }
        if scopes is None:
            scopes = DEFAULT_SCOPES
        if scopes:
            params["scope"] = " ".join(scopes)
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> CredentialSet:
        """
        Redeem an authorization code. A code can only be redeemed once.

        Raises:
            TokenExchangeError: on a non-success status or a transport failure
        """
        data = await self._post_grant(
            {"grant_type": "authorization_code", "code": code},
            action="exchange code for token",
        )
        return self._to_credentials(data, action="exchange code for token")

    async def refresh(self, refresh_token: str) -> CredentialSet:
        """
        Obtain a new credential set from a refresh token.

        Raises:
            TokenExchangeError: on a non-success status or a transport failure
        """
        if not refresh_token:
            raise TokenExchangeError(0, "No refresh token available", action="refresh token")

        data = await self._post_grant(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            action="refresh token",
        )
        return self._to_credentials(
            data, action="refresh token", previous_refresh_token=refresh_token
        )

    async def _post_grant(self, form: Dict[str, str], action: str) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            "Authorization": basic_auth_header(
                self.identity.client_id, self.identity.client_secret
            ),
        }

        try:
            async with httpx.AsyncClient(timeout=TimeoutConfig.default()) as client:
                response = await client.post(self.token_url, headers=headers, data=form)
        except httpx.HTTPError as e:
            lib_logger.error(f"Bitbucket token endpoint unreachable ({action}): {e}")
            raise TokenExchangeError(0, str(e) or type(e).__name__, action=action) from e

        if not response.is_success:
            error_text = response.text
            lib_logger.error(
                f"Bitbucket token endpoint failed to {action}: {response.status_code} {error_text}"
            )
            raise TokenExchangeError(response.status_code, error_text, action=action)

        try:
            return response.json()
        except ValueError as e:
            raise TokenExchangeError(
                response.status_code, f"Invalid JSON in token response: {response.text}", action=action
            ) from e

    @staticmethod
    def _to_credentials(
        data: Dict[str, Any], action: str, previous_refresh_token: str = ""
    ) -> CredentialSet:
        try:
            return CredentialSet.from_token_response(
                data, previous_refresh_token=previous_refresh_token
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise TokenExchangeError(200, str(e), action=action) from e
