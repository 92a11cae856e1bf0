# src/bitbucket_auth/client.py
"""
Authenticated transport for the Bitbucket REST API.

Every call asks the CredentialBroker for a bearer string first. A 401 from
the API clears the broker's state and retries the call once, which triggers
a fresh authorization; a second 401 is reported to the caller.
"""

import base64
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .config import BITBUCKET_API_URL
from .credential_broker import CredentialBroker
from .error_handler import UpstreamRequestError, extract_error_message
from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("bitbucket_auth")

# At most one re-authentication per logical call
MAX_AUTH_RETRIES: int = 1


class AuthenticatedTransport:
    def __init__(
        self,
        broker: CredentialBroker,
        base_url: str = BITBUCKET_API_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.broker = broker
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "AuthenticatedTransport":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=TimeoutConfig.default())
        return self._client

    def is_authenticated(self) -> bool:
        return self.broker.is_authenticated()

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return f"{self.base_url}{endpoint}"

    async def _auth_header(self) -> str:
        token = await self.broker.get_access_token()
        if self.broker.is_basic_auth:
            credentials = base64.b64encode(
                f"{self.broker.username}:{token}".encode()
            ).decode()
            return f"Basic {credentials}"
        return f"Bearer {token}"

    async def _send(
        self,
        endpoint: str,
        method: str,
        default_headers: Dict[str, str],
        headers: Optional[Mapping[str, str]],
        **kwargs: Any,
    ) -> httpx.Response:
        merged = {"Authorization": await self._auth_header(), **default_headers}
        if headers:
            merged.update(headers)
        return await self._get_client().request(
            method, self._url(endpoint), headers=merged, **kwargs
        )

    def _should_reauthenticate(self, response: httpx.Response, retry_count: int) -> bool:
        return (
            response.status_code == 401
            and retry_count < MAX_AUTH_RETRIES
            and self.broker.has_oauth_credentials
        )

    def _reauthenticate(self):
        lib_logger.warning("Authentication failed (401), attempting to re-authenticate...")
        # The next get_access_token() joins or starts the single re-authorization
        self.broker.clear_auth()

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        *,
        json: Any = None,
        content: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        retry_count: int = 0,
    ) -> Any:
        """
        Make an authenticated JSON request to the Bitbucket API.

        Returns:
            The parsed JSON body, or {} for 204 No Content

        Raises:
            UpstreamRequestError: non-success status after the retry budget
        """
        response = await self._send(
            endpoint,
            method,
            {"Content-Type": "application/json", "Accept": "application/json"},
            headers,
            json=json,
            content=content,
            params=params,
        )

        if not response.is_success:
            error_message = extract_error_message(response.text)

            if self._should_reauthenticate(response, retry_count):
                self._reauthenticate()
                return await self.request(
                    endpoint,
                    method,
                    json=json,
                    content=content,
                    params=params,
                    headers=headers,
                    retry_count=retry_count + 1,
                )

            lib_logger.debug(
                f"Bitbucket API {method} {endpoint} failed: {response.status_code} {error_message}"
            )
            raise UpstreamRequestError(response.status_code, error_message)

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    async def request_raw(
        self,
        endpoint: str,
        method: str = "GET",
        *,
        headers: Optional[Mapping[str, str]] = None,
        retry_count: int = 0,
    ) -> str:
        """
        Make an authenticated request for opaque text (file contents, diffs).

        Same authentication, retry and error rules as request(); the body is
        returned verbatim.
        """
        response = await self._send(endpoint, method, {}, headers)

        if not response.is_success:
            if self._should_reauthenticate(response, retry_count):
                self._reauthenticate()
                return await self.request_raw(
                    endpoint, method, headers=headers, retry_count=retry_count + 1
                )
            raise UpstreamRequestError(response.status_code, extract_error_message(response.text))

        return response.text

    # =========================================================================
    # VERB HELPERS
    # =========================================================================

    async def get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """GET request; parameters whose value is None are dropped."""
        if params:
            params = {k: str(v) for k, v in params.items() if v is not None}
        return await self.request(endpoint, "GET", params=params or None)

    async def post(self, endpoint: str, body: Any = None) -> Any:
        return await self.request(endpoint, "POST", json=body)

    async def put(self, endpoint: str, body: Any = None) -> Any:
        return await self.request(endpoint, "PUT", json=body)

    async def delete(self, endpoint: str) -> Any:
        return await self.request(endpoint, "DELETE")

    async def get_raw(self, endpoint: str) -> str:
        return await self.request_raw(endpoint, "GET")
