# src/bitbucket_auth/credential_broker.py
"""
CredentialBroker - owns the process' credential state.

One instance is built at startup from AuthConfig and handed to every
component that needs authenticated access. It decides, on every token
request, whether the held credential is good, must be refreshed, or must be
obtained interactively, and it runs at most one refresh/authorization at a
time (see SingleFlight).
"""

import logging
import time
from typing import Callable, Optional

from .config import AuthConfig
from .error_handler import (
    BitbucketAuthError,
    CONFIGURATION_GUIDANCE,
    ConfigurationError,
    mask_credential,
)
from .models import (
    FAR_FUTURE_EXPIRY,
    DEFAULT_DIRECT_TOKEN_LIFETIME,
    AuthStrategy,
    BasicAuth,
    CredentialSet,
    DirectToken,
    InteractiveOAuth,
    PersistedCredential,
)
from .oauth_flow import AuthorizationFlow
from .token_endpoint import OAuthTokenClient
from .token_store import TokenStore
from .utils.single_flight import SingleFlight

lib_logger = logging.getLogger("bitbucket_auth")

# Refresh tokens this far before expiry
REFRESH_EXPIRY_BUFFER_SECONDS: int = 5 * 60


class CredentialBroker:
    """
    Produces a currently valid bearer string on demand.

    Strategy is fixed at construction:
        BasicAuth        - username + app password, returned as-is forever
        DirectToken      - supplied token, assumed to live one hour
        InteractiveOAuth - browser flow on first use, refresh afterwards
        None             - nothing configured; token requests fail closed
    """

    def __init__(
        self,
        config: AuthConfig,
        store: Optional[TokenStore] = None,
        token_client: Optional[OAuthTokenClient] = None,
        flow_factory: Optional[Callable[[], AuthorizationFlow]] = None,
    ):
        self.config = config
        self.identity = config.identity
        self.strategy: Optional[AuthStrategy] = config.resolve_strategy()
        self.store = store if store is not None else TokenStore()
        self.token_client = token_client or OAuthTokenClient(self.identity)
        self._flow_factory = flow_factory or self._default_flow
        self._flight = SingleFlight("credentials")
        self._credentials: Optional[CredentialSet] = self._initial_credentials()

        lib_logger.debug(
            f"CredentialBroker using {self.strategy_name} strategy "
            f"(interactive available: {self.has_oauth_credentials})"
        )

    def _initial_credentials(self) -> Optional[CredentialSet]:
        strategy = self.strategy
        if isinstance(strategy, BasicAuth):
            return CredentialSet(
                access_token=strategy.token,
                refresh_token="",
                expires_at=FAR_FUTURE_EXPIRY,
            )
        if isinstance(strategy, DirectToken):
            return CredentialSet(
                access_token=strategy.access_token,
                refresh_token=strategy.refresh_token,
                expires_at=time.time() + DEFAULT_DIRECT_TOKEN_LIFETIME,
            )
        if isinstance(strategy, InteractiveOAuth):
            record = self.store.load(client_id=strategy.client_id)
            if record is not None:
                lib_logger.info(
                    f"Restored persisted Bitbucket tokens ({mask_credential(record.credentials.access_token)})"
                )
                return record.credentials
        return None

    def _default_flow(self) -> AuthorizationFlow:
        return AuthorizationFlow(
            token_client=self.token_client,
            store=self.store,
            port=self.config.callback_port,
        )

    # =========================================================================
    # STRATEGY INTROSPECTION
    # =========================================================================

    @property
    def strategy_name(self) -> str:
        if isinstance(self.strategy, BasicAuth):
            return "basic-auth"
        if isinstance(self.strategy, DirectToken):
            return "direct-token"
        if isinstance(self.strategy, InteractiveOAuth):
            return "interactive-oauth"
        return "unconfigured"

    @property
    def is_basic_auth(self) -> bool:
        return isinstance(self.strategy, BasicAuth)

    @property
    def username(self) -> Optional[str]:
        if isinstance(self.strategy, BasicAuth):
            return self.strategy.username
        return None

    @property
    def has_oauth_credentials(self) -> bool:
        """True when the browser flow may be used to (re)authenticate."""
        return (
            not self.is_basic_auth
            and self.identity.has_client_credentials
            and self.config.interactive
        )

    @property
    def can_refresh(self) -> bool:
        """Refresh needs the client identity for the token endpoint's Basic auth."""
        return not self.is_basic_auth and self.identity.has_client_credentials

    def is_authenticated(self) -> bool:
        return self._credentials is not None

    def get_credentials(self) -> Optional[CredentialSet]:
        """Snapshot of the held credential set (for persistence/inspection)."""
        return self._credentials

    def set_credentials(self, credentials: CredentialSet):
        """Restore a credential set obtained elsewhere."""
        self._credentials = credentials

    def get_status(self) -> dict:
        creds = self._credentials
        return {
            "strategy": self.strategy_name,
            "authenticated": creds is not None,
            "access_token": mask_credential(creds.access_token) if creds else None,
            "expires_in": round(creds.seconds_until_expiry()) if creds else None,
            "interactive": self.has_oauth_credentials,
            "flight": self._flight.get_status(),
        }

    # =========================================================================
    # PUBLIC CONTRACT
    # =========================================================================

    async def get_access_token(self) -> str:
        """
        Return a valid bearer string, refreshing or authorizing as needed.

        Raises:
            ConfigurationError: nothing usable is configured
            AuthorizationError: the interactive flow failed
            TokenExchangeError: refresh failed and no interactive fallback exists
        """
        if self.is_basic_auth:
            return self.strategy.token

        creds = self._credentials
        if creds is not None and not creds.expires_within(REFRESH_EXPIRY_BUFFER_SECONDS):
            return creds.access_token

        if creds is None and not self.has_oauth_credentials:
            raise self._not_authenticated()

        creds = await self._flight.run(self._obtain_credentials, label="credential update")
        return creds.access_token

    def _not_authenticated(self) -> ConfigurationError:
        if self.identity.has_client_credentials and not self.config.interactive:
            return ConfigurationError(
                "Not authenticated and interactive OAuth is disabled "
                "(BITBUCKET_OAUTH_INTERACTIVE). Run `bitbucket-auth login` once, "
                "or configure a token.\n\n" + CONFIGURATION_GUIDANCE
            )
        return ConfigurationError()

    def clear_auth(self):
        """Forget in-memory credentials; the next token request re-authenticates."""
        if self._credentials is not None:
            lib_logger.info("Clearing in-memory Bitbucket credentials")
        self._credentials = None

    # =========================================================================
    # SINGLE-FLIGHT OPERATIONS
    # =========================================================================

    async def _obtain_credentials(self) -> CredentialSet:
        creds = self._credentials

        if creds is None:
            if not self.has_oauth_credentials:
                raise self._not_authenticated()
            return await self._authorize()

        if not creds.expires_within(REFRESH_EXPIRY_BUFFER_SECONDS):
            return creds

        if not creds.refresh_token or not self.can_refresh:
            # Nothing to refresh with; keep using the token until the API rejects it
            lib_logger.debug(
                "Access token is near expiry but cannot be refreshed; using it as-is"
            )
            return creds

        try:
            return await self._refresh(creds)
        except BitbucketAuthError as e:
            if not self.has_oauth_credentials:
                raise
            lib_logger.warning(
                f"Automatic token refresh failed: {e}. Proceeding to interactive login."
            )
            return await self._authorize()

    async def _refresh(self, creds: CredentialSet) -> CredentialSet:
        lib_logger.info("Access token expiring soon, refreshing...")
        new_creds = await self.token_client.refresh(creds.refresh_token)
        self._credentials = new_creds
        self.store.save(
            PersistedCredential(credentials=new_creds, client_id=self.identity.client_id)
        )
        lib_logger.info(
            f"Tokens refreshed successfully ({mask_credential(new_creds.access_token)})"
        )
        return new_creds

    async def _authorize(self) -> CredentialSet:
        lib_logger.warning("Bitbucket OAuth authorization required, starting browser flow.")
        flow = self._flow_factory()
        # The flow persists the credentials itself
        new_creds = await flow.run()
        self._credentials = new_creds
        return new_creds
