# src/bitbucket_auth/models.py
"""
Credential data model.

CredentialSet       - the in-memory token triple owned by CredentialBroker
PersistedCredential - CredentialSet plus the client id it was issued under
ClientIdentity      - OAuth consumer identity, immutable for the process lifetime
DirectToken / BasicAuth / InteractiveOAuth - the authentication strategy variant
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

# Lifetime assumed for a directly supplied token whose real expiry is unknown
DEFAULT_DIRECT_TOKEN_LIFETIME: int = 3600

# Basic-auth secrets never expire; expires_at still has to be a concrete instant
FAR_FUTURE_EXPIRY: float = 253402300799.0  # 9999-12-31T23:59:59Z


def _normalize_epoch(value: Any) -> float:
    """Accept epoch seconds or epoch milliseconds and return seconds."""
    timestamp = float(value)
    if timestamp > 1e12:
        timestamp = timestamp / 1000
    return timestamp


@dataclass(frozen=True)
class CredentialSet:
    access_token: str
    refresh_token: str
    expires_at: float  # epoch seconds, millisecond precision

    def __post_init__(self):
        # Persisted as whole milliseconds; keep memory and disk identical
        object.__setattr__(self, "expires_at", round(float(self.expires_at), 3))

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        previous_refresh_token: str = "",
        now: Optional[float] = None,
    ) -> "CredentialSet":
        """
        Build a credential set from an OAuth token endpoint response.

        expires_at = now + expires_in. A response that omits refresh_token
        keeps the previous one.
        """
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("Missing access_token in token response")

        now = time.time() if now is None else now
        expires_in = data.get("expires_in", DEFAULT_DIRECT_TOKEN_LIFETIME)
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or previous_refresh_token or "",
            expires_at=now + float(expires_in),
        )

    def seconds_until_expiry(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return self.expires_at - now

    def expires_within(self, margin: float, now: Optional[float] = None) -> bool:
        """True if the token expires in less than `margin` seconds (or already has)."""
        return self.seconds_until_expiry(now) < margin


@dataclass(frozen=True)
class PersistedCredential:
    """The single record stored by TokenStore."""

    credentials: CredentialSet
    client_id: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "accessToken": self.credentials.access_token,
            "refreshToken": self.credentials.refresh_token,
            "expiresAt": int(round(self.credentials.expires_at * 1000)),
            "clientId": self.client_id,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PersistedCredential":
        """
        Parse a stored record.

        Raises:
            ValueError: if a field is missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("persisted record is not a JSON object")
        try:
            access_token = data["accessToken"]
            expires_at = _normalize_epoch(data["expiresAt"])
            client_id = data["clientId"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"persisted record is missing field {e}")

        if not isinstance(access_token, str) or not access_token:
            raise ValueError("persisted record has an empty accessToken")
        if not isinstance(client_id, str):
            raise ValueError("persisted record has an invalid clientId")

        refresh_token = data.get("refreshToken")
        if refresh_token is None:
            refresh_token = ""
        if not isinstance(refresh_token, str):
            raise ValueError("persisted record has an invalid refreshToken")

        return cls(
            credentials=CredentialSet(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            ),
            client_id=client_id,
        )


@dataclass(frozen=True)
class ClientIdentity:
    client_id: str = ""
    client_secret: str = ""
    username: Optional[str] = None

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


# =============================================================================
# STRATEGY VARIANT
# =============================================================================


@dataclass(frozen=True)
class DirectToken:
    """A token supplied directly; bearer header, assumed one-hour lifetime."""

    access_token: str
    refresh_token: str = ""


@dataclass(frozen=True)
class BasicAuth:
    """Username plus long-lived secret (app password); never expires."""

    username: str
    token: str


@dataclass(frozen=True)
class InteractiveOAuth:
    """Client id + secret only; credentials come from the browser flow."""

    client_id: str


AuthStrategy = Union[DirectToken, BasicAuth, InteractiveOAuth]
