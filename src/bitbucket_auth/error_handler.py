import json
import logging
from typing import Optional

lib_logger = logging.getLogger("bitbucket_auth")


CONFIGURATION_GUIDANCE = (
    "Not authenticated. Configure one of the following:\n"
    "  1. OAuth (interactive): BITBUCKET_CLIENT_ID and BITBUCKET_CLIENT_SECRET.\n"
    "     Create an OAuth consumer at "
    "https://bitbucket.org/<workspace>/workspace/settings/oauth-consumers\n"
    "     and set its callback URL to http://localhost:<port>/callback "
    "(default port 9876).\n"
    "  2. Access token: BITBUCKET_ACCESS_TOKEN (optionally BITBUCKET_REFRESH_TOKEN).\n"
    "  3. App password: BITBUCKET_USERNAME and BITBUCKET_ACCESS_TOKEN."
)


class BitbucketAuthError(Exception):
    """Base class for every error raised by the credential subsystem."""

    pass


class ConfigurationError(BitbucketAuthError):
    """
    Raised when no usable credential strategy was supplied.

    Fatal to any request. The default message enumerates the three
    supported configuration shapes.
    """

    def __init__(self, message: str = ""):
        self.message = message or CONFIGURATION_GUIDANCE
        super().__init__(self.message)


class AuthorizationError(BitbucketAuthError):
    """
    Raised when the interactive flow was denied or errored by the provider,
    timed out, or could not start its callback listener.

    Attributes:
        error: Provider error code (e.g. "access_denied"), or a local code
               such as "timeout" / "listener_failed"
        description: Optional human-readable detail
    """

    def __init__(self, error: str, description: Optional[str] = None, message: str = ""):
        self.error = error
        self.description = description
        self.message = message or (
            f"OAuth error: {error} - {description}" if description else f"OAuth error: {error}"
        )
        super().__init__(self.message)


class TokenExchangeError(BitbucketAuthError):
    """
    Raised when the token or refresh endpoint returned a non-success status.

    Attributes:
        status_code: HTTP status, or 0 when the endpoint could not be reached
        body: The provider's raw error body (or the transport error text)
    """

    def __init__(self, status_code: int, body: str, action: str = "exchange code for token"):
        self.status_code = status_code
        self.body = body
        self.message = f"Failed to {action}: {body}"
        super().__init__(self.message)


class UpstreamRequestError(BitbucketAuthError):
    """
    Raised when an authenticated API call returned a non-success status
    after the retry budget was spent.

    Attributes:
        status_code: HTTP status returned by the API
        message: Message extracted from the error body
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Bitbucket API error ({status_code}): {message}")


class PersistenceWarning(BitbucketAuthError):
    """
    Describes a read/write failure on the token file.

    Built and logged by TokenStore; never raised to callers, since the
    process can always re-authenticate.
    """

    def __init__(self, operation: str, path: str, reason: str):
        self.operation = operation
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to {operation} persisted tokens at {path}: {reason}")


def extract_error_message(body: str) -> str:
    """
    Extract a human-readable message from an API error body.

    Handles the Bitbucket envelope {"type": "error", "error": {"message": ...}}
    and a flat {"message": ...}; anything else yields the raw body text.
    """
    if not body:
        return body

    try:
        data = json.loads(body)
    except ValueError:
        return body

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(data.get("message"), str):
            return data["message"]
    return body


def mask_credential(credential: Optional[str]) -> str:
    """
    Mask a credential for safe display in logs and error messages.

    Shows the last 4 characters of anything long enough to be a real token.
    """
    if not credential:
        return "<none>"
    if len(credential) > 8:
        return f"...{credential[-4:]}"
    return "***"


def describe_error(e: BaseException) -> str:
    """
    Render an exception as a plain single message for the tool layer.

    Never includes a traceback; unknown exceptions fall back to their class
    name when they carry no text.
    """
    text = str(e).strip()
    if isinstance(e, BitbucketAuthError):
        return text
    return text or type(e).__name__
