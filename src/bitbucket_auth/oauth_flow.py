# src/bitbucket_auth/oauth_flow.py
"""
Interactive OAuth authorization code flow.

A one-shot local HTTP listener receives the provider's redirect on
http://localhost:<port>/callback, the user consents in a browser, and the
resulting code is exchanged for a CredentialSet exactly once.

    IDLE -> LISTENER_STARTED -> AWAITING_REDIRECT
         -> CODE_RECEIVED -> EXCHANGING -> DONE
         -> ERROR_RECEIVED -> FAILED
         -> TIMEOUT -> FAILED

One listener and one watchdog exist per flow; both are released on every
exit path.
"""

import asyncio
import html
import logging
import webbrowser
from enum import Enum
from typing import List, Optional

from aiohttp import web
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from .config import DEFAULT_OAUTH_CALLBACK_PORT
from .error_handler import AuthorizationError, BitbucketAuthError, TokenExchangeError
from .models import CredentialSet, PersistedCredential
from .token_endpoint import OAuthTokenClient
from .token_store import TokenStore
from .utils.headless_detection import is_headless_environment

lib_logger = logging.getLogger("bitbucket_auth")

# stdout may carry a tool protocol; everything user-facing goes to stderr
console = Console(stderr=True)

CALLBACK_PATH = "/callback"
DEFAULT_FLOW_TIMEOUT: float = 5 * 60


class FlowState(Enum):
    IDLE = "idle"
    LISTENER_STARTED = "listener_started"
    AWAITING_REDIRECT = "awaiting_redirect"
    CODE_RECEIVED = "code_received"
    EXCHANGING = "exchanging"
    DONE = "done"
    ERROR_RECEIVED = "error_received"
    TIMEOUT = "timeout"
    FAILED = "failed"


TERMINAL_STATES = frozenset({FlowState.DONE, FlowState.FAILED})


def _page(title: str, heading: str, color: str, body: str, auto_close: bool = False) -> str:
    script = "<script>setTimeout(() => window.close(), 3000);</script>" if auto_close else ""
    return (
        "<html>"
        f"<head><title>{title}</title></head>"
        '<body style="font-family: system-ui; padding: 40px; max-width: 600px; margin: 0 auto;">'
        f'<h1 style="color: {color};">{heading}</h1>'
        f"{body}"
        f"{script}"
        "</body></html>"
    )


def success_page() -> str:
    return _page(
        "Success!",
        "&#10003; Authentication Successful!",
        "#28a745",
        "<p>You are now connected to Bitbucket.</p>"
        '<p style="color: #666;">You can close this window and return to your editor.</p>',
        auto_close=True,
    )


def error_page(error: str, description: Optional[str] = None) -> str:
    body = f"<p><strong>Error:</strong> {html.escape(error)}</p>"
    if description:
        body += f"<p>{html.escape(description)}</p>"
    body += "<p>You can close this window.</p>"
    return _page("Authentication Failed", "&#10007; Authentication Failed", "#dc3545", body)


class OAuthCallbackServer:
    """
    Minimal HTTP server for the OAuth redirect. Routing only; every decision
    about the flow is delegated to the owning AuthorizationFlow.
    """

    def __init__(self, flow: "AuthorizationFlow", host: str, port: int):
        self.flow = flow
        self.host = host
        self.port = port
        self.app = web.Application()
        self.app.router.add_get(CALLBACK_PATH, self._handle_callback)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        """
        Starts the listener.

        Raises:
            OSError: if the port cannot be bound
        """
        self.runner = web.AppRunner(self.app, access_log=None, shutdown_timeout=2.0)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        try:
            await self.site.start()
        except OSError:
            await self.stop()
            raise
        lib_logger.debug(f"OAuth callback server started on {self.host}:{self.port}")

    async def stop(self):
        """Stops the listener. Safe to call more than once."""
        runner, self.runner, self.site = self.runner, None, None
        if runner is not None:
            await runner.cleanup()
            lib_logger.debug("OAuth callback server stopped")

    async def _handle_callback(self, request: web.Request) -> web.StreamResponse:
        return await self.flow.handle_redirect(request)


class AuthorizationFlow:
    """
    Drives one authorization attempt.

    `start()` returns a future fulfilled exactly once by whichever terminal
    transition happens first; `run()` is the usual entry point and also
    guarantees teardown.
    """

    def __init__(
        self,
        token_client: OAuthTokenClient,
        store: Optional[TokenStore] = None,
        port: int = DEFAULT_OAUTH_CALLBACK_PORT,
        timeout: float = DEFAULT_FLOW_TIMEOUT,
        host: str = "localhost",
        scopes: Optional[List[str]] = None,
        open_browser: bool = True,
    ):
        self.token_client = token_client
        self.store = store
        self.port = port
        self.timeout = timeout
        self.host = host
        self.scopes = scopes
        self.open_browser = open_browser

        self.state = FlowState.IDLE
        self._future: Optional[asyncio.Future] = None
        self._server: Optional[OAuthCallbackServer] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._teardown: Optional[asyncio.Task] = None

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{CALLBACK_PATH}"

    @property
    def authorization_url(self) -> str:
        return self.token_client.authorization_url(self.scopes)

    async def run(self) -> CredentialSet:
        """
        Run the whole flow and return the new credentials.

        Raises:
            AuthorizationError: provider error, timeout, or listener failure
            TokenExchangeError: the code could not be redeemed
        """
        future = await self.start()
        try:
            return await future
        finally:
            await self.close()

    async def start(self) -> "asyncio.Future[CredentialSet]":
        """Start the watchdog and the listener, then present the URL."""
        if self.state is not FlowState.IDLE:
            raise RuntimeError("An AuthorizationFlow can only be started once")

        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._watchdog = loop.call_later(self.timeout, self._on_timeout)

        self._server = OAuthCallbackServer(self, self.host, self.port)
        try:
            await self._server.start()
        except OSError as e:
            self._server = None
            lib_logger.error(f"Failed to start OAuth callback server on port {self.port}: {e}")
            self._fail(
                AuthorizationError(
                    "listener_failed",
                    message=f"Failed to start OAuth callback server: {e}",
                )
            )
            return self._future

        self.state = FlowState.LISTENER_STARTED
        self._present_url()
        self.state = FlowState.AWAITING_REDIRECT
        return self._future

    async def close(self):
        """Release the listener and the watchdog. Idempotent."""
        self._cancel_watchdog()
        if self._teardown is None and self._server is not None:
            self._teardown = asyncio.ensure_future(self._server.stop())
        if self._teardown is not None:
            await self._teardown

    # =========================================================================
    # REDIRECT HANDLING
    # =========================================================================

    async def handle_redirect(self, request: web.Request) -> web.StreamResponse:
        query = request.query
        error = query.get("error")
        code = query.get("code")

        if self.state is not FlowState.AWAITING_REDIRECT:
            return web.Response(
                status=400,
                content_type="text/html",
                text=error_page("authorization_not_pending", "This sign-in link is no longer active."),
            )

        if error:
            description = query.get("error_description")
            self.state = FlowState.ERROR_RECEIVED
            lib_logger.error(f"OAuth callback received error: {error} {description or ''}".strip())
            response = web.Response(
                status=400, content_type="text/html", text=error_page(error, description)
            )
            await self._send(request, response)
            self._fail(AuthorizationError(error, description))
            return response

        if not code:
            return web.Response(
                status=400,
                content_type="text/html",
                text=error_page("missing_code", "The redirect did not carry an authorization code."),
            )

        self.state = FlowState.CODE_RECEIVED
        lib_logger.info("Received authorization code, exchanging for tokens...")
        self.state = FlowState.EXCHANGING

        try:
            credentials = await self.token_client.exchange_code(code)
        except BitbucketAuthError as e:
            response = web.Response(
                status=500, content_type="text/html", text=error_page("token_exchange_failed", str(e))
            )
            await self._send(request, response)
            self._fail(e)
            return response
        except Exception as e:
            lib_logger.error(f"Unexpected error during token exchange: {e}")
            error = AuthorizationError(
                "token_exchange_failed",
                message=f"Failed to exchange code for token: {e}",
            )
            response = web.Response(
                status=500, content_type="text/html", text=error_page("token_exchange_failed", str(e))
            )
            await self._send(request, response)
            self._fail(error)
            return response

        if self._future.done():
            # The watchdog fired while the exchange was in flight
            lib_logger.warning("Token exchange finished after the OAuth flow had already ended")
            return web.Response(
                status=400,
                content_type="text/html",
                text=error_page("timeout", "The sign-in window expired. Please try again."),
            )

        if self.store is not None:
            self.store.save(
                PersistedCredential(
                    credentials=credentials,
                    client_id=self.token_client.identity.client_id,
                )
            )

        response = web.Response(status=200, content_type="text/html", text=success_page())
        await self._send(request, response)
        self._succeed(credentials)
        return response

    @staticmethod
    async def _send(request: web.Request, response: web.Response):
        # Flush the page before settling so teardown never races the reply
        await response.prepare(request)
        await response.write_eof()

    # =========================================================================
    # TERMINAL TRANSITIONS
    # =========================================================================

    def _on_timeout(self):
        self._watchdog = None
        if self._future is None or self._future.done():
            return
        self.state = FlowState.TIMEOUT
        minutes = self.timeout / 60
        lib_logger.error(f"OAuth flow timed out after {minutes:g} minutes")
        self._fail(
            AuthorizationError(
                "timeout",
                message=f"OAuth flow timed out after {minutes:g} minutes",
            )
        )

    def _succeed(self, credentials: CredentialSet):
        if self._future.done():
            return
        self.state = FlowState.DONE
        lib_logger.info("Bitbucket OAuth authorization completed")
        self._future.set_result(credentials)
        self._finish()

    def _fail(self, exc: Exception):
        if self._future.done():
            return
        self.state = FlowState.FAILED
        if isinstance(exc, TokenExchangeError):
            lib_logger.error(f"OAuth flow failed during token exchange: {exc}")
        self._future.set_exception(exc)
        self._finish()

    def _finish(self):
        self._cancel_watchdog()
        if self._teardown is None and self._server is not None:
            self._teardown = asyncio.ensure_future(self._server.stop())

    def _cancel_watchdog(self):
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    # =========================================================================
    # USER PROMPT
    # =========================================================================

    def _present_url(self):
        """Show the URL and try to open a browser. Never fails the flow."""
        auth_url = self.authorization_url
        is_headless = is_headless_environment()

        if is_headless or not self.open_browser:
            auth_panel_text = Text.from_markup(
                "No browser will be opened automatically.\n"
                "Please open the URL below in a browser to authorize Bitbucket access."
            )
        else:
            auth_panel_text = Text.from_markup(
                "1. Your browser will now open to log in and authorize the application.\n"
                "2. If it doesn't open automatically, please open the URL below manually."
            )

        try:
            console.print(
                Panel(
                    auth_panel_text,
                    title="[bold yellow]Bitbucket authentication required[/bold yellow]",
                    style="bold blue",
                )
            )
            console.print(f"[bold]URL:[/bold] [link={auth_url}]{rich_escape(auth_url)}[/link]\n")
        except Exception as e:
            lib_logger.warning(f"Could not render the authorization prompt: {e}")
        lib_logger.info(f"Authorization URL: {auth_url}")

        if is_headless or not self.open_browser:
            return

        try:
            if webbrowser.open(auth_url):
                lib_logger.info("Browser opened successfully for OAuth flow")
            else:
                lib_logger.warning(
                    "Could not open browser automatically. Please open the URL manually."
                )
        except Exception as e:
            lib_logger.warning(
                f"Failed to open browser automatically: {e}. Please open the URL manually."
            )
