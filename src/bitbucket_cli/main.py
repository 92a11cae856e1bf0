# src/bitbucket_cli/main.py
"""
Command-line front end for the Bitbucket credential subsystem.

    bitbucket-auth login [--print-env]   run the browser flow and persist tokens
    bitbucket-auth status                show the active strategy and stored tokens
    bitbucket-auth logout                delete the persisted tokens
    bitbucket-auth request GET /user     make one authenticated API call
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import colorlog
import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from bitbucket_auth import (
    AuthConfig,
    AuthenticatedTransport,
    AuthorizationFlow,
    BitbucketAuthError,
    CredentialBroker,
    CredentialSet,
    OAuthTokenClient,
    TokenStore,
    describe_error,
)
from bitbucket_auth.error_handler import mask_credential
from bitbucket_auth.utils.paths import get_logs_dir
from bitbucket_auth.utils.resilient_io import safe_mkdir

# Results go to stdout; prompts, tables and logs to stderr
console = Console(stderr=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bitbucket-auth", description="Bitbucket credential helper"
    )
    parser.add_argument(
        "--env-file", type=Path, default=None, help="Load variables from this .env file."
    )
    parser.add_argument("--debug", action="store_true", help="Show debug logs on the console.")
    parser.add_argument(
        "--no-log-file", action="store_true", help="Do not write logs to the per-user logs directory."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Authorize in the browser and persist tokens.")
    login.add_argument(
        "--print-env", action="store_true", help="Print environment lines for the new tokens."
    )
    login.add_argument("--port", type=int, default=None, help="Callback listener port.")

    subparsers.add_parser("status", help="Show the active strategy and stored tokens.")
    subparsers.add_parser("logout", help="Delete the persisted tokens.")

    request = subparsers.add_parser("request", help="Make one authenticated API call.")
    request.add_argument("method", help="HTTP method, e.g. GET")
    request.add_argument("endpoint", help="API path such as /user, or an absolute URL")
    request.add_argument("--data", default=None, help="JSON request body")
    request.add_argument("--raw", action="store_true", help="Print the body as text.")
    return parser


def setup_logging(debug: bool = False, log_to_file: bool = True):
    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)

    logs_dir = get_logs_dir()
    if log_to_file and safe_mkdir(logs_dir, root_logger):
        file_handler = logging.FileHandler(logs_dir / "bitbucket-auth.log", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(file_handler)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_env_lines(config: AuthConfig, creds: CredentialSet) -> List[str]:
    """Environment lines that reproduce the obtained credentials."""
    return [
        f"BITBUCKET_CLIENT_ID={config.client_id}",
        f"BITBUCKET_CLIENT_SECRET={config.client_secret}",
        f"BITBUCKET_ACCESS_TOKEN={creds.access_token}",
        f"BITBUCKET_REFRESH_TOKEN={creds.refresh_token}",
    ]


async def cmd_login(config: AuthConfig, args: argparse.Namespace) -> int:
    identity = config.identity
    if not identity.has_client_credentials:
        console.print(
            "[red]Error:[/red] OAuth requires BITBUCKET_CLIENT_ID and BITBUCKET_CLIENT_SECRET."
        )
        return 1

    flow = AuthorizationFlow(
        token_client=OAuthTokenClient(identity),
        store=TokenStore(),
        port=args.port or config.callback_port,
    )
    creds = await flow.run()

    console.print(
        f"[bold green]Authentication successful.[/bold green] "
        f"Access token {mask_credential(creds.access_token)} expires in "
        f"{round(creds.seconds_until_expiry())} seconds."
    )
    if args.print_env:
        for line in build_env_lines(config, creds):
            print(line)
    return 0


async def cmd_status(config: AuthConfig, args: argparse.Namespace) -> int:
    store = TokenStore()
    broker = CredentialBroker(config, store=store)
    status = broker.get_status()

    table = Table(title="Bitbucket credentials")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Strategy", status["strategy"])
    table.add_row("Authenticated", str(status["authenticated"]))
    table.add_row("Access token", status["access_token"] or "-")
    table.add_row(
        "Expires in", f"{status['expires_in']}s" if status["expires_in"] is not None else "-"
    )
    table.add_row("Interactive OAuth", str(status["interactive"]))

    record = store.load()
    if record is None:
        table.add_row("Token file", f"{store.path} (none)")
    else:
        matches = record.client_id == config.client_id
        table.add_row(
            "Token file",
            f"{store.path} (client id {'matches' if matches else 'differs'})",
        )
    console.print(table)
    return 0


async def cmd_logout(config: AuthConfig, args: argparse.Namespace) -> int:
    return 0 if TokenStore().clear() else 1


async def cmd_request(config: AuthConfig, args: argparse.Namespace) -> int:
    body = json.loads(args.data) if args.data else None
    async with AuthenticatedTransport(CredentialBroker(config), base_url=config.api_url) as api:
        method = args.method.upper()
        if args.raw:
            print(await api.request_raw(args.endpoint, method))
        else:
            result = await api.request(args.endpoint, method, json=body)
            print(json.dumps(result, indent=2))
    return 0


COMMANDS = {
    "login": cmd_login,
    "status": cmd_status,
    "logout": cmd_logout,
    "request": cmd_request,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file, override=False)
    else:
        load_dotenv(Path.cwd() / ".env", override=False)

    setup_logging(debug=args.debug, log_to_file=not args.no_log_file)
    config = AuthConfig.from_env()

    try:
        return asyncio.run(COMMANDS[args.command](config, args))
    except (BitbucketAuthError, httpx.HTTPError, ValueError) as e:
        # Plain message, never a traceback
        print(f"Error: {describe_error(e)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Aborted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
