# src/bitbucket_auth/utils/paths.py
"""
Centralized path management for the Bitbucket auth library.

All per-user state lives under a single configuration directory:

    ~/.config/bitbucket-mcp/
        tokens.json   -> persisted credential (owner-only permissions)
        logs/         -> CLI log files

The token file location can be overridden with BITBUCKET_TOKEN_FILE.
"""

import os
from pathlib import Path
from typing import Optional, Union

CONFIG_DIR_NAME = "bitbucket-mcp"
TOKEN_FILE_NAME = "tokens.json"


def get_config_dir(home: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the per-user configuration directory. Does not create it.

    Args:
        home: Optional home directory. If None, uses Path.home().

    Returns:
        Path to ~/.config/bitbucket-mcp
    """
    base = Path(home) if home else Path.home()
    return base / ".config" / CONFIG_DIR_NAME


def get_token_file(home: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the path of the persisted credential file.

    BITBUCKET_TOKEN_FILE takes precedence over the default location.
    The file itself is not created here; TokenStore creates it on first save.
    """
    override = os.getenv("BITBUCKET_TOKEN_FILE")
    if override:
        return Path(override).expanduser()
    return get_config_dir(home) / TOKEN_FILE_NAME


def get_logs_dir(home: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the logs directory. Does not create it.

    Args:
        home: Optional home directory. If None, uses Path.home().

    Returns:
        Path to the logs directory
    """
    return get_config_dir(home) / "logs"
