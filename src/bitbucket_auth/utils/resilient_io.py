# src/bitbucket_auth/utils/resilient_io.py
"""
Resilient I/O utilities for handling file operations gracefully.

Credential persistence is an optimization: the process can always re-authenticate.
So every helper here reports failure through its return value and a log line,
and never raises to the caller.

- safe_write_json - atomic JSON write (tempfile + move), optional owner-only permissions
- safe_read_json  - JSON read that yields None on any failure
- safe_unlink     - delete a file if present
- safe_mkdir      - create a directory tree
"""

import json
import os
import shutil
import tempfile
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union


def safe_write_json(
    path: Union[str, Path],
    data: Dict[str, Any],
    logger: logging.Logger,
    secure_permissions: bool = False,
) -> bool:
    """
    Atomically write JSON data to file (tempfile + move).

    Args:
        path: File path to write to
        data: JSON-serializable data
        logger: Logger for warnings
        secure_permissions: Set file permissions to 0o600 (default: False)

    Returns:
        True on success, False on failure (never raises)
    """
    path = Path(path)
    tmp_fd = None
    tmp_path = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, indent=2)

        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=".tmp_", suffix=".json", text=True
        )
        # Restrict before any secret is written to disk
        if secure_permissions:
            try:
                os.chmod(tmp_path, 0o600)
            except (OSError, AttributeError):
                # Windows may not support chmod, ignore
                pass

        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            tmp_fd = None
            f.write(content)

        shutil.move(tmp_path, path)
        tmp_path = None
        return True

    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Failed to write JSON to {path}: {e}")
        return False

    finally:
        if tmp_fd is not None:
            try:
                os.close(tmp_fd)
            except OSError:
                pass
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def safe_read_json(
    path: Union[str, Path], logger: logging.Logger
) -> Optional[Any]:
    """
    Read and parse a JSON file.

    Returns:
        The parsed document, or None if the file is missing, unreadable or
        not valid JSON (never raises)
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read JSON from {path}: {e}")
        return None


def safe_unlink(path: Union[str, Path], logger: logging.Logger) -> bool:
    """
    Delete a file if it exists.

    Returns:
        True if the file is gone afterwards, False on failure
    """
    try:
        Path(path).unlink(missing_ok=True)
        return True
    except OSError as e:
        logger.warning(f"Failed to delete {path}: {e}")
        return False


def safe_mkdir(path: Union[str, Path], logger: logging.Logger) -> bool:
    """
    Create directory with error handling.

    Args:
        path: Directory path to create
        logger: Logger for warnings

    Returns:
        True on success (or already exists), False on failure
    """
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
        return True
    except OSError as e:
        logger.warning(f"Failed to create directory {path}: {e}")
        return False
