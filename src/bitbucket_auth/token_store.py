# src/bitbucket_auth/token_store.py
"""
Durable single-slot persistence of the current credential.

The file holds exactly one JSON record:

    {"accessToken": ..., "refreshToken": ..., "expiresAt": <epoch ms>, "clientId": ...}

Every operation fails soft. A broken or unwritable file only costs a
re-authentication, so problems are logged as PersistenceWarning and never raised.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .error_handler import PersistenceWarning
from .models import PersistedCredential
from .utils.paths import get_token_file
from .utils.resilient_io import safe_read_json, safe_unlink, safe_write_json

lib_logger = logging.getLogger("bitbucket_auth")


class TokenStore:
    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_token_file()

    def load(self, client_id: Optional[str] = None) -> Optional[PersistedCredential]:
        """
        Load the persisted credential.

        Args:
            client_id: When given, a record issued under a different client id
                       is ignored (stale credentials from another consumer).

        Returns:
            The record, or None if absent, unreadable, malformed or foreign
        """
        data = safe_read_json(self.path, lib_logger)
        if data is None:
            return None

        try:
            record = PersistedCredential.from_json(data)
        except ValueError as e:
            lib_logger.warning(str(PersistenceWarning("load", str(self.path), str(e))))
            return None

        if client_id is not None and record.client_id != client_id:
            lib_logger.info(
                f"Ignoring persisted tokens at {self.path}: issued for a different client id"
            )
            return None

        lib_logger.debug(f"Loaded persisted tokens from {self.path}")
        return record

    def save(self, record: PersistedCredential) -> bool:
        """
        Overwrite the single record, creating the directory if needed.
        The file is readable by the owning user only.

        Returns:
            True on success, False on failure (never raises)
        """
        if safe_write_json(self.path, record.to_json(), lib_logger, secure_permissions=True):
            lib_logger.info(f"Tokens persisted to {self.path}")
            return True

        lib_logger.warning(
            str(PersistenceWarning("save", str(self.path), "write failed; tokens kept in memory only"))
        )
        return False

    def clear(self) -> bool:
        """Delete the persisted record. Returns False if it could not be removed."""
        if safe_unlink(self.path, lib_logger):
            lib_logger.info(f"Removed persisted tokens at {self.path}")
            return True
        return False
