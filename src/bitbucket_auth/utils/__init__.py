# src/bitbucket_auth/utils/__init__.py

from .headless_detection import is_headless_environment
from .paths import (
    get_config_dir,
    get_token_file,
    get_logs_dir,
)
from .single_flight import SingleFlight
from .resilient_io import (
    safe_write_json,
    safe_read_json,
    safe_unlink,
    safe_mkdir,
)

__all__ = [
    "is_headless_environment",
    "get_config_dir",
    "get_token_file",
    "get_logs_dir",
    "SingleFlight",
    "safe_write_json",
    "safe_read_json",
    "safe_unlink",
    "safe_mkdir",
]
