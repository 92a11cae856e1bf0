# src/bitbucket_auth/utils/single_flight.py

"""
Single-flight coordinator for credential operations.

Ensures only ONE authorization/refresh operation is in flight at a time for
the owning CredentialBroker. Callers that arrive while an operation is
pending are attached to it and observe its result (or its exception) instead
of starting a second browser flow or token exchange.

An authorization code can only be redeemed once, so redundant flows are not
merely wasteful: the second exchange would fail.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

lib_logger = logging.getLogger("bitbucket_auth")


class SingleFlight:
    """
    Holds the reference to the pending operation, if any.

    There is no lock: the stored task *is* the lock. It is released when the
    task settles, successfully or not, and the next call starts a new operation.
    Instances are owned by whoever needs de-duplication; there is no global one.
    """

    def __init__(self, name: str = "credentials"):
        self._name = name
        self._pending: Optional[asyncio.Task] = None
        self._pending_label: Optional[str] = None
        self._started_at: Optional[float] = None
        self._waiters: int = 0

        # Statistics
        self._total: int = 0
        self._joined: int = 0
        self._successful: int = 0
        self._failed: int = 0

    async def run(
        self,
        func: Callable[[], Awaitable[Any]],
        label: str = "operation",
    ) -> Any:
        """
        Run `func` unless an operation is already pending, then await the result.

        Args:
            func: Coroutine function performing the actual work
            label: Short description used in log lines

        Returns:
            The result of the pending operation

        Raises:
            Whatever the pending operation raised. All waiters receive the
            same exception.
        """
        if self._pending is None:
            self._total += 1
            self._pending_label = label
            self._started_at = time.time()
            lib_logger.debug(f"[SingleFlight:{self._name}] Starting {label}")
            task = asyncio.ensure_future(func())
            task.add_done_callback(self._on_done)
            self._pending = task
        else:
            self._joined += 1
            lib_logger.debug(
                f"[SingleFlight:{self._name}] Joining pending {self._pending_label} "
                f"instead of starting {label}"
            )

        task = self._pending
        self._waiters += 1
        try:
            # A cancelled waiter must not cancel the shared operation
            return await asyncio.shield(task)
        finally:
            self._waiters -= 1

    def _on_done(self, task: asyncio.Task) -> None:
        duration = time.time() - (self._started_at or time.time())
        if task.cancelled():
            self._failed += 1
            lib_logger.warning(
                f"[SingleFlight:{self._name}] {self._pending_label} was cancelled"
            )
        elif task.exception() is not None:
            self._failed += 1
            lib_logger.debug(
                f"[SingleFlight:{self._name}] {self._pending_label} FAILED "
                f"after {duration:.1f}s: {task.exception()}"
            )
        else:
            self._successful += 1
            lib_logger.debug(
                f"[SingleFlight:{self._name}] {self._pending_label} succeeded "
                f"in {duration:.1f}s"
            )

        if self._pending is task:
            self._pending = None
            self._pending_label = None
            self._started_at = None

    def is_in_flight(self) -> bool:
        """Check if an operation is currently pending."""
        return self._pending is not None

    def get_status(self) -> Dict[str, Any]:
        """Get current coordinator status for debugging/monitoring."""
        return {
            "in_flight": self._pending is not None,
            "current": self._pending_label,
            "duration": (time.time() - self._started_at)
            if self._started_at
            else None,
            "waiters": self._waiters,
            "stats": {
                "total": self._total,
                "joined": self._joined,
                "successful": self._successful,
                "failed": self._failed,
            },
        }
