"""Cooperative cancellation for worker executions."""

import threading
import time
from typing import Optional

from research_vault.errors import TaskCancelledError


class CancellationToken:
    """Set by an explicit cancel or by the execution's deadline timer.

    Workers are expected to poll `is_cancelled` (or call
    `raise_if_cancelled`) at safe points.
    """

    def __init__(self, task_id: str, deadline: Optional[float] = None):
        self.task_id = task_id
        # time.monotonic() value, None for no deadline
        self.deadline = deadline
        self.reason: Optional[str] = None
        self._event = threading.Event()
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Returns False if the token was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(self.task_id, self.reason or "cancelled")

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (never negative), or None."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)
