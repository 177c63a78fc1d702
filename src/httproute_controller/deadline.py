"""Per-invocation time budget."""

from __future__ import annotations

import time
from typing import Callable, Optional

from httproute_controller.errors import DeadlineExceeded


class Deadline:
    """
    Time budget of one reconciliation.

    remaining() is handed to every store call as its request timeout.
    Once the budget is spent it raises DeadlineExceeded instead, so the
    invocation stops between calls and the caller requeues it.
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        left = self._expires_at - self._clock()
        if left <= 0:
            raise DeadlineExceeded("reconciliation deadline exceeded")
        return left
