"""
Cancellation Token

One token per search request, bound to the request deadline. The
orchestrator fires it when the deadline elapses; every stage that may
suspend (embedding, storage, LLM) checks it so a deadline cancellation is
never mistaken for an ordinary provider failure.
"""

import asyncio
from typing import Optional

from .errors import RequestTimeoutError


class CancellationToken:
    """Cooperative cancellation signal with an optional absolute deadline."""

    def __init__(self, deadline: Optional[float] = None):
        """
        Args:
            deadline: Absolute deadline in event-loop time (loop.time()),
                or None for no deadline
        """
        self._deadline = deadline
        self._event = asyncio.Event()

    @classmethod
    def with_timeout(cls, timeout_s: float) -> "CancellationToken":
        loop = asyncio.get_running_loop()
        return cls(deadline=loop.time() + timeout_s)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), None if unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestTimeoutError()
