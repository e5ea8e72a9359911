"""Cooperative cancellation shared by every wait in the enrichment engine.

Rate-limit waits, retry backoff and orchestrator pauses all sleep through a
single ``CancellationToken`` so that a shutdown signal interrupts them
promptly instead of leaving a thread parked for an hour.
"""

import logging
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised when a wait is interrupted because the token was cancelled."""


class CancellationToken:
    """Thread-safe cancellation flag with interruptible sleeps.

    An optional ``deadline`` (epoch seconds) makes every sleep past that
    point behave as if the token had been cancelled.
    """

    def __init__(self, deadline: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.time() >= self.deadline

    def cancel(self) -> None:
        """Signal every current and future wait to stop."""
        if not self._event.is_set():
            logger.info("Cancellation requested - interrupting pending waits")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("Operation cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            OperationCancelled: If the token is (or becomes) cancelled
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return

        if self.deadline is not None:
            seconds = min(seconds, max(0.0, self.deadline - time.time()))

        if self._event.wait(timeout=seconds):
            raise OperationCancelled("Operation cancelled during wait")
        self.raise_if_cancelled()
