"""
Cancellation
============
A small token shared by the caller, the LLM client and the runner so a
Ctrl-C or a deadline can stop an in-flight HTTP call or child process.
"""

from __future__ import annotations

import logging
import time
from threading import Event, Lock
from typing import Callable, List, Optional

from testgen_agent.errors import OperationCancelled

logger = logging.getLogger("testgen_agent.cancellation")


class CancellationToken:
    """Cooperative cancellation flag with an optional deadline.

    Args:
        timeout: Seconds from now after which the token counts as
            cancelled. ``None`` means no deadline.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = Event()
        self._lock = Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._deadline = (
            time.monotonic() + timeout if timeout is not None else None
        )

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return False

    def cancel(self) -> None:
        """Cancel the token and fire every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e)

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, or ``None`` without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def clip_timeout(self, timeout: float) -> float:
        """Return *timeout* shortened to the remaining deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("Operation cancelled")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run on :meth:`cancel`.

        Runs immediately if the token is already cancelled.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
