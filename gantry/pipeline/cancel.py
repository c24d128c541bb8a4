"""Cancellation tokens shared by the executor, command runner and gates."""

import threading
import time
from typing import Optional


class CancelScope:
    """A cancellation token that also observes its parent.

    The run owns the root scope (optionally with a deadline); each group gets
    a child so an aborting stage can stop its siblings without cancelling the
    whole run's bookkeeping.
    """

    def __init__(self, parent: Optional["CancelScope"] = None, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("run timeout exceeded")
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel_reason(self) -> Optional[str]:
        if self._event.is_set():
            return self.reason
        if self._parent is not None:
            return self._parent.cancel_reason()
        return None

    def wait(self, timeout: float, tick: float = 0.05) -> bool:
        """
        Sleep up to `timeout` seconds, waking early on cancellation.

        Returns:
            True if the scope was cancelled
        """
        deadline = time.monotonic() + timeout
        while True:
            if self.cancelled:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, tick))

    def child(self) -> "CancelScope":
        return CancelScope(parent=self)
