from __future__ import annotations

import threading

from patcheval.errors import RunCancelled


class CancellationToken:
    """
    Single cancellation flag shared by the run loop and the stage executor.
    Checked before each backend call and after each backoff sleep.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "cancelled")

    def sleep(self, seconds: float) -> None:
        """Interruptible sleep; raises RunCancelled if cancelled while waiting."""
        if seconds > 0:
            self._event.wait(seconds)
        self.check()
