"""Cooperative cancellation for conversion runs.

Stages call ``token.check()`` at natural checkpoints (after a sub-copy, after
a compressor invocation returns). Long-running tool invocations poll
``token.is_cancelled`` while they wait.
"""

from __future__ import annotations

import threading
from typing import Optional

from .exceptions import PipelineCancelled


class CancelToken:
    def __init__(self, event: Optional[threading.Event] = None):
        self._event = event or threading.Event()
        self._reason = "cancelled"
        self._timer: Optional[threading.Timer] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    def check(self) -> None:
        """Raise PipelineCancelled if cancellation was requested."""
        if self._event.is_set():
            raise PipelineCancelled(self._reason)

    def cancel_after(self, seconds: float) -> None:
        """Arm a timer that cancels the token once ``seconds`` elapse."""
        self.disarm()
        self._timer = threading.Timer(
            seconds, self.cancel, kwargs={"reason": f"run timeout after {seconds:g}s"}
        )
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
