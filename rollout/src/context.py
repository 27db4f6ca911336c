from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from rollout.src.errors import CancelledError


class OperationContext:
    """Cancellation handle threaded through every controller operation.

    Wraps a ``threading.Event`` (the same stop primitive the watch loops use)
    and an optional monotonic deadline.  ``wait`` is the only blocking call:
    it sleeps until the period elapses, the event is set, or the deadline
    passes, whichever comes first.
    """

    def __init__(
        self,
        stop_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stop = stop_event or threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout_seconds if timeout_seconds is not None else None

    def cancel(self) -> None:
        self._stop.set()

    def remaining(self) -> float | None:
        """Seconds until the deadline, or ``None`` when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def done(self) -> bool:
        if self._stop.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def error(self) -> CancelledError | None:
        if self._stop.is_set():
            return CancelledError("operation cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            return CancelledError("deadline exceeded")
        return None

    def wait(self, seconds: float) -> bool:
        """Sleep for *seconds* unless cancelled first.  Returns ``done()``."""
        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        if timeout > 0:
            self._stop.wait(timeout=timeout)
        return self.done()

    def request_options(self) -> dict[str, Any]:
        """Keyword arguments that make a client call honour the deadline.

        The Kubernetes client accepts ``_request_timeout`` on every API
        method; without a deadline no option is passed.
        """
        remaining = self.remaining()
        if remaining is None:
            return {}
        return {"_request_timeout": max(remaining, 0.001)}


def background() -> OperationContext:
    """Return a context that is never cancelled and has no deadline."""
    return OperationContext()
