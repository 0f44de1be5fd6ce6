"""Bounded polling for conditions that become true eventually."""
from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

__all__ = ["PollTimeoutError", "poll_until"]

T = TypeVar("T")


class PollTimeoutError(TimeoutError):
    """Raised when a polled condition did not hold within the allowed wait."""

    def __init__(self, what: str, max_wait: float, last_error: Optional[BaseException] = None) -> None:
        self.what = what
        self.max_wait = float(max_wait)
        self.last_error = last_error
        message = f"{what} not ready after {self.max_wait:g}s"
        if last_error is not None:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)


def poll_until(
    probe: Callable[[], Optional[T]],
    *,
    max_wait: float,
    interval: float = 1.0,
    what: str = "condition",
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call *probe* until it returns a truthy value or *max_wait* elapses.

    ``max_wait <= 0`` performs exactly one attempt. Exceptions listed in
    *retry_on* count as "not yet"; anything else propagates immediately.
    """

    deadline = clock() + max(0.0, float(max_wait))
    last_error: Optional[BaseException] = None
    while True:
        try:
            value = probe()
        except retry_on as exc:
            value = None
            last_error = exc
        if value:
            return value
        remaining = deadline - clock()
        if remaining <= 0:
            raise PollTimeoutError(what, max_wait, last_error)
        sleep(min(max(interval, 0.0), remaining))
