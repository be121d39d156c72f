"""
autoscaler/shared/deadline.py
─────────────────────────────
Deadlines and cancellation for long-running, blocking operations.

Drains and provision-waits are explicit poll loops. Each loop carries a
Deadline: a monotonic expiry plus an optional cancellation token shared with
the caller. Cleanup paths build a *fresh* Deadline with no token, so caller
cancellation never stops an uncordon or a rollback from running.

call_with_timeout() bounds a single blocking call that has no timeout of its
own (a metrics source listing nodes, a cleanup API call).
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class CancelledError(Exception):
    """Raised by Deadline.check() when the caller's token has been set."""


class DeadlineExceededError(Exception):
    """Raised by Deadline.check() or call_with_timeout() on expiry."""


class Deadline:
    """
    A point in (monotonic) time plus an optional cancellation token.

    Usage:
        deadline = Deadline(300.0, cancel=token)
        while not done():
            deadline.check()          # raises on cancel / expiry
            sleep(min(5.0, deadline.remaining))

        cleanup = Deadline.fresh(10.0)  # ignores `token`
    """

    def __init__(
        self,
        timeout_s: float,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = clock() + timeout_s
        self._cancel = cancel
        self.timeout_s = timeout_s

    @classmethod
    def fresh(cls, timeout_s: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        """A deadline that no upstream cancellation can reach."""
        return cls(timeout_s, cancel=None, clock=clock)

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def check(self) -> None:
        if self.cancelled:
            raise CancelledError("operation cancelled by caller")
        if self.expired:
            raise DeadlineExceededError(f"deadline of {self.timeout_s:.0f}s exceeded")

    def __repr__(self) -> str:
        return f"Deadline(timeout={self.timeout_s:.1f}s, remaining={self.remaining:.1f}s)"


def call_with_timeout(fn: Callable[[], T], timeout_s: float) -> T:
    """
    Run fn() on a worker thread and wait at most timeout_s for its result.

    The worker is abandoned (not killed) on timeout; Python cannot interrupt
    a blocked thread. Exceptions raised by fn propagate unchanged.

    Raises:
        DeadlineExceededError: fn did not return in time.
    """
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except FutureTimeoutError:
            raise DeadlineExceededError(f"call did not complete within {timeout_s:.1f}s")
    finally:
        pool.shutdown(wait=False)
