"""Cooperative cancellation for deployment attempts.

The CLI sets the token from SIGINT/SIGTERM handlers; an optional deadline
turns an overlong attempt into a cancellation. Stages call
``raise_if_cancelled()`` at their boundaries, child processes are killed
when the token fires, and verification polling stops early.
"""

from __future__ import annotations

import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from deployforge.core.errors import DeploymentCancelled


class CancellationToken:
    """Thread-safe cancel flag with an optional monotonic deadline."""

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._deadline = (time.monotonic() + deadline) if deadline else None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("attempt deadline exceeded")
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self.cancelled:
            raise DeploymentCancelled(self._reason, stage=stage)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if self.cancelled:
            return True
        return self._event.wait(seconds) or self.cancelled


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM to ``token`` for the duration of the block."""
    previous: dict[int, object] = {}

    def _handler(signum: int, _frame: object) -> None:
        token.cancel(f"received {signal.Signals(signum).name}")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # Not the main thread; signals cannot be routed here.
            pass
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
