"""Cooperative cancellation for long-running operations."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, Optional

from skillkeeper.errors import CancelledError, SIGINT_EXIT_CODE, SIGTERM_EXIT_CODE

logger = logging.getLogger(__name__)


class CancellationToken:
    """A flag shared by everything taking part in one operation.

    Cancellation is never preemptive: code checks the token at phase
    boundaries (or between archive entries) and reacts there.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None
        self.exit_code: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "interrupted", exit_code: Optional[int] = None) -> None:
        """Request cancellation. Only the first reason is kept."""
        if not self._event.is_set():
            self.reason = reason
            self.exit_code = exit_code
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            raise CancelledError(self.reason or "interrupted")


def raise_if_cancelled(token: Optional[CancellationToken]) -> None:
    """Check an optional token."""
    if token is not None:
        token.raise_if_cancelled()


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
    """Route SIGINT and SIGTERM to a cancellation token.

    Args:
        token: Token to cancel when a signal arrives

    Returns:
        A function that restores the previous handlers
    """
    exit_codes = {signal.SIGINT: SIGINT_EXIT_CODE, signal.SIGTERM: SIGTERM_EXIT_CODE}

    def handler(signum, frame):
        logger.warning("Received signal %s, cancelling", signum)
        token.cancel("interrupted", exit_codes.get(signum))

    previous = {}
    for sig in exit_codes:
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # Not on the main thread
            pass

    def restore() -> None:
        for sig, old in previous.items():
            signal.signal(sig, old)

    return restore
