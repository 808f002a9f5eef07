"""
Cooperative cancellation shared between the control thread and workers.

The token is polled at frame, slice and group boundaries only; per-pixel
loops never look at it.
"""

import threading
from typing import Optional

from ..errors import CancellationRequested


class CancellationToken:
    """Thread-safe advisory cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: Optional[str] = None):
        """
        Raise CancellationRequested if cancel() has been called.

        Args:
            where: Short description of the loop being polled, for the message
        """
        if self._event.is_set():
            raise CancellationRequested(where)


def check_cancelled(token: Optional[CancellationToken], where: Optional[str] = None):
    """Poll an optional token."""
    if token is not None:
        token.raise_if_cancelled(where)
