"""Cancellation and deadline token passed into every remote call."""

import threading
import time
from typing import Optional

from .errors import ContextCancelledError


class ExportContext:
    """
    Carries a cancellation flag and an optional deadline from the caller.

    Connectors call ``check()`` before each remote call and size their
    client-side timeouts with ``timeout()``. Cancelling is thread-safe, so a
    signal handler or another thread can abort an in-flight export.

    Example:
        >>> ctx = ExportContext.with_timeout(30)
        >>> exporter.export(ctx, change)
    """

    def __init__(self, deadline: Optional[float] = None):
        """
        Args:
            deadline: Absolute ``time.monotonic()`` value, or None for no deadline
        """
        self.deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "ExportContext":
        """Context with no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> "ExportContext":
        """Context that expires ``seconds`` from now."""
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def timeout(self, default: Optional[float] = None) -> Optional[float]:
        """Seconds left before the deadline, capped by ``default``.

        Returns ``default`` when there is no deadline.
        """
        if self.deadline is None:
            return default
        remaining = max(0.0, self.deadline - time.monotonic())
        if default is None:
            return remaining
        return min(remaining, default)

    def check(self) -> None:
        """Raise if the context was cancelled or its deadline passed.

        Raises:
            ContextCancelledError: If no further I/O should be started
        """
        if self.cancelled:
            raise ContextCancelledError("context cancelled")
        if self.expired:
            raise ContextCancelledError("context deadline exceeded")
