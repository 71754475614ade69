"""Cancellation contexts for fetch operations.

A ``CancelContext`` is passed to every blocking fetch call. It combines an
explicit cancel signal with an optional monotonic deadline, and child
contexts observe the cancellation of their parent.
"""

import threading
import time


class CancelContext:
    """Cancellable, optionally deadline-bounded context.

    Every suspend point in the fetch layer waits on a context rather than
    calling ``time.sleep`` directly, so cancellation interrupts the wait.
    The context is also the clock for those suspend points.

    Thread-safe: ``cancel`` may be called from any thread.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        parent: "CancelContext | None" = None,
    ) -> None:
        """Initialize the context.

        Args:
            timeout_seconds: Optional deadline relative to now.
            parent: Optional parent context whose cancellation propagates.
        """
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancelContext] = []
        self._parent = parent
        self._deadline: float | None = None

        if timeout_seconds is not None:
            self._deadline = self.monotonic() + timeout_seconds
        if parent is not None:
            if parent.deadline is not None and (
                self._deadline is None or parent.deadline < self._deadline
            ):
                self._deadline = parent.deadline
            parent._register(self)

    def _register(self, child: "CancelContext") -> None:
        with self._lock:
            self._children.append(child)
        if self._event.is_set():
            child.cancel()

    def _unregister(self, child: "CancelContext") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    @property
    def deadline(self) -> float | None:
        """Get the absolute monotonic deadline, if any."""
        return self._deadline

    def monotonic(self) -> float:
        """Get the current monotonic time in seconds.

        Children read the clock of their root context.
        """
        if self._parent is not None:
            return self._parent.monotonic()
        return time.monotonic()

    def child(self, timeout_seconds: float | None = None) -> "CancelContext":
        """Create a child context cancelled together with this one.

        Args:
            timeout_seconds: Optional deadline for the child.

        Returns:
            New child context.
        """
        return CancelContext(timeout_seconds=timeout_seconds, parent=self)

    def cancel(self) -> None:
        """Cancel this context and all of its children."""
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    def release(self) -> None:
        """Detach this context from its parent."""
        if self._parent is not None:
            self._parent._unregister(self)

    @property
    def cancelled(self) -> bool:
        """Check if cancel() was called on this context or an ancestor."""
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        """Check if the deadline has passed."""
        return self._deadline is not None and self.monotonic() >= self._deadline

    @property
    def is_done(self) -> bool:
        """Check if the context is cancelled or expired."""
        return self.cancelled or self.expired

    def remaining(self) -> float | None:
        """Get seconds left before the deadline.

        Returns:
            Remaining seconds (never negative), or None without a deadline.
        """
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``, waking early on cancellation.

        Args:
            seconds: Maximum time to sleep.

        Returns:
            True if the context is done when the wait ends.
        """
        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        if timeout > 0:
            self._event.wait(timeout)
        return self.is_done


def background() -> CancelContext:
    """Get a fresh context that is never cancelled unless asked to."""
    return CancelContext()
