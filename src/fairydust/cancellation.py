"""Cooperative cancellation and deadlines for blocking waits."""

import threading
import time

from fairydust.exceptions import CancelledError


class CancelToken:
    """Shared abort flag with an optional deadline.

    Every blocking wait in an orchestration goes through :meth:`sleep`,
    so cancelling the token wakes it immediately.

    Args:
        timeout: Seconds from now after which the token counts as cancelled.
    """

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._children: list[CancelToken] = []
        self._lock = threading.Lock()
        self.reason: str | None = None

    def child(self) -> "CancelToken":
        """Token cancelled with this one but cancellable on its own.

        The child shares this token's deadline.
        """
        token = CancelToken()
        token._deadline = self._deadline
        with self._lock:
            self._children.append(token)
            if self._event.is_set():
                token.cancel(self.reason or "Cancelled")
        return token

    def cancel(self, reason: str = "Cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for token in children:
            token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("Deadline exceeded")
            return True
        return False

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def sleep(self, seconds: float) -> bool:
        """Wait up to seconds, waking early on cancellation.

        Returns:
            True if the token is cancelled when the wait ends.
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(max(0.0, seconds))
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError if the token has been cancelled."""
        if self.cancelled:
            raise CancelledError(self.reason or "Cancelled")
