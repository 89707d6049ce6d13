"""
Active session counter that shutdown can wait on (wait-group style).
"""

import threading
from typing import Optional


class SessionTracker:
    """
    Counts running sessions.

    Instead of polling the count in a sleep loop, shutdown blocks on a
    Condition that is notified whenever the count drops to zero.
    """

    def __init__(self):
        self._count = 0
        self._cond = threading.Condition()

    @property
    def count(self) -> int:
        """Number of sessions currently running."""
        with self._cond:
            return self._count

    def add(self) -> int:
        """Register a new session. Returns the new count."""
        with self._cond:
            self._count += 1
            return self._count

    def done(self) -> int:
        """Mark a session finished. Returns the new count."""
        with self._cond:
            if self._count <= 0:
                raise RuntimeError("SessionTracker.done() called more times than add()")
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()
            return self._count

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no sessions are running.

        Args:
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            True if the count reached zero, False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)
