"""
=============================================================================
ADMISSION CONTROL
=============================================================================

Bounds the number of sessions running at the same time.

=============================================================================
NEVER QUEUE, ALWAYS ANSWER
=============================================================================

A thread pool with a task queue degrades gracefully by making clients wait.
For an interactive menu that is the wrong behaviour: a client stuck in a
queue sees a silent socket. The admission controller instead answers
immediately:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     try_acquire() (non-blocking)                     │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   in_use < capacity ?                                                │
    │        │                                                             │
    │        ├── yes → in_use += 1, return AdmissionSlot                   │
    │        │                                                             │
    │        └── no  → return None   (caller says "Server is busy")        │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
EXACTLY-ONCE RELEASE
=============================================================================

Leaking a slot shrinks capacity forever; releasing twice lets more
sessions in than the cap allows. Both are prevented by handing out an
AdmissionSlot object instead of a bare "release()" on the controller:

    slot = controller.try_acquire()
    if slot:
        with slot:            # released on ANY exit path
            run_session()
        slot.release()        # second call is a no-op, returns False

=============================================================================
"""

import threading
from typing import Optional


class AdmissionSlot:
    """
    One unit of the concurrency budget, held for the duration of a session.

    Released exactly once, whichever of release() / __exit__ runs first.
    """

    def __init__(self, controller: "AdmissionController"):
        self._controller = controller
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        """Whether this slot has been returned to the pool."""
        return self._released

    def release(self) -> bool:
        """
        Return the slot to the pool.

        Returns:
            True on the first call, False if already released.
        """
        with self._lock:
            if self._released:
                return False
            self._released = True

        self._controller._give_back()
        return True

    def __enter__(self) -> "AdmissionSlot":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False  # Don't suppress exceptions


class AdmissionController:
    """
    Fixed-capacity slot pool.

    Usage:
        admission = AdmissionController(capacity=100)

        slot = admission.try_acquire()
        if slot is None:
            reject("Server is busy")
    """

    def __init__(self, capacity: int):
        """
        Initialize the pool.

        Args:
            capacity: Maximum number of slots outstanding at once.
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self.capacity = capacity
        self._in_use = 0
        self._lock = threading.Lock()

    def try_acquire(self) -> Optional[AdmissionSlot]:
        """
        Take a slot without waiting.

        Returns:
            An AdmissionSlot if capacity remains, otherwise None.
        """
        with self._lock:
            if self._in_use >= self.capacity:
                return None
            self._in_use += 1

        return AdmissionSlot(self)

    def _give_back(self):
        """Called by AdmissionSlot.release() exactly once per slot."""
        with self._lock:
            if self._in_use <= 0:
                raise RuntimeError("Admission slot released more times than acquired")
            self._in_use -= 1

    @property
    def in_use(self) -> int:
        """Number of slots currently held."""
        with self._lock:
            return self._in_use

    @property
    def available(self) -> int:
        """Number of slots that can still be acquired."""
        with self._lock:
            return self.capacity - self._in_use
