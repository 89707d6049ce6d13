"""
=============================================================================
PER-ADDRESS RATE LIMITING
=============================================================================

Implements connection rate limiting with a Sliding Window Log so one
source address cannot reconnect in a tight loop.

=============================================================================
SLIDING WINDOW LOG
=============================================================================

For every source address we remember WHEN it connected recently. On each
new attempt we forget the attempts that fell out of the window and count
what is left.

    ┌─────────────────────────────────────────────────────────────────────┐
    │          SLIDING WINDOW (window=10s, max=5) FOR 203.0.113.7          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   time ──────────────────────────────────────────────────────►      │
    │                                                                      │
    │        ●     ●   ●      ●  ●              ?                          │
    │        2     4   5      8  9              12                         │
    │                                                                      │
    │              [────────── window for t=12 ──────────]                 │
    │              2 ............................ 12                       │
    │                                                                      │
    │   Attempts inside [2, 12]: 2, 4, 5, 8, 9  → 5 >= max → REJECT       │
    │   At t=12.5 the attempt at 2 drops out  → 4 <  max → ADMIT          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    KEY PROPERTIES:

    1. The boundary is inclusive: an attempt exactly `window` seconds old
       still counts.

    2. Rejected attempts are NOT recorded. A client hammering the port
       while rejected does not extend its own penalty.

    3. There is no burst at window edges (unlike a fixed window counter).

=============================================================================
WHY NOT A TOKEN BUCKET?
=============================================================================

    ┌─────────────────┬───────────────────────────────────────────────────┐
    │ Algorithm       │ Characteristics                                   │
    ├─────────────────┼───────────────────────────────────────────────────┤
    │ TOKEN BUCKET    │ ✓ Smooth refill                                   │
    │                 │ ✗ "N per window" is only approximate             │
    ├─────────────────┼───────────────────────────────────────────────────┤
    │ FIXED WINDOW    │ ✓ One counter per key                            │
    │                 │ ✗ Allows 2x burst at window boundary             │
    ├─────────────────┼───────────────────────────────────────────────────┤
    │ SLIDING WINDOW  │ ✓ Exact "at most N in any window"                │
    │ LOG (used here) │ ✗ Stores up to N timestamps per key              │
    └─────────────────┴───────────────────────────────────────────────────┘

With N = 5 the memory cost is trivial, and the exact guarantee is what
the admission layer promises.

=============================================================================
LOCKING
=============================================================================

    RateLimiter._lock        guards the dict of records (lookup / insert /
                             delete only, held for a few bytecodes)
    SlidingWindow.lock       guards ONE address's timestamps

Two clients from different addresses never wait for each other while
their windows are compacted. Two connections from the SAME address are
serialized, so they cannot both slip in as the 5th attempt.

=============================================================================
"""

import time
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional


logger = logging.getLogger(__name__)


Clock = Callable[[], float]


@dataclass
class SlidingWindow:
    """
    Recent connection attempts for one source address.

    Attributes:
        timestamps: Attempt times in ascending order (clock units).
        lock: Serializes every read and write of this record.
        evicted: Set by the sweeper once the record is removed from the
                 limiter. A caller still holding the record must retry
                 with a fresh one.
    """

    timestamps: Deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    evicted: bool = False

    def compact(self, window_start: float) -> None:
        """Drop attempts older than window_start (window_start itself stays)."""
        while self.timestamps and self.timestamps[0] < window_start:
            self.timestamps.popleft()

    def record_if_allowed(self, now: float, window: float, max_attempts: int) -> bool:
        """
        Compact, then record `now` if the window still has room.

        Must be called with `lock` held.
        """
        self.compact(now - window)

        if len(self.timestamps) >= max_attempts:
            return False  # Rejected, not recorded

        self.timestamps.append(now)
        return True

    def is_stale(self, cutoff: float) -> bool:
        """True if every recorded attempt is older than cutoff."""
        return all(ts < cutoff for ts in self.timestamps)


class RateLimiter:
    """
    Per-source-address connection rate limiter.

    Usage:
        limiter = RateLimiter(window=10.0, max_attempts=5)

        if not limiter.check("203.0.113.7"):
            reject()

        # From a background task:
        limiter.sweep()
    """

    def __init__(
        self,
        window: float = 10.0,
        max_attempts: int = 5,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the rate limiter.

        Args:
            window: Length of the sliding window in seconds.
            max_attempts: Attempts allowed per address inside one window.
            clock: Monotonic time source. Tests inject a fake clock.
        """
        self.window = window
        self.max_attempts = max_attempts
        self._clock = clock or time.monotonic

        self._records: Dict[str, SlidingWindow] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> bool:
        """
        Decide whether a new connection from `key` is allowed.

        Allowed attempts are recorded; rejected ones are not.

        Args:
            key: Source key (client address without port).

        Returns:
            True to admit, False if the address hit its limit.
        """
        while True:
            record = self._get_record(key)

            with record.lock:
                if record.evicted:
                    # The sweeper removed this record after we looked it up.
                    continue

                return record.record_if_allowed(
                    self._clock(), self.window, self.max_attempts
                )

    def _get_record(self, key: str) -> SlidingWindow:
        """Get or lazily create the record for a key."""
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = SlidingWindow()
                self._records[key] = record
            return record

    def sweep(self) -> int:
        """
        Remove records whose attempts are all older than two windows.

        Returns:
            Number of records removed.
        """
        cutoff = self._clock() - 2 * self.window

        with self._lock:
            candidates = list(self._records.items())

        removed = 0
        for key, record in candidates:
            with record.lock:
                if not record.is_stale(cutoff):
                    continue

                with self._lock:
                    if self._records.get(key) is record:
                        del self._records[key]
                        record.evicted = True
                        removed += 1

        if removed:
            logger.debug(f"Swept {removed} stale rate limit records ({len(self)} remaining)")

        return removed

    def reset(self, key: Optional[str] = None):
        """
        Forget recorded attempts.

        Args:
            key: Specific address to reset, or None to reset all.
        """
        with self._lock:
            if key is None:
                records = list(self._records.values())
                self._records.clear()
            else:
                record = self._records.pop(key, None)
                records = [record] if record is not None else []

        for record in records:
            with record.lock:
                record.evicted = True

    def attempts(self, key: str) -> int:
        """Number of attempts currently recorded for a key (uncompacted)."""
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return 0
        with record.lock:
            return len(record.timestamps)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._records
