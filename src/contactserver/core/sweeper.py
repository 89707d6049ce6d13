"""
=============================================================================
CLEANUP SWEEPER
=============================================================================

Background thread that periodically evicts stale rate limiter records.

Every address that ever connected leaves a record behind. A long-running
public server sees a lot of addresses, so without a sweep the limiter's
dict would only ever grow.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         Sweeper Loop                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   while not stop_event.wait(interval):                               │
    │       limiter.sweep()                                                │
    │                                                                      │
    │   stop_event.wait() doubles as the sleep AND the cancellation        │
    │   channel: stop() sets the event and the thread wakes up at once     │
    │   instead of sleeping out the rest of the interval.                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

import logging
import threading
from typing import Optional

from .rate_limit import RateLimiter


logger = logging.getLogger(__name__)


class CleanupSweeper(threading.Thread):
    """
    Periodic sweeper for a RateLimiter.

    Usage:
        sweeper = CleanupSweeper(limiter, interval=60.0)
        sweeper.start()
        ...
        sweeper.stop()   # Wakes the thread and joins it
    """

    def __init__(self, limiter: RateLimiter, interval: float = 60.0):
        """
        Initialize the sweeper.

        Args:
            limiter: Rate limiter to sweep.
            interval: Seconds between sweeps.
        """
        # daemon=True: an unstopped sweeper never keeps the process alive
        super().__init__(name="RateLimitSweeper", daemon=True)

        self.limiter = limiter
        self.interval = interval
        self._stop_event = threading.Event()

        self.sweeps_completed = 0

    def run(self):
        logger.debug(f"Sweeper started (interval: {self.interval}s)")

        while not self._stop_event.wait(self.interval):
            try:
                self.limiter.sweep()
                self.sweeps_completed += 1
            except Exception as e:
                # Keep sweeping; a failed pass only costs memory
                logger.exception(f"Rate limit sweep failed: {e}")

        logger.debug("Sweeper stopped")

    def stop(self, timeout: Optional[float] = 2.0):
        """Signal the sweeper to stop and wait for it to exit."""
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
