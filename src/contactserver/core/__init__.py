"""
=============================================================================
CORE SERVER COMPONENTS
=============================================================================

The admission and protection layer of the contact server.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         SOCKET SERVER                                │
    │  • Binds the port, runs the accept() loop on the calling thread     │
    │  • SIGTERM / SIGINT close the listening socket                      │
    └─────────────────────────────────────────────────────────────────────┘
                                    │ each accepted Connection
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                RATE LIMITER  →  ADMISSION CONTROLLER                 │
    │  • Per-address sliding window (per-key locks)                       │
    │  • Global slot pool, non-blocking, exactly-once release             │
    └─────────────────────────────────────────────────────────────────────┘
                                    │ admitted
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                           CONNECTION                                 │
    │  • Line reads with size limit                                       │
    │  • Rolling read deadline + absolute connection deadline             │
    └─────────────────────────────────────────────────────────────────────┘

Background helpers: CleanupSweeper evicts stale rate limiter records,
SessionTracker lets shutdown wait for running sessions.

=============================================================================
"""

from .admission import AdmissionController, AdmissionSlot
from .connection import Connection, ConnectionState, LineTooLongError, source_key
from .rate_limit import RateLimiter, SlidingWindow
from .socket_server import SocketServer
from .sweeper import CleanupSweeper
from .tracker import SessionTracker

__all__ = [
    "AdmissionController",  # Global concurrency cap
    "AdmissionSlot",        # One held unit of that cap
    "CleanupSweeper",       # Periodic rate limiter eviction
    "Connection",           # Client socket wrapper with deadlines
    "ConnectionState",      # Connection lifecycle states
    "LineTooLongError",     # Oversized input line
    "RateLimiter",          # Per-address sliding window limiter
    "SessionTracker",       # Awaitable active session count
    "SlidingWindow",        # One address's attempt log
    "SocketServer",         # Listening socket and accept loop
    "source_key",           # Client address without port
]
