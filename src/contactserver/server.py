"""
=============================================================================
CONTACT SERVER
=============================================================================

This is the orchestrator that ties the admission layer and the session
handler together into the running service.

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     CONTACT SERVER ARCHITECTURE                     │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │                        ┌─────────────────┐                          │
    │                        │  ContactServer  │                          │
    │                        │  (Orchestrator) │                          │
    │                        └────────┬────────┘                          │
    │                                 │                                    │
    │     ┌───────────────┬──────────┼──────────┬───────────────┐        │
    │     ▼               ▼          ▼          ▼               ▼        │
    │ ┌─────────┐  ┌───────────┐ ┌─────────┐ ┌─────────┐ ┌───────────┐  │
    │ │ Socket  │  │   Rate    │ │Admission│ │ Session │ │  Cleanup  │  │
    │ │ Server  │  │  Limiter  │ │Controller│ │ Tracker │ │  Sweeper  │  │
    │ └─────────┘  └───────────┘ └─────────┘ └─────────┘ └───────────┘  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
CONNECTION FLOW
=============================================================================

    accept()
       │
       ├──► RateLimiter.check(ip)        ✗ → "Too many connections..."
       │
       ├──► AdmissionController.try_acquire()  ✗ → "Server is busy..."
       │
       └──► SessionTracker.add()
            Thread(session)  ──────────────────────────────┐
                                                           │
            accept() continues immediately                 │
                                                           ▼
                                  SessionHandler.handle(conn)
                                  finally:
                                      conn.close()
                                      slot.release()
                                      tracker.done()

The rate limit is checked BEFORE capacity. A flood from one address is
turned away by its own limit and never competes for the shared slots.

=============================================================================
GRACEFUL SHUTDOWN
=============================================================================

    SIGTERM / shutdown()
       │
       ├──► close listening socket      (new clients: connection refused)
       ├──► stop sweeper
       ├──► tracker.wait_idle(shutdown_grace)
       │        └── returns early as soon as the last session ends
       └──► run() returns               (leftover sessions are abandoned)

=============================================================================
"""

import logging
import threading
from typing import Optional

from .config import ServerConfig
from .core import (
    AdmissionController,
    AdmissionSlot,
    CleanupSweeper,
    Connection,
    RateLimiter,
    SessionTracker,
    SocketServer,
)
from .session import SessionHandler


logger = logging.getLogger(__name__)


RATE_LIMITED_MESSAGE = "Too many connections. Please wait and try again.\n"
BUSY_MESSAGE = "Server is busy. Please try again later.\n"


class ContactServer:
    """
    The contact menu service.

    Usage:
        server = ContactServer(ServerConfig(port=1337))
        server.run()   # Blocks until SIGINT/SIGTERM or shutdown()
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        session_handler: Optional[SessionHandler] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize the server.

        Args:
            config: Server configuration. Defaults are the production values.
            session_handler: Protocol handler run for each admitted connection.
            rate_limiter: Override the limiter (tests inject one with a fake
                          clock).
        """
        self.config = config or ServerConfig()
        self.config.validate()  # Fail-fast on invalid config

        # ─────────────────────────────────────────────────────────────────
        # ADMISSION LAYER (shared state, each with its own locking)
        # ─────────────────────────────────────────────────────────────────

        self.rate_limiter = rate_limiter or RateLimiter(
            window=self.config.rate_limit_window,
            max_attempts=self.config.rate_limit_max,
        )
        self.admission = AdmissionController(self.config.max_connections)
        self.sessions = SessionTracker()

        # ─────────────────────────────────────────────────────────────────
        # NETWORK AND PROTOCOL
        # ─────────────────────────────────────────────────────────────────

        self._socket_server = SocketServer(self.config)
        self._handler = session_handler or SessionHandler()

        self._sweeper: Optional[CleanupSweeper] = None
        self._running = False

    # =========================================================================
    # SERVER LIFECYCLE
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self):
        """Bound (host, port). Useful when configured with port=0."""
        return self._socket_server.address

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the listening socket is up."""
        return self._socket_server.wait_until_listening(timeout)

    def run(self):
        """
        Start the server (blocking).

        Returns after shutdown has drained sessions or the grace period
        ran out.

        Raises:
            OSError: If the listening socket cannot be bound.
        """
        self._setup_logging()
        self._running = True

        self._sweeper = CleanupSweeper(
            self.rate_limiter,
            interval=self.config.rate_limit_cleanup_interval,
        )
        self._sweeper.start()

        logger.info(
            f"Contact server starting on {self.config.host or '*'}:{self.config.port} "
            f"(max connections: {self.config.max_connections}, "
            f"rate limit: {self.config.rate_limit_max}/{self.config.rate_limit_window:g}s)"
        )

        try:
            self._socket_server.start(self._handle_connection)
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self._shutdown()

    def shutdown(self):
        """Request shutdown. run() returns once sessions have drained."""
        self._socket_server.shutdown()

    def _setup_logging(self):
        """Configure logging based on config."""
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        logging.getLogger("contactserver").setLevel(level)

    def _shutdown(self):
        """
        Graceful shutdown.

        1. Make sure the listener is closed
        2. Stop the cleanup sweeper
        3. Wait (bounded) for active sessions to finish
        """
        self._socket_server.shutdown()

        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None

        active = self.sessions.count
        if active:
            logger.info(f"Waiting for {active} active connections to close...")

        if self.sessions.wait_idle(timeout=self.config.shutdown_grace):
            logger.info("Server shutdown complete")
        else:
            logger.warning(
                f"Shutdown grace period ({self.config.shutdown_grace:g}s) elapsed, "
                f"abandoning {self.sessions.count} active connections"
            )

        self._running = False

    # =========================================================================
    # DISPATCH (runs on the accept thread, must never block)
    # =========================================================================

    def _handle_connection(self, conn: Connection):
        """
        Admit or reject one freshly accepted connection.

        Args:
            conn: The client connection.
        """
        ip = conn.client_ip

        if not self.rate_limiter.check(ip):
            logger.warning(f"Connection rejected from {ip}: rate limit exceeded")
            self._reject(conn, RATE_LIMITED_MESSAGE)
            return

        slot = self.admission.try_acquire()
        if slot is None:
            logger.warning(
                f"Connection rejected from {ip}: max connections reached "
                f"({self.config.max_connections})"
            )
            self._reject(conn, BUSY_MESSAGE)
            return

        count = self.sessions.add()
        logger.info(f"New connection from {ip} (active: {count}/{self.config.max_connections})")

        worker = threading.Thread(
            target=self._run_session,
            args=(conn, slot),
            name=f"Session-{conn.id}",
            daemon=True,  # Abandoned after the shutdown grace period
        )
        try:
            worker.start()
        except RuntimeError as e:
            # Could not start a thread: undo the admission
            logger.error(f"[{conn.id}] Failed to start session: {e}")
            self._finish_session(conn, slot)

    def _reject(self, conn: Connection, message: str):
        """Send an advisory message and close without waiting on the client."""
        conn.send(message)
        conn.close(drain_timeout=0.0)

    def _run_session(self, conn: Connection, slot: AdmissionSlot):
        """Session thread body. Releases everything on every exit path."""
        try:
            self._handler.handle(conn)
        except Exception as e:
            logger.exception(f"[{conn.id}] Session error: {e}")
        finally:
            self._finish_session(conn, slot)

    def _finish_session(self, conn: Connection, slot: AdmissionSlot):
        try:
            conn.close()
        finally:
            slot.release()
            count = self.sessions.done()
            logger.info(
                f"Connection closed from {conn.client_ip} "
                f"(active: {count}/{self.config.max_connections})"
            )

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    @property
    def stats(self) -> dict:
        """Snapshot of admission state, for logs and tests."""
        return {
            "sessions": {
                "active": self.sessions.count,
                "max": self.config.max_connections,
            },
            "slots": {
                "in_use": self.admission.in_use,
                "available": self.admission.available,
            },
            "rate_limiter": {
                "tracked_sources": len(self.rate_limiter),
            },
        }


def create_server(config: Optional[ServerConfig] = None) -> ContactServer:
    """
    Create a contact server.

    Example:
        server = create_server(ServerConfig(port=2020))
        server.run()
    """
    return ContactServer(config)
