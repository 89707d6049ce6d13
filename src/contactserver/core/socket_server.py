"""
=============================================================================
LOW-LEVEL TCP SOCKET SERVER
=============================================================================

This module implements the listening side of the contact server: it
binds the port, accepts connections and hands each one to a callback.
It knows nothing about rate limits, menus or sessions.

=============================================================================
SOCKET LIFECYCLE (Server Side)
=============================================================================

    1. socket()    Create a socket file descriptor
    2. bind()      Associate the socket with an IP:PORT
                   └─ Failure here is FATAL: the server cannot run
    3. listen()    OS starts queueing incoming connections
    4. accept()    Take the next queued connection
                   └─ Returns a NEW socket just for that client
    5. close()     Stop listening
                   └─ New connection attempts are refused by the OS

                    ┌───────────────────────┐
                    │   Listening Socket    │ ◄── Created once at startup
                    │   [::]:1337           │     Never sends/receives data
                    └───────────┬───────────┘
                                │ accept()
        ┌───────────────────────┼───────────────────────┐
        ▼                       ▼                       ▼
    ┌───────────┐         ┌───────────┐         ┌───────────┐
    │ Client    │         │ Client    │         │ Client    │
    │ Socket 1  │         │ Socket 2  │         │ Socket 3  │
    └───────────┘         └───────────┘         └───────────┘

=============================================================================
SIGNAL HANDLING FOR GRACEFUL SHUTDOWN
=============================================================================

SIGINT (2):   Sent when user presses Ctrl+C
SIGTERM (15): Sent by docker stop, systemd stop, kill command

Both call shutdown(), which closes the listening socket. From that moment
clients get "Connection refused" while the sessions already running are
allowed to finish (see ContactServer._shutdown).

Python only allows signal handlers on the main thread. When the server
is started from another thread (tests, embedding) handlers are skipped
and shutdown() must be called explicitly.

=============================================================================
"""

import socket
import signal
import logging
import threading
from typing import Optional, Callable, Tuple

from ..config import ServerConfig
from .connection import Connection


logger = logging.getLogger(__name__)


class SocketServer:
    """
    Low-level TCP socket server.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      SocketServer Internals                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │    start(handler)                                                    │
    │        ├──► _create_socket()   SO_REUSEADDR, TCP_NODELAY             │
    │        ├──► bind()             raises on failure (fatal)             │
    │        ├──► listen()                                                 │
    │        ├──► _setup_signals()   SIGTERM/SIGINT → shutdown()           │
    │        └──► _accept_loop()     blocks until shutdown                 │
    │                 └──► accept() → Connection → handler(conn)           │
    │                                                                      │
    │    shutdown()                                                        │
    │        └──► _running = False, close listening socket                 │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Usage:
        def handle_connection(conn: Connection):
            ...

        server = SocketServer(config)
        server.start(handle_connection)  # Blocks until shutdown
    """

    def __init__(self, config: ServerConfig):
        """
        Initialize the socket server.

        Args:
            config: Server configuration (host, port, backlog, timeouts).

        The socket is created lazily in start().
        """
        self.config = config

        self._socket: Optional[socket.socket] = None
        self._bound_address: Optional[Tuple[str, int]] = None

        self._running = False
        self._socket_lock = threading.Lock()

        # Set once the socket is listening (tests wait on this)
        self._listening_event = threading.Event()
        # Set once shutdown has been requested
        self._shutdown_event = threading.Event()

        # Original signal handlers, restored on cleanup
        self._original_handlers: dict = {}

    @property
    def is_running(self) -> bool:
        """Check if server is running."""
        return self._running

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (IP, port), or the configured one before start()."""
        return self._bound_address or (self.config.host, self.config.port)

    def _bind_target(self) -> Tuple[int, str]:
        """
        Pick the address family and bind address for the configured host.

            ""           → IPv6 "::" with IPv4 mapped in (dual-stack),
                           or IPv4 "0.0.0.0" where dual-stack is missing
            "::", "::1"  → IPv6
            "0.0.0.0"    → IPv4 only
        """
        host = self.config.host
        if not host:
            if socket.has_dualstack_ipv6():
                return socket.AF_INET6, "::"
            return socket.AF_INET, "0.0.0.0"
        if ":" in host:
            return socket.AF_INET6, host
        return socket.AF_INET, host

    def _create_socket(self) -> socket.socket:
        """Create and configure the listening socket."""
        family, _ = self._bind_target()
        sock = socket.socket(family, socket.SOCK_STREAM)

        if family == socket.AF_INET6 and not self.config.host:
            # Accept IPv4 clients too, as ::ffff:a.b.c.d
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)

        # Avoid "Address already in use" while old sockets sit in TIME_WAIT
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Menu text is small and interactive: send it immediately
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        # accept() wakes up every second so the running flag is re-checked
        # even if closing the socket from another thread doesn't interrupt it
        sock.settimeout(1.0)

        return sock

    def _setup_signals(self):
        """Install SIGTERM/SIGINT handlers that trigger shutdown()."""
        if not self.config.install_signal_handlers:
            return

        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on main thread, skipping signal handlers")
            return

        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, stopping new connections...")
            self.shutdown()

        self._original_handlers[signal.SIGTERM] = signal.signal(signal.SIGTERM, shutdown_handler)
        self._original_handlers[signal.SIGINT] = signal.signal(signal.SIGINT, shutdown_handler)

    def _restore_signals(self):
        """Restore original signal handlers."""
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    def start(self, connection_handler: Callable[[Connection], None]):
        """
        Bind, listen and accept connections until shutdown() is called.

        This method BLOCKS.

        Args:
            connection_handler: Called with each accepted Connection on the
                                accept thread. It must not block.

        Raises:
            OSError: If the address cannot be bound or listened on.
        """
        sock = self._create_socket()
        _, bind_host = self._bind_target()

        try:
            sock.bind((bind_host, self.config.port))
            sock.listen(self.config.backlog)
        except OSError as e:
            logger.error(f"Failed to bind to {self.config.host}:{self.config.port}: {e}")
            sock.close()
            raise

        with self._socket_lock:
            self._socket = sock
            self._bound_address = sock.getsockname()[:2]
            self._running = not self._shutdown_event.is_set()

        self._setup_signals()

        logger.info(f"Listening on {self._bound_address[0]}:{self._bound_address[1]}")
        self._listening_event.set()

        try:
            self._accept_loop(connection_handler)
        finally:
            self._cleanup()

    def _accept_loop(self, connection_handler: Callable[[Connection], None]):
        """
        Main loop for accepting connections.

        ┌─────────────────────────────────────────────────────────────────┐
        │                     Accept Loop Flow                             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │   while self._running:                                           │
        │       accept()            timeout → loop (re-check flag)         │
        │                           OSError, socket closed → exit          │
        │                           OSError, still open → log, continue    │
        │       Connection(...)     absolute deadline starts now           │
        │       handler(conn)       admission + dispatch, never blocks     │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘
        """
        while self._running:
            sock = self._socket
            if sock is None:
                break

            try:
                client_socket, client_address = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._running or sock.fileno() == -1:
                    break  # Listening socket closed by shutdown()
                # Transient (e.g. EMFILE, ECONNABORTED): keep serving
                logger.error(f"Accept error: {e}")
                continue

            logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")

            conn = Connection(
                socket=client_socket,
                address=client_address,
                buffer_size=self.config.buffer_size,
                max_line_size=self.config.max_input_size,
                conn_timeout=self.config.conn_timeout,
                read_timeout=self.config.read_timeout,
            )

            try:
                connection_handler(conn)
            except Exception as e:
                logger.exception(f"[{conn.id}] Dispatch error: {e}")
                conn.close(drain_timeout=0.0)

    def shutdown(self):
        """
        Stop accepting connections.

        Safe to call from a signal handler, another thread, or more than
        once. Closing the listening socket makes further connection
        attempts fail at the transport level right away.
        """
        if self._shutdown_event.is_set():
            return

        logger.info("Shutting down listener...")
        self._shutdown_event.set()
        self._running = False
        self._close_socket()

    def _close_socket(self):
        with self._socket_lock:
            sock, self._socket = self._socket, None
        if sock is not None:
            try:
                # Stops listening now and wakes a thread blocked in accept()
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Not supported for listening sockets on some platforms
            try:
                sock.close()
            except OSError:
                pass  # Already closed

    def _cleanup(self):
        """Clean up resources when the accept loop exits."""
        self._running = False
        self._restore_signals()
        self._close_socket()
        self._shutdown_event.set()
        logger.info("Listener stopped")

    def wait_until_listening(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the socket is bound and listening.

        Returns:
            True once listening, False on timeout.
        """
        return self._listening_event.wait(timeout)

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the server to shut down.

        Returns:
            True if shutdown happened, False on timeout.
        """
        return self._shutdown_event.wait(timeout)
