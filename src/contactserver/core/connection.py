"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

This module wraps a raw client socket with a line-oriented API, size
limits and the two session timeouts.

=============================================================================
TCP IS A BYTE STREAM, NOT A LINE PROTOCOL!
=============================================================================

The client types "3" and presses Enter, but the server may receive:

    recv() → "3\n"            (the whole line)
    recv() → "3"              (partial, newline still in flight)
    recv() → "3\nq\n"         (two lines at once, e.g. piped input)

So we buffer bytes and cut lines at b"\n" ourselves. Anything after the
first newline stays in the buffer for the next read_line() call.

=============================================================================
TWO DEADLINES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────┐
    │                  Absolute vs Rolling Deadline                    │
    ├─────────────────────────────────────────────────────────────────┤
    │                                                                  │
    │   accept()                                       conn_deadline   │
    │      │◄────────────────── conn_timeout ─────────────────►│       │
    │      │                                                   │       │
    │      │  read 1         read 2         read 3             │       │
    │      │  │◄─ read_timeout ─►│                             │       │
    │      │                │◄─ read_timeout ─►│               │       │
    │      │                              │◄─ read_timeout ──X─┤       │
    │      │                                                   │       │
    │   Each read waits at most read_timeout (idle bound), but │       │
    │   never past conn_deadline (total bound).                 │       │
    │                                                                  │
    └─────────────────────────────────────────────────────────────────┘

A steady trickle of input keeps the rolling deadline moving, but the
absolute deadline still ends the session. Expiry of either surfaces as
TimeoutError from read_line().

=============================================================================
CONNECTION STATE MACHINE
=============================================================================

    NEW ──────► READING ──────► WRITING ──────┐
     │             ▲                          │
     │             └──────────────────────────┘
     │             │
     ▼             ▼
   CLOSING ◄───────┘
     │
     ▼
   CLOSED

=============================================================================
"""

import socket
import time
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional
import uuid


logger = logging.getLogger(__name__)


class LineTooLongError(ValueError):
    """
    Raised when the client sends a line longer than the allowed size.

    Attributes:
        limit: The configured maximum line size in bytes.
        received: How many bytes were buffered when the limit was hit.
    """

    def __init__(self, limit: int, received: int):
        super().__init__(f"Line exceeds {limit} bytes ({received} buffered)")
        self.limit = limit
        self.received = received


class ConnectionState(Enum):
    """
    Connection lifecycle states.

    Used for logging, debugging and making close() idempotent.
    """
    NEW = "new"              # Just accepted, nothing read yet
    READING = "reading"      # Waiting for a line
    WRITING = "writing"      # Sending data
    CLOSING = "closing"      # Shutdown sequence in progress
    CLOSED = "closed"        # Socket released


def source_key(address) -> str:
    """
    Identify the client for rate limiting: its address without the port.

        ("203.0.113.7", 51234)              → "203.0.113.7"
        ("2001:db8::1", 51234, 0, 0)        → "2001:db8::1"
        ("::ffff:203.0.113.7", 51234, 0, 0) → "203.0.113.7"
        "203.0.113.7:51234"                 → "203.0.113.7"

    IPv4 clients seen through a dual-stack listener arrive as
    IPv4-mapped IPv6 addresses and get the same key as over IPv4.
    """
    if isinstance(address, tuple) and address:
        return _unmap(str(address[0]))

    text = str(address)
    if text.startswith("["):
        # "[2001:db8::1]:51234"
        end = text.find("]")
        if end != -1:
            return _unmap(text[1:end])
    host, sep, port = text.rpartition(":")
    if sep and host and ":" not in host and port.isdigit():
        return host
    return _unmap(text)


def _unmap(host: str) -> str:
    if host.lower().startswith("::ffff:") and "." in host:
        return host[len("::ffff:"):]
    return host


@dataclass
class Connection:
    """
    Represents a client connection.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    Connection Responsibilities                       │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │  1. LINE READING                                                     │
    │     └── Buffer bytes until b"\n", strip one trailing b"\r"           │
    │     └── Reject lines longer than max_line_size                       │
    │                                                                      │
    │  2. TIMEOUT MANAGEMENT                                               │
    │     └── Absolute deadline fixed at creation (conn_timeout)           │
    │     └── Rolling deadline per read_line() (read_timeout)              │
    │     └── Writes are bounded by the absolute deadline too              │
    │                                                                      │
    │  3. STATE TRACKING                                                   │
    │     └── Know what phase the connection is in (logging)               │
    │                                                                      │
    │  4. GRACEFUL CLOSE                                                   │
    │     └── shutdown(SHUT_WR), optional drain, close()                   │
    │     └── Safe to call more than once                                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Attributes:
        socket: The client socket.
        address: Client's socket address (ip, port[, ...]).
        id: Short unique identifier (for logging).
        state: Current connection state.
        created_at: Monotonic time the connection was accepted.
        lines_read: Number of complete lines returned by read_line().
    """

    # Required parameters
    socket: socket.socket
    address: tuple

    # Generated/default parameters
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.monotonic)
    lines_read: int = 0

    # Configuration (passed from ServerConfig)
    buffer_size: int = 4096        # How much to read at once
    max_line_size: int = 1024      # Longest accepted line, newline excluded
    conn_timeout: float = 60.0     # Absolute lifetime
    read_timeout: float = 30.0     # Rolling idle timeout per line

    # Internal state (not shown in repr for cleaner logs)
    _buffer: bytes = field(default=b"", repr=False)

    def __post_init__(self):
        # Blocking mode; every recv/send gets an explicit timeout
        self.socket.setblocking(True)
        self.deadline = self.created_at + self.conn_timeout

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def client_ip(self) -> str:
        """Get the client address without port."""
        return source_key(self.address)

    @property
    def age(self) -> float:
        """Get connection age in seconds."""
        return time.monotonic() - self.created_at

    @property
    def remaining(self) -> float:
        """Seconds left before the absolute deadline."""
        return self.deadline - time.monotonic()

    # =========================================================================
    # READING
    # =========================================================================

    def read_line(self) -> Optional[str]:
        """
        Read one line from the client.

        ┌─────────────────────────────────────────────────────────────────┐
        │                    read_line() Flow                              │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │   read_deadline = now + read_timeout  (capped by deadline)       │
        │                                                                  │
        │   loop:                                                          │
        │     b"\n" in buffer?  → cut line, check size, return it          │
        │     buffer > limit?   → LineTooLongError                         │
        │     recv() → append   (EOF → return final partial line / None)   │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘

        Returns:
            The line without its line terminator, or None if the client
            closed the connection (or reset it) with nothing buffered.

        Raises:
            LineTooLongError: If the line exceeds max_line_size bytes.
            TimeoutError: If the rolling or absolute deadline expires.
        """
        self.state = ConnectionState.READING
        read_deadline = min(time.monotonic() + self.read_timeout, self.deadline)

        while True:
            newline = self._buffer.find(b"\n")
            if newline != -1:
                raw = self._buffer[:newline]
                self._buffer = self._buffer[newline + 1:]
                return self._finish_line(raw)

            # No newline yet. A trailing b"\r" may still be part of b"\r\n".
            limit = self.max_line_size + (1 if self._buffer.endswith(b"\r") else 0)
            if len(self._buffer) > limit:
                raise LineTooLongError(self.max_line_size, len(self._buffer))

            chunk = self._recv(read_deadline)
            if not chunk:
                # Client closed. Whatever is buffered is the last line.
                if self._buffer:
                    raw, self._buffer = self._buffer, b""
                    return self._finish_line(raw)
                return None

            self._buffer += chunk

    def _finish_line(self, raw: bytes) -> str:
        """Strip b"\r", enforce the size limit and decode."""
        if raw.endswith(b"\r"):
            raw = raw[:-1]

        if len(raw) > self.max_line_size:
            raise LineTooLongError(self.max_line_size, len(raw))

        self.lines_read += 1
        return raw.decode("utf-8", errors="replace")

    def _recv(self, read_deadline: float) -> bytes:
        """
        Receive one chunk, waiting no longer than read_deadline.

        Returns:
            Received bytes, or empty bytes if the connection was closed
            or reset by the client.

        Raises:
            TimeoutError: If read_deadline passes first.
        """
        wait = read_deadline - time.monotonic()
        if wait <= 0:
            raise TimeoutError("Read deadline exceeded")

        self.socket.settimeout(wait)
        try:
            return self.socket.recv(self.buffer_size)
        except socket.timeout:
            raise TimeoutError("Read deadline exceeded") from None
        except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError):
            # Client disconnected abruptly
            return b""

    # =========================================================================
    # WRITING
    # =========================================================================

    def send(self, text: str) -> bool:
        """
        Send text to the client (UTF-8).

        Uses sendall() so the whole message goes out, bounded by the
        absolute deadline.

        Returns:
            True if send succeeded, False if the connection is gone or
            the deadline passed.
        """
        self.state = ConnectionState.WRITING

        wait = self.remaining
        if wait <= 0:
            return False

        try:
            self.socket.settimeout(wait)
            self.socket.sendall(text.encode("utf-8"))
            return True
        except OSError as e:
            # Covers resets, broken pipes and socket.timeout
            logger.debug(f"[{self.id}] Send failed: {e}")
            return False

    # =========================================================================
    # CLOSING
    # =========================================================================

    def close(self, drain_timeout: float = 0.5):
        """
        Close the connection gracefully.

        1. shutdown(SHUT_WR): tell the client we're done sending (FIN)
        2. Drain: read and discard what the client already sent, so the
           kernel doesn't answer our FIN with a RST that could destroy
           the last message before the client reads it
        3. close(): release the file descriptor

        Args:
            drain_timeout: Seconds to spend draining. 0 drains only what
                           is already buffered and never blocks (used by
                           the accept loop for rejected connections).
        """
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return  # Already closed

        self.state = ConnectionState.CLOSING

        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass  # Already disconnected

        drain_until = time.monotonic() + drain_timeout
        try:
            self.socket.settimeout(drain_timeout)
            while self.socket.recv(1024):
                if time.monotonic() >= drain_until:
                    break  # Client keeps sending; stop draining
        except OSError:
            pass  # Timeout, would-block or reset: we're closing anyway

        try:
            self.socket.close()
        except OSError:
            pass

        self.state = ConnectionState.CLOSED
        logger.debug(f"[{self.id}] Connection closed after {self.lines_read} lines")

    # =========================================================================
    # CONTEXT MANAGER
    # =========================================================================

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Ensure the connection is closed."""
        self.close()
        return False  # Don't suppress exceptions
