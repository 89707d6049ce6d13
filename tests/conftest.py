"""
pytest configuration and fixtures.
"""

import socket
import threading
import time
from typing import Generator, Optional
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from contactserver import ContactServer, ServerConfig


class FakeClock:
    """Manually advanced monotonic clock for time-dependent tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ServerConfig:
    """Test server configuration: localhost, free port, short timeouts."""
    return ServerConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a free port
        max_connections=4,
        max_input_size=64,
        conn_timeout=10.0,
        read_timeout=5.0,
        rate_limit_window=30.0,
        rate_limit_max=50,
        rate_limit_cleanup_interval=60.0,
        shutdown_grace=2.0,
        install_signal_handlers=False,
        log_level="WARNING",
    )


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture
def socket_pair() -> Generator[tuple, None, None]:
    """Connected (server_side, client_side) sockets."""
    server_side, client_side = socket.socketpair()
    client_side.settimeout(5.0)
    yield server_side, client_side
    for s in (server_side, client_side):
        try:
            s.close()
        except OSError:
            pass


class ServerRunner:
    """Runs a ContactServer in a background thread."""

    def __init__(self, server: ContactServer):
        self.server = server
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.server.address[1]

    @property
    def thread(self) -> threading.Thread:
        return self._thread

    def start(self):
        """Start server in background thread and wait until it listens."""
        self._thread = threading.Thread(target=self.server.run, daemon=True)
        self._thread.start()

        # Waits on the listening event rather than probing with connect(),
        # which would count against the rate limit
        if not self.server.wait_until_ready(timeout=5.0):
            raise RuntimeError("Server failed to start")

    def connect(self, timeout: float = 5.0, host: str = "127.0.0.1") -> socket.socket:
        sock = socket.create_connection((host, self.port), timeout=timeout)
        return sock

    def wait_for(self, predicate, timeout: float = 5.0) -> bool:
        """Poll a condition on the server (e.g. slots back to zero)."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.02)
        return predicate()

    def stop(self, timeout: float = 5.0):
        """Stop the server and wait for run() to return."""
        self.server.shutdown()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)


@pytest.fixture
def make_server(config: ServerConfig):
    """Factory for running servers; every server is stopped after the test."""
    runners = []

    def factory(session_handler=None, **overrides) -> ServerRunner:
        for key, value in overrides.items():
            setattr(config, key, value)
        runner = ServerRunner(ContactServer(config, session_handler=session_handler))
        runner.start()
        runners.append(runner)
        return runner

    yield factory

    for runner in runners:
        runner.stop()


def recv_until(sock: socket.socket, marker: bytes, timeout: float = 5.0) -> bytes:
    """Read until marker appears or the peer closes."""
    sock.settimeout(timeout)
    data = b""
    while marker not in data:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


def recv_all(sock: socket.socket, timeout: float = 5.0) -> bytes:
    """Read until the peer closes the connection."""
    sock.settimeout(timeout)
    data = b""
    while True:
        try:
            chunk = sock.recv(4096)
        except ConnectionResetError:
            break
        if not chunk:
            break
        data += chunk
    return data
