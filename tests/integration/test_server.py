"""
Integration tests for the contact server.

These start a real server on a free port and talk to it over TCP.
"""

import errno
import logging
import os
import signal
import socket
import struct
import subprocess
import sys
import time
from pathlib import Path

import pytest

from contactserver.core.socket_server import SocketServer
from contactserver.server import BUSY_MESSAGE, RATE_LIMITED_MESSAGE
from contactserver.session import FAREWELL_MESSAGE, TOO_LARGE_MESSAGE, SessionHandler
from conftest import recv_all, recv_until


PROMPT = b"> Select [1-5] or 'q' to quit: "


def idle(server) -> bool:
    return server.admission.in_use == 0 and server.sessions.count == 0


def ipv6_loopback_available() -> bool:
    if not socket.has_dualstack_ipv6():
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as s:
            s.bind(("::1", 0))
    except OSError:
        return False
    return True


class ExplodingHandler(SessionHandler):
    """Session handler that fails after greeting the client."""

    def handle(self, conn):
        conn.send(self.render_menu())
        raise RuntimeError("handler bug")


class FlakyListener(socket.socket):
    """Listening socket whose first accept() fails like a full fd table."""

    failures = 1

    def accept(self):
        if self.failures:
            self.failures -= 1
            raise OSError(errno.EMFILE, "Too many open files")
        return super().accept()


class TestMenu:
    """Tests for the client-visible protocol."""

    def test_full_session(self, make_server):
        runner = make_server()

        with runner.connect() as client:
            greeting = recv_until(client, PROMPT)
            assert b"Welcome to hitto's contact server" in greeting
            assert b"[2] GitHub" in greeting

            client.sendall(b"3\n")
            assert b"\xe2\x86\x92 Opening Zenn: https://zenn.dev/hitto" in recv_until(client, PROMPT)

            client.sendall(b"q\n")
            assert recv_all(client).endswith(FAREWELL_MESSAGE.encode("utf-8"))

        assert runner.wait_for(lambda: idle(runner.server))

    def test_invalid_input_reprompts(self, make_server):
        runner = make_server()

        with runner.connect() as client:
            recv_until(client, PROMPT)

            client.sendall(b"hello\n")
            assert b"Invalid input." in recv_until(client, b"quit: ")

            client.sendall(b"quit\n")
            assert b"See you!" in recv_all(client)

    def test_oversized_input(self, make_server):
        runner = make_server(max_input_size=32)

        with runner.connect() as client:
            recv_until(client, PROMPT)
            client.sendall(b"1" * 100 + b"\n")

            assert recv_all(client).endswith(TOO_LARGE_MESSAGE.encode("utf-8"))

        assert runner.wait_for(lambda: idle(runner.server))


class TestRateLimit:
    """Tests for per-address rate limiting."""

    def test_rejects_after_max_attempts(self, make_server):
        runner = make_server(rate_limit_max=3, rate_limit_window=30.0)

        for _ in range(3):
            with runner.connect() as client:
                assert PROMPT in recv_until(client, PROMPT)

        with runner.connect() as client:
            assert recv_all(client) == RATE_LIMITED_MESSAGE.encode("utf-8")

        assert runner.server.rate_limiter.attempts("127.0.0.1") == 3

    def test_rejection_does_not_take_a_slot(self, make_server):
        runner = make_server(rate_limit_max=1, max_connections=2)

        with runner.connect() as first:
            recv_until(first, PROMPT)

            with runner.connect() as second:
                recv_all(second)

            assert runner.server.admission.in_use == 1


class TestCapacity:
    """Tests for the concurrent session cap."""

    def test_busy_when_full(self, make_server):
        runner = make_server(max_connections=1)

        with runner.connect() as first:
            recv_until(first, PROMPT)

            with runner.connect() as second:
                assert recv_all(second) == BUSY_MESSAGE.encode("utf-8")

            # The admitted session is unaffected
            first.sendall(b"1\n")
            assert b"https://x.com/hitto_kun" in recv_until(first, PROMPT)

    def test_slot_reusable_after_quit(self, make_server):
        runner = make_server(max_connections=1)

        for _ in range(3):
            with runner.connect() as client:
                recv_until(client, PROMPT)
                client.sendall(b"q\n")
                recv_all(client)
            assert runner.wait_for(lambda: idle(runner.server))

    def test_never_exceeds_capacity(self, make_server):
        runner = make_server(max_connections=3)
        clients = []
        try:
            for _ in range(6):
                clients.append(runner.connect())

            replies = [recv_until(c, PROMPT) for c in clients]

            admitted = [r for r in replies if PROMPT in r]
            busy = [r for r in replies if r == BUSY_MESSAGE.encode("utf-8")]
            assert len(admitted) == 3
            assert len(busy) == 3
            assert runner.server.admission.in_use == 3
        finally:
            for c in clients:
                c.close()

        assert runner.wait_for(lambda: idle(runner.server))


class TestSlotRelease:
    """Tests that every way a session ends gives its slot back."""

    def test_after_read_timeout(self, make_server):
        runner = make_server(read_timeout=0.3)

        with runner.connect() as client:
            recv_until(client, PROMPT)
            assert recv_all(client) == b""

        assert runner.wait_for(lambda: idle(runner.server))

    def test_after_connection_timeout(self, make_server):
        runner = make_server(conn_timeout=0.5, read_timeout=5.0)

        with runner.connect() as client:
            recv_until(client, PROMPT)
            start = time.monotonic()
            try:
                while True:
                    client.sendall(b"1\n")
                    if not client.recv(4096):
                        break
                    time.sleep(0.05)
            except OSError:
                pass
            assert time.monotonic() - start < 3.0

        assert runner.wait_for(lambda: idle(runner.server))

    def test_after_abrupt_disconnect(self, make_server):
        runner = make_server()

        client = runner.connect()
        recv_until(client, PROMPT)
        # SO_LINGER 0: close() sends RST instead of FIN
        client.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        client.close()

        assert runner.wait_for(lambda: idle(runner.server))


class TestShutdown:
    """Tests for graceful shutdown."""

    def test_refuses_new_connections(self, make_server):
        runner = make_server()
        port = runner.port

        runner.stop()

        assert not runner.thread.is_alive()
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", port), timeout=2.0)

    def test_waits_for_active_sessions(self, make_server):
        runner = make_server(shutdown_grace=5.0)

        client = runner.connect()
        try:
            recv_until(client, PROMPT)

            runner.server.shutdown()
            time.sleep(0.3)

            # Listener is gone but the session is still being served
            assert runner.thread.is_alive()
            with pytest.raises(ConnectionRefusedError):
                socket.create_connection(("127.0.0.1", runner.port), timeout=2.0)

            client.sendall(b"5\n")
            assert b"https://hitto-kun.hatenablog.com" in recv_until(client, PROMPT)

            start = time.monotonic()
            client.sendall(b"q\n")
            recv_all(client)
        finally:
            client.close()

        runner.thread.join(timeout=5.0)
        assert not runner.thread.is_alive()
        assert time.monotonic() - start < 3.0

    def test_grace_period_is_bounded(self, make_server):
        runner = make_server(shutdown_grace=0.5, read_timeout=30.0, conn_timeout=60.0)

        client = runner.connect()
        try:
            recv_until(client, PROMPT)

            start = time.monotonic()
            runner.server.shutdown()
            runner.thread.join(timeout=5.0)

            assert not runner.thread.is_alive()
            assert time.monotonic() - start < 3.0
            assert runner.server.sessions.count == 1  # Abandoned
        finally:
            client.close()

    def test_shutdown_is_idempotent(self, make_server):
        runner = make_server()

        runner.server.shutdown()
        runner.server.shutdown()
        runner.thread.join(timeout=5.0)

        assert not runner.thread.is_alive()

    def test_bind_failure_raises(self, config):
        from contactserver import ContactServer

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            config.port = blocker.getsockname()[1]

            with pytest.raises(OSError):
                ContactServer(config).run()


class TestErrorPaths:
    """Tests that unexpected errors stay contained."""

    def test_session_error_releases_slot(self, make_server, caplog):
        runner = make_server(session_handler=ExplodingHandler(), max_connections=1)

        with runner.connect() as client:
            recv_all(client)

        assert runner.wait_for(lambda: idle(runner.server))
        assert "Session error: handler bug" in caplog.text

        # The only slot is free again
        with runner.connect() as client:
            assert PROMPT in recv_until(client, PROMPT)

    def test_accept_error_keeps_serving(self, make_server, monkeypatch, caplog):
        create_socket = SocketServer._create_socket

        def create_flaky_socket(self):
            sock = create_socket(self)
            flaky = FlakyListener(sock.family, sock.type, sock.proto, fileno=sock.detach())
            flaky.settimeout(1.0)
            return flaky

        monkeypatch.setattr(SocketServer, "_create_socket", create_flaky_socket)
        caplog.set_level(logging.ERROR, logger="contactserver.core.socket_server")

        runner = make_server()

        with runner.connect() as client:
            assert PROMPT in recv_until(client, PROMPT)
            client.sendall(b"q\n")
            recv_all(client)

        assert "Accept error" in caplog.text
        assert runner.thread.is_alive()


@pytest.mark.skipif(not socket.has_dualstack_ipv6(), reason="no dual-stack IPv6")
class TestDualStack:
    """Tests for the default all-interfaces listener."""

    def test_ipv4_client_on_default_host(self, make_server):
        runner = make_server(host="")

        with runner.connect(host="127.0.0.1") as client:
            assert PROMPT in recv_until(client, PROMPT)

        # Rate limited under its plain IPv4 address
        assert "127.0.0.1" in runner.server.rate_limiter

    @pytest.mark.skipif(not ipv6_loopback_available(), reason="no IPv6 loopback")
    def test_ipv6_client_on_default_host(self, make_server):
        runner = make_server(host="")

        with runner.connect(host="::1") as client:
            assert PROMPT in recv_until(client, PROMPT)

        assert "::1" in runner.server.rate_limiter


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
class TestProcess:
    """Tests for the command-line entry point."""

    def test_sigterm_drains_then_exits(self, free_port):
        src = Path(__file__).parent.parent.parent / "src"
        env = dict(os.environ, PYTHONPATH=str(src))
        proc = subprocess.Popen(
            [sys.executable, "-m", "contactserver",
             "--host", "127.0.0.1", "--port", str(free_port)],
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        try:
            client = None
            deadline = time.monotonic() + 10.0
            while client is None:
                try:
                    client = socket.create_connection(("127.0.0.1", free_port), timeout=5.0)
                except ConnectionRefusedError:
                    if time.monotonic() > deadline or proc.poll() is not None:
                        raise
                    time.sleep(0.1)

            with client:
                recv_until(client, PROMPT)

                proc.send_signal(signal.SIGTERM)
                time.sleep(0.3)
                assert proc.poll() is None  # Still draining

                client.sendall(b"q\n")
                recv_all(client)

            assert proc.wait(timeout=5.0) == 0
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
