# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the pipe, subprocess and TCP transports."""

from __future__ import annotations

import logging
import queue
import socket
import socketserver
import sys
import textwrap
import threading

import pytest

from apictl.dispatch import invoke
from apictl.rpc import (
    RpcConnection,
    RpcError,
    RpcServer,
    SocketTransport,
    StderrMode,
    SubprocessTransport,
    dial,
    make_pipe_pair,
    parse_address,
    serve_tcp,
)
from apictl.rpc._transport import _ThreadingRpcServer
from apictl.services import GetStatsRequest, StatsService

from .conftest import _worker_cmd
from .service_fixtures import UPLINK, fixture_services

# ---------------------------------------------------------------------------
# parse_address
# ---------------------------------------------------------------------------


class TestParseAddress:
    """Tests for ``host:port`` parsing."""

    @pytest.mark.parametrize(
        ("address", "expected"),
        [
            ("127.0.0.1:8080", ("127.0.0.1", 8080)),
            ("localhost:1", ("localhost", 1)),
            (":9000", ("127.0.0.1", 9000)),
            ("[::1]:443", ("::1", 443)),
            ("api.example.com:65535", ("api.example.com", 65535)),
        ],
        ids=["ipv4", "name", "empty_host", "ipv6", "max_port"],
    )
    def test_valid(self, address: str, expected: tuple[str, int]) -> None:
        """Well-formed addresses split into host and port."""
        assert parse_address(address) == expected

    @pytest.mark.parametrize(
        ("address", "fragment"),
        [
            ("127.0.0.1", "missing port"),
            ("host:http", "is not a number"),
            ("host:65536", "out of range"),
            ("host:0", "out of range"),
            ("::1:80", "must be written as"),
            ("[::1]80", "expected"),
        ],
        ids=["no_port", "named_port", "too_big", "zero", "bare_ipv6", "bad_brackets"],
    )
    def test_invalid(self, address: str, fragment: str) -> None:
        """Malformed addresses raise ValueError."""
        with pytest.raises(ValueError, match=fragment):
            parse_address(address)

    def test_zero_port_for_binding(self) -> None:
        """Port 0 is allowed when binding."""
        assert parse_address("127.0.0.1:0", allow_zero=True) == ("127.0.0.1", 0)


# ---------------------------------------------------------------------------
# TCP
# ---------------------------------------------------------------------------


class TestTcp:
    """Tests for dial() against the threaded TCP server."""

    def test_dial_and_invoke(self, tcp_address: str) -> None:
        """A dialed connection carries a full text call."""
        transport = dial(tcp_address, timeout=5)
        try:
            assert isinstance(transport, SocketTransport)
            text = invoke(transport, "StatsService.GetStats", f'name: "{UPLINK}"')
            assert "value: 1024" in text
            assert invoke(transport, "LoggerService.RestartLogger", "") == ""
        finally:
            transport.close()

    def test_concurrent_connections(self, tcp_address: str) -> None:
        """Each connection is served on its own thread."""
        results: list[str] = []
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                transport = dial(tcp_address, timeout=5)
                try:
                    results.append(invoke(transport, "StatsService.GetSysStats", ""))
                finally:
                    transport.close()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert errors == []
        assert len(results) == 4
        assert len(set(results)) == 1

    def test_close_is_idempotent(self, tcp_address: str) -> None:
        """Closing a socket transport twice is harmless."""
        transport = dial(tcp_address)
        assert transport.peer is not None
        transport.close()
        transport.close()

    def test_dial_refused(self) -> None:
        """Dialing a port nobody listens on raises OSError."""
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        with pytest.raises(OSError):
            dial(f"127.0.0.1:{port}", timeout=2)

    def test_dial_malformed(self) -> None:
        """A malformed address raises ValueError before connecting."""
        with pytest.raises(ValueError):
            dial("no-port-here")

    def test_peer_hangs_up(self) -> None:
        """A peer that closes the connection without answering surfaces as a TransportError."""
        with socket.socket() as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]

            def accept_and_close() -> None:
                conn, _ = listener.accept()
                conn.close()

            thread = threading.Thread(target=accept_and_close, daemon=True)
            thread.start()
            transport = dial(f"127.0.0.1:{port}", timeout=5)
            thread.join(timeout=5)
            try:
                with pytest.raises(RpcError, match="TransportError"):
                    invoke(transport, "LoggerService.RestartLogger", "")
            finally:
                transport.close()

    def test_serve_tcp_until_interrupted(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        """serve_tcp answers calls on an ephemeral port and returns cleanly on KeyboardInterrupt."""
        bound: queue.Queue[tuple[str, int]] = queue.Queue()

        def serve_one_then_interrupt(self: socketserver.BaseServer, poll_interval: float = 0.5) -> None:
            bound.put(self.server_address[:2])
            self.handle_request()
            raise KeyboardInterrupt

        monkeypatch.setattr(_ThreadingRpcServer, "serve_forever", serve_one_then_interrupt)
        results: list[str] = []
        errors: list[BaseException] = []

        def client() -> None:
            try:
                host, port = bound.get(timeout=10)
                transport = dial(f"{host}:{port}", timeout=5)
                try:
                    results.append(invoke(transport, "StatsService.GetStats", f'name: "{UPLINK}"'))
                finally:
                    transport.close()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        thread = threading.Thread(target=client, daemon=True)
        thread.start()
        server = RpcServer(fixture_services())
        with caplog.at_level(logging.INFO, logger="apictl.rpc"):
            serve_tcp(server, "127.0.0.1:0")
        thread.join(timeout=10)
        assert errors == []
        assert len(results) == 1
        assert "value: 1024" in results[0]
        messages = [r.getMessage() for r in caplog.records if r.name == "apictl.rpc"]
        assert any(m.startswith("Listening on 127.0.0.1:") for m in messages)
        assert "Interrupted, shutting down" in messages
        interrupted = next(r for r in caplog.records if r.getMessage() == "Interrupted, shutting down")
        assert interrupted.__dict__["server_id"] == server.server_id


# ---------------------------------------------------------------------------
# Pipes and subprocesses
# ---------------------------------------------------------------------------


class TestPipeTransport:
    """Tests for in-process pipe pairs."""

    def test_serve_loop_exits_on_client_disconnect(self) -> None:
        """The server loop ends cleanly when the client closes its end."""
        client_transport, server_transport = make_pipe_pair()
        server = RpcServer(fixture_services())
        done = threading.Event()

        def run() -> None:
            server.serve(server_transport)
            done.set()

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        client_transport.close()
        assert done.wait(timeout=5), "serve() did not return after client disconnect"
        thread.join(timeout=5)
        server_transport.close()


class TestSubprocessTransport:
    """Tests for talking to a worker over its stdin/stdout."""

    def test_session_worker(self, subprocess_worker: SubprocessTransport) -> None:
        """The session worker answers repeated calls."""
        for _ in range(3):
            text = invoke(subprocess_worker, "StatsService.GetStats", f'name: "{UPLINK}"')
            assert "value: 1024" in text

    def test_dead_worker_raises_transport_error(self) -> None:
        """A call to a worker that has exited fails with TransportError."""
        transport = SubprocessTransport(_worker_cmd())
        try:
            with RpcConnection(StatsService, transport, owns_transport=False) as svc:
                svc.get_stats(GetStatsRequest())
                transport.proc.kill()
                transport.proc.wait(timeout=5)
                with pytest.raises(RpcError) as exc_info:
                    svc.get_stats(GetStatsRequest())
            assert exc_info.value.error_type == "TransportError"
            assert "StatsService/get_stats" in exc_info.value.error_message
        finally:
            transport.close()

    def test_nonexistent_command(self) -> None:
        """Spawning a missing executable raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            SubprocessTransport(["/nonexistent/apictl-server"])

    def test_devnull_no_stall(self) -> None:
        """DEVNULL discards stderr without stalling."""
        script = 'import sys; sys.stderr.write("noise\\n")'
        transport = SubprocessTransport([sys.executable, "-c", script], stderr=StderrMode.DEVNULL)
        transport.close()
        assert transport.proc.returncode == 0

    def test_pipe_captures_stderr(self, caplog: pytest.LogCaptureFixture) -> None:
        """PIPE forwards child stderr lines to ``apictl.subprocess.stderr`` at INFO."""
        script = textwrap.dedent("""\
            import sys
            sys.stderr.write("child says hello\\n")
            sys.stderr.flush()
        """)
        with caplog.at_level(logging.DEBUG, logger="apictl.subprocess.stderr"):
            transport = SubprocessTransport([sys.executable, "-c", script], stderr=StderrMode.PIPE)
            transport.close()
        records = [r for r in caplog.records if r.name == "apictl.subprocess.stderr"]
        assert any(r.getMessage() == "child says hello" for r in records)
        assert all(r.levelno == logging.INFO for r in records)

    def test_pipe_custom_logger(self, caplog: pytest.LogCaptureFixture) -> None:
        """PIPE uses the given logger when provided."""
        script = 'import sys; sys.stderr.write("custom line\\n")'
        custom = logging.getLogger("tests.custom.stderr")
        with caplog.at_level(logging.DEBUG, logger="tests.custom.stderr"):
            transport = SubprocessTransport(
                [sys.executable, "-c", script], stderr=StderrMode.PIPE, stderr_logger=custom
            )
            transport.close()
        assert any(r.getMessage() == "custom line" for r in caplog.records if r.name == "tests.custom.stderr")
