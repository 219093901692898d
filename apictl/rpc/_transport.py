# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Transport protocol and implementations."""

from __future__ import annotations

import contextlib
import io
import logging
import os
import socket
import socketserver
import subprocess
import sys
import threading
from enum import Enum
from io import IOBase
from typing import TYPE_CHECKING, BinaryIO, Protocol, cast, runtime_checkable

from apictl.rpc._common import _logger
from apictl.rpc._debug import wire_transport_logger

if TYPE_CHECKING:
    from apictl.rpc._server import RpcServer

DEFAULT_ADDRESS = "127.0.0.1:8080"


# ---------------------------------------------------------------------------
# RpcTransport protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RpcTransport(Protocol):
    """Bidirectional byte stream transport."""

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        ...

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        ...

    def close(self) -> None:
        """Close the transport."""
        ...


# ---------------------------------------------------------------------------
# PipeTransport + make_pipe_pair
# ---------------------------------------------------------------------------


class PipeTransport:
    """Transport backed by file-like IO streams (e.g. from os.pipe())."""

    __slots__ = ("_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Initialize with reader and writer streams."""
        self._reader = reader
        self._writer = writer

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        return self._writer

    def close(self) -> None:
        """Close both streams."""
        self._reader.close()
        self._writer.close()


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Create connected client/server transports using os.pipe().

    Returns (client_transport, server_transport).
    """
    c2s_r, c2s_w = os.pipe()
    s2c_r, s2c_w = os.pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("make_pipe_pair: c2s=(%d,%d), s2c=(%d,%d)", c2s_r, c2s_w, s2c_r, s2c_w)
    client = PipeTransport(
        os.fdopen(s2c_r, "rb"),
        os.fdopen(c2s_w, "wb", buffering=0),
    )
    server = PipeTransport(
        os.fdopen(c2s_r, "rb"),
        os.fdopen(s2c_w, "wb", buffering=0),
    )
    return client, server


# ---------------------------------------------------------------------------
# SubprocessTransport
# ---------------------------------------------------------------------------


class StderrMode(Enum):
    """How to handle child process stderr in SubprocessTransport.

    Members:
        INHERIT: Child stderr goes to parent's stderr (default).
        PIPE: Parent drains child stderr via a daemon thread and
            forwards each line to a ``logging.Logger``.
        DEVNULL: Child stderr discarded at OS level.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


def _drain_stderr(pipe: BinaryIO, logger: logging.Logger) -> None:
    """Drain child stderr line-by-line. Runs in parent as daemon thread."""
    try:
        for raw_line in pipe:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info(line)
    except (OSError, ValueError):
        pass
    with contextlib.suppress(OSError, ValueError):
        pipe.close()


class SubprocessTransport:
    """Transport that communicates with a child process over stdin/stdout.

    The writer (child's stdin) is unbuffered so IPC data is flushed
    immediately.  The reader (child's stdout) is buffered because Arrow IPC
    expects ``read(n)`` to return exactly *n* bytes.
    """

    __slots__ = ("_closed", "_proc", "_reader", "_stderr_thread", "_writer")

    def __init__(
        self,
        cmd: list[str],
        *,
        stderr: StderrMode = StderrMode.INHERIT,
        stderr_logger: logging.Logger | None = None,
    ) -> None:
        """Spawn the subprocess and wire up stdin/stdout as the transport.

        Args:
            cmd: Command to spawn.
            stderr: How to handle the child's stderr stream.
            stderr_logger: Logger for ``StderrMode.PIPE`` output.
                Defaults to ``logging.getLogger("apictl.subprocess.stderr")``.

        """
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SubprocessTransport init: cmd=%s, stderr=%s", cmd, stderr.value)

        if stderr == StderrMode.DEVNULL:
            stderr_arg: int | None = subprocess.DEVNULL
        elif stderr == StderrMode.PIPE:
            stderr_arg = subprocess.PIPE
        else:
            stderr_arg = None

        self._proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=stderr_arg,
            bufsize=0,
        )
        assert self._proc.stdout is not None
        assert self._proc.stdin is not None
        self._reader: IOBase = os.fdopen(self._proc.stdout.fileno(), "rb", closefd=False)
        self._writer: IOBase = cast(IOBase, self._proc.stdin)
        self._closed = False
        self._stderr_thread: threading.Thread | None = None
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SubprocessTransport spawned: pid=%d", self._proc.pid)

        if stderr == StderrMode.PIPE:
            assert self._proc.stderr is not None
            if stderr_logger is None:
                stderr_logger = logging.getLogger("apictl.subprocess.stderr")
            self._stderr_thread = threading.Thread(
                target=_drain_stderr,
                args=(self._proc.stderr, stderr_logger),
                daemon=True,
            )
            self._stderr_thread.start()

    @property
    def proc(self) -> subprocess.Popen[bytes]:
        """The underlying Popen process."""
        return self._proc

    @property
    def reader(self) -> IOBase:
        """Readable binary stream (child's stdout, buffered)."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream (child's stdin, unbuffered)."""
        return self._writer

    def close(self) -> None:
        """Close stdin (sends EOF), wait for exit, close stdout."""
        if self._closed:
            return
        self._closed = True
        if self._proc.stdin:
            with contextlib.suppress(BrokenPipeError):
                self._proc.stdin.close()
        try:
            self._proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            self._proc.kill()
            self._proc.wait()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=5)
        self._reader.close()
        if self._proc.stdout:
            self._proc.stdout.close()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "SubprocessTransport closed: pid=%d, exit_code=%s", self._proc.pid, self._proc.returncode
            )


# ---------------------------------------------------------------------------
# SocketTransport + dial
# ---------------------------------------------------------------------------


class _SocketWriter(io.RawIOBase):
    """Unbuffered writer that sends every chunk in full with ``sendall``."""

    def __init__(self, sock: socket.socket) -> None:
        super().__init__()
        self._sock = sock

    def writable(self) -> bool:
        return True

    def write(self, data: bytes | bytearray | memoryview) -> int:  # type: ignore[override]
        self._sock.sendall(data)
        return len(data)


class SocketTransport:
    """Transport over a connected stream socket.

    The reader is a buffered ``socket.makefile`` stream; the writer sends
    each chunk with ``sendall`` so partial sends cannot truncate an IPC
    message.
    """

    __slots__ = ("_closed", "_peer", "_reader", "_sock", "_writer")

    def __init__(self, sock: socket.socket) -> None:
        """Initialize with a connected socket; the transport owns it."""
        self._sock = sock
        self._reader: IOBase = cast(IOBase, sock.makefile("rb"))
        self._writer: IOBase = _SocketWriter(sock)
        self._closed = False
        try:
            self._peer = sock.getpeername()
        except OSError:
            self._peer = None

    @property
    def reader(self) -> IOBase:
        """Readable binary stream (buffered)."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream (unbuffered)."""
        return self._writer

    @property
    def peer(self) -> object:
        """Address of the remote end, or ``None`` if unknown."""
        return self._peer

    def close(self) -> None:
        """Shut down and close the socket."""
        if self._closed:
            return
        self._closed = True
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SocketTransport closing: peer=%s", self._peer)
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        self._reader.close()
        self._writer.close()
        self._sock.close()


def parse_address(address: str, *, allow_zero: bool = False) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6addr]:port``) into a host and port.

    An empty host means ``127.0.0.1``.  Port ``0`` (an ephemeral port when
    binding) is accepted only with *allow_zero*.

    Raises:
        ValueError: If the address has no port or the port is out of range.

    """
    if address.startswith("["):
        end = address.find("]")
        if end == -1 or address[end + 1 : end + 2] != ":":
            raise ValueError(f"invalid address {address!r}: expected [host]:port")
        host, port_str = address[1:end], address[end + 2 :]
    else:
        host, sep, port_str = address.rpartition(":")
        if not sep:
            raise ValueError(f"invalid address {address!r}: missing port")
        if ":" in host:
            raise ValueError(f"invalid address {address!r}: IPv6 hosts must be written as [host]:port")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid address {address!r}: port {port_str!r} is not a number") from None
    if not (0 if allow_zero else 1) <= port < 65536:
        raise ValueError(f"invalid address {address!r}: port {port} out of range")
    return host or "127.0.0.1", port


def dial(address: str = DEFAULT_ADDRESS, timeout: float | None = None) -> SocketTransport:
    """Open a TCP connection to an RPC server.

    Args:
        address: ``host:port`` of the server.
        timeout: Seconds to wait for the connection to be established;
            ``None`` blocks.  Calls made over the transport are not
            subject to this timeout.

    Raises:
        ValueError: If *address* is malformed.
        OSError: If the connection cannot be established.

    """
    host, port = parse_address(address)
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("dial: host=%s, port=%d, timeout=%s", host, port, timeout)
    sock = socket.create_connection((host, port), timeout=timeout)
    sock.settimeout(None)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    return SocketTransport(sock)


# ---------------------------------------------------------------------------
# Server entry points
# ---------------------------------------------------------------------------


def serve_stdio(server: RpcServer) -> None:
    """Serve RPC requests over stdin/stdout.

    This is the server-side entry point for subprocess mode.  Uses
    ``closefd=False`` so the original stdio descriptors are not closed on
    exit.  Emits a diagnostic warning to stderr when stdin or stdout is
    connected to a terminal, since the process expects binary Arrow IPC data.
    """
    if sys.stdin.isatty() or sys.stdout.isatty():
        sys.stderr.write(
            "WARNING: This process communicates via Arrow IPC on stdin/stdout "
            "and is not intended to be run interactively.\n"
            "It should be launched as a subprocess by an RPC client "
            "(e.g. apictl --cmd).\n"
        )
    reader = os.fdopen(sys.stdin.fileno(), "rb", closefd=False)
    writer = os.fdopen(sys.stdout.fileno(), "wb", buffering=0, closefd=False)
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("serve_stdio: server_id=%s, services=%s", server.server_id, server.service_names)
    server.serve(PipeTransport(reader, writer))


class _RpcRequestHandler(socketserver.BaseRequestHandler):
    """Serves every call on one accepted connection."""

    server: _ThreadingRpcServer

    def handle(self) -> None:
        transport = SocketTransport(self.request)
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("TCP connection accepted: peer=%s", transport.peer)
        try:
            self.server.rpc_server.serve(transport)
        finally:
            transport.close()


class _ThreadingRpcServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address: tuple[str, int], rpc_server: RpcServer) -> None:
        self.rpc_server = rpc_server
        super().__init__(address, _RpcRequestHandler)


def make_tcp_server(server: RpcServer, address: str = DEFAULT_ADDRESS) -> socketserver.ThreadingTCPServer:
    """Bind a threaded TCP server that serves *server* on every connection.

    Use port ``0`` to bind an ephemeral port; the bound address is
    ``result.server_address``.  The caller runs ``serve_forever()`` and
    eventually ``shutdown()`` and ``server_close()``.
    """
    host, port = parse_address(address, allow_zero=True)
    if ":" in host:
        tcp_server: socketserver.ThreadingTCPServer = type(
            "_ThreadingRpcServer6", (_ThreadingRpcServer,), {"address_family": socket.AF_INET6}
        )((host, port), server)
    else:
        tcp_server = _ThreadingRpcServer((host, port), server)
    _logger.info(
        "Listening on %s:%d",
        *tcp_server.server_address[:2],
        extra={"server_id": server.server_id, "services": list(server.service_names)},
    )
    return tcp_server


def serve_tcp(server: RpcServer, address: str = DEFAULT_ADDRESS) -> None:
    """Serve *server* over TCP until interrupted."""
    with make_tcp_server(server, address) as tcp_server:
        try:
            tcp_server.serve_forever()
        except KeyboardInterrupt:
            _logger.info("Interrupted, shutting down", extra={"server_id": server.server_id})
