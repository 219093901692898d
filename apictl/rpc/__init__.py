# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Unary RPC over Arrow IPC, used as the connection behind ``apictl``.

Services are declared as Python Protocol classes whose methods each take a
single typed request message and return a typed response message::

    class StatsService(Protocol):
        def get_stats(self, request: GetStatsRequest) -> GetStatsResponse: ...

Wire Protocol
-------------
Multiple IPC streams are written/read sequentially on the same byte stream.
Each ``ipc.open_stream()`` reads one complete IPC stream (schema + batches +
EOS) and stops; the next picks up where the last left off::

    Client→Server: [IPC stream: request schema + 1 request batch + EOS]
    Server→Client: [IPC stream: response schema + 0..N log batches + 1 result/error batch + EOS]

The request batch carries ``apictl.method`` (``Service/method``) and
``apictl.request_version`` in its custom metadata.  Errors and log messages
are zero-row batches with ``apictl.log_level``, ``apictl.log_message`` and
``apictl.log_extra`` custom metadata:

- **EXCEPTION** level → error (client raises ``RpcError``)
- **Other levels** → log message (client invokes ``on_log``, by default
  re-logging on the ``apictl.remote`` logger)

Transports
----------
- ``PipeTransport`` / ``make_pipe_pair``: in-process pipes (tests, demos)
- ``SubprocessTransport``: a child process serving over stdin/stdout
- ``SocketTransport`` / ``dial``: TCP, served by ``serve_tcp``
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from typing import TypeVar

from apictl.log import Message
from apictl.rpc._client import RpcConnection, forward_remote_log
from apictl.rpc._common import PROTOCOL_ERROR, TRANSPORT_ERROR, RpcError, VersionError
from apictl.rpc._server import RpcServer, client_log
from apictl.rpc._transport import (
    DEFAULT_ADDRESS,
    PipeTransport,
    RpcTransport,
    SocketTransport,
    StderrMode,
    SubprocessTransport,
    dial,
    make_pipe_pair,
    make_tcp_server,
    parse_address,
    serve_stdio,
    serve_tcp,
)
from apictl.rpc._types import RpcMethodInfo, rpc_methods

__all__ = [
    "DEFAULT_ADDRESS",
    "PROTOCOL_ERROR",
    "PipeTransport",
    "RpcConnection",
    "RpcError",
    "RpcMethodInfo",
    "RpcServer",
    "RpcTransport",
    "SocketTransport",
    "StderrMode",
    "SubprocessTransport",
    "TRANSPORT_ERROR",
    "VersionError",
    "client_log",
    "connect",
    "dial",
    "forward_remote_log",
    "make_pipe_pair",
    "make_tcp_server",
    "parse_address",
    "rpc_methods",
    "run_server",
    "serve_pipe",
    "serve_stdio",
    "serve_tcp",
]


def run_server(services: RpcServer | Mapping[type, object]) -> None:
    """Serve RPC requests over stdin/stdout.

    This is the recommended entry point for subprocess workers.  Accepts
    either a mapping of Protocol classes to implementations or a pre-built
    ``RpcServer``.

    Raises:
        TypeError: If *services* is neither.

    """
    if isinstance(services, RpcServer):
        server = services
    elif isinstance(services, Mapping):
        server = RpcServer(services)
    else:
        raise TypeError(f"Expected an RpcServer or a mapping of services, got {type(services).__name__}")
    serve_stdio(server)


P = TypeVar("P")


@contextlib.contextmanager
def connect(
    protocol: type[P],
    cmd: list[str],
    *,
    on_log: Callable[[Message], None] | None = None,
    stderr: StderrMode = StderrMode.INHERIT,
    stderr_logger: logging.Logger | None = None,
) -> Iterator[P]:
    """Connect to a subprocess RPC server.

    Context manager that spawns a subprocess, yields a typed proxy, and
    cleans up on exit.

    Args:
        protocol: The Protocol class defining the RPC interface.
        cmd: Command to spawn the subprocess worker.
        on_log: Optional callback for log messages from the server.
        stderr: How to handle the child's stderr stream (see :class:`StderrMode`).
        stderr_logger: Logger for ``StderrMode.PIPE`` output; ignored for
            other modes.

    Yields:
        A typed RPC proxy supporting all methods defined on *protocol*.

    """
    transport = SubprocessTransport(cmd, stderr=stderr, stderr_logger=stderr_logger)
    with RpcConnection(protocol, transport, on_log=on_log) as proxy:
        yield proxy


@contextlib.contextmanager
def serve_pipe(services: Mapping[type, object]) -> Iterator[PipeTransport]:
    """Start an in-process pipe server and yield the client transport.

    Useful for tests and demos; no subprocess needed.  A background thread
    runs ``RpcServer.serve()`` on the server side of a pipe pair.

    Args:
        services: Mapping of Protocol classes to implementations.

    Yields:
        The client side of the pipe pair, ready for ``RpcConnection`` or
        ``apictl.dispatch.invoke``.

    """
    server = RpcServer(services)
    client_transport, server_transport = make_pipe_pair()
    thread = threading.Thread(target=server.serve, args=(server_transport,), daemon=True)
    thread.start()
    try:
        yield client_transport
    finally:
        client_transport.close()
        thread.join(timeout=5)
        server_transport.close()
