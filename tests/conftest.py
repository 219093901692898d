# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for apictl tests."""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from apictl.rpc import PipeTransport, RpcServer, SubprocessTransport, make_tcp_server, serve_pipe

from .service_fixtures import fixture_services

_SERVE_FIXTURE = str(Path(__file__).parent / "serve_fixture_pipe.py")


def _worker_cmd() -> list[str]:
    """Return the command to launch the fixture RPC worker subprocess."""
    return [sys.executable, _SERVE_FIXTURE]


@pytest.fixture
def services() -> dict[type, object]:
    """Fresh fixture implementations keyed by contract."""
    return fixture_services()


@pytest.fixture
def pipe_transport(services: dict[type, object]) -> Iterator[PipeTransport]:
    """Client side of an in-process pipe server hosting the fixture services."""
    with serve_pipe(services) as transport:
        yield transport


@pytest.fixture(scope="session")
def subprocess_worker() -> Iterator[SubprocessTransport]:
    """Spawn a single subprocess worker for the entire test session."""
    transport = SubprocessTransport(_worker_cmd())
    yield transport
    transport.close()


@pytest.fixture(scope="session")
def tcp_address() -> Iterator[str]:
    """Start a threaded TCP server on an ephemeral port; yield its ``host:port``."""
    tcp_server = make_tcp_server(RpcServer(fixture_services()), "127.0.0.1:0")
    thread = threading.Thread(target=tcp_server.serve_forever, daemon=True)
    thread.start()
    host, port = tcp_server.server_address[:2]
    try:
        yield f"{host}:{port}"
    finally:
        tcp_server.shutdown()
        tcp_server.server_close()
        thread.join(timeout=5)
