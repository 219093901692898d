# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""RPC server dispatch."""

from __future__ import annotations

import contextlib
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from contextvars import ContextVar
from types import MappingProxyType
from typing import Literal

import pyarrow as pa
from pyarrow import ipc

from apictl.log import Level, Message
from apictl.message import TypedMessage
from apictl.rpc._common import (
    _EMPTY_SCHEMA,
    RpcError,
    VersionError,
    _access_logger,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from apictl.rpc._transport import RpcTransport
from apictl.rpc._types import RpcMethodInfo, _validate_implementation, rpc_methods
from apictl.rpc._wire import (
    _ClientLogSink,
    _read_request,
    _write_error_batch,
    _write_error_stream,
    _write_result_batch,
)

_current_client_log: ContextVar[Callable[[Message], None] | None] = ContextVar("apictl_client_log", default=None)


def client_log(level: Level, message: str, **extra: object) -> None:
    """Send a log message to the client of the call currently being served.

    The message travels as a zero-row log batch ahead of the response and
    is delivered to the client's ``on_log`` callback.

    Raises:
        RuntimeError: If called outside a method served by :class:`RpcServer`.

    """
    sink = _current_client_log.get()
    if sink is None:
        raise RuntimeError("client_log() called outside of an RPC method")
    sink(Message(level, message, **extra))


# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _log_method_error(info: RpcMethodInfo, server_id: str, exc: BaseException) -> str:
    """Log an RPC method error and return the exception class name."""
    error_type = type(exc).__name__
    extra: dict[str, object] = {
        "server_id": server_id,
        "service": info.service,
        "method": info.name,
        "error_type": error_type,
    }
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _logger.error("Error in %s.%s: %s", info.service, info.name, exc, exc_info=True, extra=extra)
    return error_type


def _emit_access_log(
    info: RpcMethodInfo,
    server_id: str,
    duration_ms: float,
    status: Literal["ok", "error"],
    error_type: str = "",
) -> None:
    """Emit a structured access log record for a completed RPC call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    extra: dict[str, object] = {
        "server_id": server_id,
        "service": info.service,
        "method": info.name,
        "duration_ms": round(duration_ms, 2),
        "status": status,
        "error_type": error_type,
    }
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _access_logger.info("%s.%s %s", info.service, info.name, status, extra=extra)


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer:
    """Dispatches RPC requests for one or more services over IO-stream transports.

    Each service is a Protocol contract paired with its implementation;
    requests select a method by its ``Service/method`` wire name.
    """

    __slots__ = ("_methods", "_server_id", "_services")

    def __init__(self, services: Mapping[type, object], *, server_id: str | None = None) -> None:
        """Initialize with a mapping of Protocol contracts to implementations.

        Args:
            services: Mapping of Protocol class to the object implementing it.
            server_id: Optional server identifier; auto-generated if ``None``.

        Raises:
            TypeError: If an implementation does not conform to its contract
                or two contracts share a name.
            ValueError: If *services* is empty.

        """
        if not services:
            raise ValueError("RpcServer needs at least one service")
        methods: dict[str, tuple[RpcMethodInfo, object]] = {}
        names: dict[str, type] = {}
        for protocol, implementation in services.items():
            if protocol.__name__ in names:
                raise TypeError(f"Duplicate service name {protocol.__name__!r}")
            names[protocol.__name__] = protocol
            infos = rpc_methods(protocol)
            _validate_implementation(protocol, implementation, infos)
            for info in infos.values():
                methods[info.wire_name] = (info, implementation)
        self._services = MappingProxyType(dict(services))
        self._methods = MappingProxyType(methods)
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]

        _logger.info(
            "RpcServer created for %s (server_id=%s, methods=%d)",
            ", ".join(names),
            self._server_id,
            len(self._methods),
            extra={"server_id": self._server_id, "services": list(names), "method_count": len(self._methods)},
        )

    @property
    def methods(self) -> Mapping[str, RpcMethodInfo]:
        """Return method metadata keyed by wire name."""
        return MappingProxyType({name: info for name, (info, _) in self._methods.items()})

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def service_names(self) -> tuple[str, ...]:
        """Names of the Protocol classes this server implements."""
        return tuple(protocol.__name__ for protocol in self._services)

    def serve(self, transport: RpcTransport) -> None:
        """Serve RPC requests in a loop until the transport is closed."""
        while True:
            try:
                self.serve_one(transport)
            except (EOFError, StopIteration):
                break
            except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError):
                _logger.debug("serve loop ending: client disconnected", extra={"server_id": self._server_id})
                break
            except pa.ArrowInvalid:
                _logger.warning(
                    "serve loop ending due to ArrowInvalid",
                    exc_info=True,
                    extra={"server_id": self._server_id},
                )
                break

    def serve_one(self, transport: RpcTransport) -> None:
        """Handle a single RPC call over the given transport.

        Protocol-level errors (``VersionError``, ``RpcError`` from missing
        metadata, unknown methods, undecodable requests) are written back as
        error responses, and the method returns normally so the serve loop
        can continue.

        Raises:
            EOFError: If the client closed the transport between calls.
            pa.ArrowInvalid: If the incoming data is not valid Arrow IPC.
                An error response is written to *transport* before raising so
                the client can read a structured ``RpcError``.

        """
        token = _current_request_id.set(_generate_request_id())
        try:
            try:
                wire_name, batch = _read_request(transport.reader)
            except pa.ArrowInvalid as exc:
                with contextlib.suppress(BrokenPipeError, OSError):
                    _write_error_stream(transport.writer, _EMPTY_SCHEMA, exc, server_id=self._server_id)
                raise
            except (VersionError, RpcError) as exc:
                with contextlib.suppress(BrokenPipeError, OSError):
                    _write_error_stream(transport.writer, _EMPTY_SCHEMA, exc, server_id=self._server_id)
                return

            entry = self._methods.get(wire_name)
            if entry is None:
                available = sorted(self._methods)
                _write_error_stream(
                    transport.writer,
                    _EMPTY_SCHEMA,
                    AttributeError(f"Unknown method: '{wire_name}'. Available methods: {available}"),
                    server_id=self._server_id,
                )
                return
            info, implementation = entry

            try:
                request = info.request_type.from_batch(batch)
            except (TypeError, ValueError, KeyError, pa.ArrowException) as exc:
                _write_error_stream(
                    transport.writer, info.response_type.arrow_schema(), exc, server_id=self._server_id
                )
                return

            self._serve_unary(transport, info, implementation, request)
        finally:
            _current_request_id.reset(token)

    def _serve_unary(
        self,
        transport: RpcTransport,
        info: RpcMethodInfo,
        implementation: object,
        request: TypedMessage,
    ) -> None:
        schema = info.response_type.arrow_schema()
        sink = _ClientLogSink(server_id=self._server_id)
        sink_token = _current_client_log.set(sink)
        start = time.monotonic()
        status: Literal["ok", "error"] = "ok"
        error_type = ""
        try:
            with ipc.new_stream(transport.writer, schema) as writer:
                sink.flush_contents(writer, schema)
                try:
                    result = getattr(implementation, info.name)(request)
                    if not isinstance(result, info.response_type):
                        raise TypeError(
                            f"{info.service}.{info.name}() returned {type(result).__name__},"
                            f" expected {info.response_type.__name__}"
                        )
                except Exception as exc:
                    status = "error"
                    error_type = _log_method_error(info, self._server_id, exc)
                    _write_error_batch(writer, schema, exc, server_id=self._server_id)
                    return
                _write_result_batch(writer, result)
        finally:
            _current_client_log.reset(sink_token)
            _emit_access_log(info, self._server_id, (time.monotonic() - start) * 1000, status, error_type)
