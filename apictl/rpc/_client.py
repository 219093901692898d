# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client proxy and connection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType
from typing import Any, Generic, TypeVar, cast

from apictl.log import Message
from apictl.message import TypedMessage
from apictl.rpc._common import _TRANSPORT_ERRORS, RpcError
from apictl.rpc._debug import wire_request_logger, wire_transport_logger
from apictl.rpc._transport import RpcTransport
from apictl.rpc._types import RpcMethodInfo, rpc_methods
from apictl.rpc._wire import _read_response, _write_request

_remote_logger = logging.getLogger("apictl.remote")


def forward_remote_log(msg: Message) -> None:
    """Default ``on_log`` callback: re-log a server message on ``apictl.remote``.

    Extra fields sent by the server are attached to the record with a
    ``remote_`` prefix.
    """
    extra = {f"remote_{k}": v for k, v in (msg.extra or {}).items()}
    _remote_logger.log(msg.level.logging_level, msg.message, extra=extra)


class _RpcProxy:
    """Dynamic proxy that implements RPC method calls through a transport.

    Not thread-safe: each proxy serialises calls over a single transport.
    """

    def __init__(
        self,
        protocol: type,
        transport: RpcTransport,
        on_log: Callable[[Message], None] | None = None,
    ) -> None:
        self._protocol = protocol
        self._transport = transport
        self._methods = rpc_methods(protocol)
        self._on_log = on_log if on_log is not None else forward_remote_log

    def __getattr__(self, name: str) -> Any:
        info = self._methods.get(name)
        if info is None:
            raise AttributeError(f"{self._protocol.__name__} has no RPC method '{name}'")
        caller = self._make_unary_caller(info)
        self.__dict__[name] = caller
        return caller

    def _make_unary_caller(self, info: RpcMethodInfo) -> Callable[[TypedMessage], TypedMessage]:
        transport = self._transport
        on_log = self._on_log

        def caller(request: TypedMessage) -> TypedMessage:
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("Unary call: method=%s", info.wire_name)
            try:
                _write_request(transport.writer, info, request)
                return _read_response(transport.reader, info, on_log)
            except RpcError:
                raise
            except _TRANSPORT_ERRORS as exc:
                raise RpcError.transport(info.wire_name, exc) from exc

        caller.__name__ = info.name
        caller.__doc__ = info.doc
        return caller


# ---------------------------------------------------------------------------
# RpcConnection — typed context manager
# ---------------------------------------------------------------------------


P = TypeVar("P")


class RpcConnection(Generic[P]):
    """Context manager that provides a typed RPC proxy over a transport.

    The type parameter ``P`` is the Protocol class, enabling IDE
    autocompletion for all methods defined on the protocol::

        with RpcConnection(StatsService, transport) as svc:
            resp = svc.get_stats(GetStatsRequest(name="uplink"))

    The transport is closed on exit unless ``owns_transport=False``.
    """

    __slots__ = ("_on_log", "_owns_transport", "_protocol", "_transport")

    def __init__(
        self,
        protocol: type[P],
        transport: RpcTransport,
        on_log: Callable[[Message], None] | None = None,
        *,
        owns_transport: bool = True,
    ) -> None:
        """Initialize with a protocol type and transport.

        Args:
            protocol: The Protocol class defining the RPC interface.
            transport: Connected transport to the server.
            on_log: Callback for non-exception log messages from the server;
                defaults to :func:`forward_remote_log`.
            owns_transport: Close *transport* when the context exits.

        """
        self._protocol = protocol
        self._transport = transport
        self._on_log = on_log
        self._owns_transport = owns_transport

    def __enter__(self) -> P:
        """Enter the context and return a typed proxy."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("RpcConnection open: protocol=%s", self._protocol.__name__)
        return cast(P, _RpcProxy(self._protocol, self._transport, self._on_log))

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the transport if this connection owns it."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("RpcConnection close: protocol=%s", self._protocol.__name__)
        if self._owns_transport:
            self._transport.close()
