# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Routing of ``Service.Method`` identifiers to typed remote calls.

:func:`invoke` is the whole pipeline behind ``apictl api``::

    text = invoke(transport, "StatsService.GetStats", 'name: "uplink"')

1. :func:`parse_service_method` splits the identifier on its first ``.``.
2. The :class:`Registry` maps the service name, case-insensitively, to a
   :class:`ServiceHandler`.
3. The handler picks the method by its CamelCase or snake_case name in any
   case, decodes the request text into the method's request message, makes one
   call over the transport, and renders the response as text.

Every failure is raised as an :class:`~apictl.errors.ApiError` subclass and
nothing is retried.  The transport is used as given; it is never opened,
closed or reconfigured here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from types import MappingProxyType

from apictl import textformat
from apictl.errors import UnknownMethodError, UnknownServiceError
from apictl.log import Message
from apictl.rpc import RpcConnection, RpcMethodInfo, RpcTransport, rpc_methods
from apictl.services import LoggerService, StatsService

__all__ = [
    "DEFAULT_REGISTRY",
    "Registry",
    "ServiceHandler",
    "invoke",
    "parse_service_method",
]

_logger = logging.getLogger("apictl.dispatch")


def parse_service_method(identifier: str) -> tuple[str, str]:
    """Split *identifier* on its first ``.`` into ``(service, method)``.

    The method is ``""`` when there is no ``.``.  Case is preserved.
    """
    service, _, method = identifier.partition(".")
    return service, method


def _method_keys(name: str) -> tuple[str, str]:
    """Lookup keys for a contract method: its display name and its own name, case-folded."""
    return _display_name(name).lower(), name.lower()


def _display_name(method_name: str) -> str:
    """``get_sys_stats`` -> ``GetSysStats``."""
    return "".join(part[:1].upper() + part[1:] for part in method_name.split("_"))


class ServiceHandler:
    """Invokes the methods of one service contract from text requests.

    The method table is derived from the contract with
    :func:`~apictl.rpc.rpc_methods`; ``GetStats``, ``getstats`` and
    ``get_stats`` all select ``get_stats``; other spellings such as
    ``G_e_t_Stats`` do not.
    """

    __slots__ = ("_bindings", "_key", "_protocol")

    def __init__(self, protocol: type) -> None:
        """Initialize with a service Protocol class."""
        self._protocol = protocol
        self._key = protocol.__name__.lower()
        self._bindings = MappingProxyType(
            {key: info for name, info in rpc_methods(protocol).items() for key in _method_keys(name)}
        )

    @property
    def key(self) -> str:
        """Lowercased service name used for lookup."""
        return self._key

    @property
    def name(self) -> str:
        """Service name as declared (``StatsService``)."""
        return self._protocol.__name__

    @property
    def protocol(self) -> type:
        return self._protocol

    @property
    def method_names(self) -> tuple[str, ...]:
        """Display names of the supported methods, sorted."""
        return tuple(sorted({_display_name(info.name) for info in self._bindings.values()}))

    def binding(self, method: str) -> RpcMethodInfo | None:
        """Return the method selected by *method*, or ``None``."""
        return self._bindings.get(method.lower())

    def invoke(
        self,
        transport: RpcTransport,
        method: str,
        request_text: str,
        *,
        on_log: Callable[[Message], None] | None = None,
    ) -> str:
        """Call *method* with the request decoded from *request_text*.

        Log messages the server sends during the call go to *on_log*
        (default: re-logged on ``apictl.remote``).

        Returns:
            The response message in text format.

        Raises:
            UnknownMethodError: If the service has no such method; raised
                before the request text is looked at.
            DecodeError: If the request text does not fit the request type;
                no call is made.
            RpcError: If the call fails remotely or in transit.
            EncodeError: If the response cannot be rendered.

        """
        info = self.binding(method)
        if info is None:
            raise UnknownMethodError(self.name, method)
        request = textformat.decode(request_text, info.request_type)
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("Calling %s with %r", info.wire_name, request)
        with RpcConnection(self._protocol, transport, on_log, owns_transport=False) as client:
            response = getattr(client, info.name)(request)
        return textformat.encode(response)

    def __repr__(self) -> str:
        return f"ServiceHandler({self.name})"


class Registry:
    """Immutable, case-insensitive mapping of service names to handlers."""

    __slots__ = ("_handlers",)

    def __init__(self, handlers: Iterable[ServiceHandler]) -> None:
        """Build the registry.

        Raises:
            ValueError: If two handlers share a (case-folded) service name.

        """
        table: dict[str, ServiceHandler] = {}
        for handler in handlers:
            if handler.key in table:
                raise ValueError(f"Duplicate service {handler.name!r}")
            table[handler.key] = handler
        self._handlers = MappingProxyType(table)

    def lookup(self, name: str) -> ServiceHandler | None:
        """Return the handler for service *name* (any case), or ``None``."""
        return self._handlers.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._handlers

    def __iter__(self) -> Iterator[ServiceHandler]:
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)


DEFAULT_REGISTRY = Registry([ServiceHandler(LoggerService), ServiceHandler(StatsService)])


def invoke(
    transport: RpcTransport,
    identifier: str,
    request_text: str,
    *,
    registry: Registry = DEFAULT_REGISTRY,
    on_log: Callable[[Message], None] | None = None,
) -> str:
    """Invoke ``Service.Method`` over *transport* and return the response text.

    Raises:
        UnknownServiceError: If the service is not in *registry*; nothing is
            decoded or sent.
        ApiError: Whatever the selected :class:`ServiceHandler` raises,
            unchanged.

    """
    service, method = parse_service_method(identifier)
    handler = registry.lookup(service)
    if handler is None:
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("No handler for service %r (known: %s)", service, [h.name for h in registry])
        raise UnknownServiceError(service)
    if _logger.isEnabledFor(logging.DEBUG):
        _logger.debug("Routing %r to %s, method %r", identifier, handler.name, method)
    return handler.invoke(transport, method, request_text, on_log=on_log)
