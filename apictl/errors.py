# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for API calls.

Every failure an ``apictl`` call can produce is an :class:`ApiError`
subclass carrying an :class:`ErrorKind`, so callers can branch on the kind
of failure instead of parsing message text::

    try:
        text = invoke(transport, "StatsService.GetStats", 'name: "up"')
    except ApiError as e:
        if e.kind is ErrorKind.UNKNOWN_SERVICE:
            ...

KEY CLASSES
-----------
ErrorKind : Enum of the five failure kinds
ApiError : Base class for all call failures
UnknownServiceError : Service name not in the dispatch registry
UnknownMethodError : Service known, method not supported
DecodeError : Request text does not conform to the request message type
EncodeError : Response message could not be rendered as text
RemoteCallError : Transport or remote-application failure (see ``apictl.rpc.RpcError``)

"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

__all__ = [
    "ApiError",
    "DecodeError",
    "EncodeError",
    "ErrorKind",
    "RemoteCallError",
    "UnknownMethodError",
    "UnknownServiceError",
]


class ErrorKind(Enum):
    """Classification of API call failures."""

    UNKNOWN_SERVICE = "unknown_service"
    UNKNOWN_METHOD = "unknown_method"
    DECODE = "decode"
    REMOTE_CALL = "remote_call"
    ENCODE = "encode"


class ApiError(Exception):
    """Base class for every failure surfaced by an API call."""

    kind: ClassVar[ErrorKind]


class UnknownServiceError(ApiError):
    """Raised when no handler is registered for the requested service."""

    kind = ErrorKind.UNKNOWN_SERVICE

    def __init__(self, service: str) -> None:
        """Initialize with the service name exactly as it was requested."""
        self.service = service
        super().__init__(f"Unknown service: {service}")


class UnknownMethodError(ApiError):
    """Raised when a known service does not support the requested method."""

    kind = ErrorKind.UNKNOWN_METHOD

    def __init__(self, service: str, method: str) -> None:
        """Initialize with the service name and the offending method string."""
        self.service = service
        self.method = method
        super().__init__(f"Unknown method: {method}")


class DecodeError(ApiError):
    """Raised when request text cannot be decoded into the target message type.

    Attributes:
        reason: Description of the problem without position information.
        line: 1-based line of the offending token (0 when not applicable).
        column: 1-based column of the offending token (0 when not applicable).
        message_type: Name of the message type being decoded.

    """

    kind = ErrorKind.DECODE

    def __init__(self, reason: str, *, line: int = 0, column: int = 0, message_type: str = "") -> None:
        """Initialize with a reason and the position where decoding failed."""
        self.reason = reason
        self.line = line
        self.column = column
        self.message_type = message_type
        if line:
            super().__init__(f"line {line}:{column}: {reason}")
        else:
            super().__init__(reason)


class EncodeError(ApiError):
    """Raised when a message cannot be rendered as text."""

    kind = ErrorKind.ENCODE

    def __init__(self, reason: str, *, message_type: str = "", field: str = "") -> None:
        """Initialize with a reason and the message type and field being encoded."""
        self.reason = reason
        self.message_type = message_type
        self.field = field
        where = f"{message_type}.{field}" if field else message_type
        super().__init__(f"{where}: {reason}" if where else reason)


class RemoteCallError(ApiError):
    """Raised when the remote call itself fails.

    Concrete failures are raised by the RPC client as
    :class:`apictl.rpc.RpcError`, which subclasses this class; callers can
    catch either.
    """

    kind = ErrorKind.REMOTE_CALL
