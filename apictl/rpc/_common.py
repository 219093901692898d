# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Loggers, request ids and the client-side error type of the RPC layer."""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar

import pyarrow as pa

from apictl.errors import RemoteCallError

_EMPTY_SCHEMA = pa.schema([])
_logger = logging.getLogger("apictl.rpc")
_access_logger = logging.getLogger("apictl.access")

TRANSPORT_ERROR = "TransportError"
"""``error_type`` of calls whose connection broke or returned truncated data."""

PROTOCOL_ERROR = "ProtocolError"
"""``error_type`` of calls whose peer sent well-formed IPC that is not a valid call or reply."""

# Raised by a peer that hung up or by IPC data cut short.  ``OSError`` as a
# whole is not listed so local faults such as ``PermissionError`` surface as
# themselves.
_TRANSPORT_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, EOFError, pa.ArrowInvalid)


def _generate_request_id() -> str:
    """16 hex characters identifying one served call in logs and replies."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("apictl_request_id", default="")


class RpcError(RemoteCallError):
    """A call that failed on the server, in transit, or in the reply.

    ``error_type`` is the server-side exception class name (``ValueError``),
    or :data:`TRANSPORT_ERROR` / :data:`PROTOCOL_ERROR` for failures the
    client detects itself.  ``str(err)`` is ``"<error_type>: <error_message>"``.
    """

    def __init__(self, error_type: str, error_message: str, remote_traceback: str, *, request_id: str = "") -> None:
        """Initialize with error details from the remote side."""
        self.error_type = error_type
        self.error_message = error_message
        self.remote_traceback = remote_traceback
        self.request_id = request_id
        super().__init__(f"{error_type}: {error_message}")

    @classmethod
    def transport(cls, wire_name: str, exc: BaseException) -> RpcError:
        """Wrap a connection failure seen while calling *wire_name*."""
        return cls(TRANSPORT_ERROR, f"Transport failed during call to '{wire_name}': {exc}", "")

    @classmethod
    def protocol(cls, message: str) -> RpcError:
        """A malformed request or reply."""
        return cls(PROTOCOL_ERROR, message, "")

    @property
    def from_server(self) -> bool:
        """True when the error was raised by the service implementation."""
        return self.error_type not in (TRANSPORT_ERROR, PROTOCOL_ERROR)


class VersionError(Exception):
    """Raised when a request has a missing or incompatible ``apictl.request_version``."""
