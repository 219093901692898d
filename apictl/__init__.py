# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Call management APIs of a running server from the command line."""

import logging

from apictl.dispatch import DEFAULT_REGISTRY, Registry, ServiceHandler, invoke, parse_service_method
from apictl.errors import (
    ApiError,
    DecodeError,
    EncodeError,
    ErrorKind,
    RemoteCallError,
    UnknownMethodError,
    UnknownServiceError,
)
from apictl.log import Level, Message
from apictl.message import ArrowType, TypedMessage
from apictl.rpc import RpcConnection, RpcError, RpcServer, RpcTransport, dial
from apictl.textformat import decode, encode

__all__ = [
    "DEFAULT_REGISTRY",
    "ApiError",
    "ArrowType",
    "DecodeError",
    "EncodeError",
    "ErrorKind",
    "Level",
    "Message",
    "Registry",
    "RemoteCallError",
    "RpcConnection",
    "RpcError",
    "RpcServer",
    "RpcTransport",
    "ServiceHandler",
    "TypedMessage",
    "UnknownMethodError",
    "UnknownServiceError",
    "decode",
    "dial",
    "encode",
    "invoke",
    "parse_service_method",
]

# Attach NullHandler to the root logger so library users don't get
# "No handlers could be found" warnings.
logging.getLogger("apictl").addHandler(logging.NullHandler())
