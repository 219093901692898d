# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Service contract introspection and implementation validation."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import get_type_hints

from apictl.message import TypedMessage

# ---------------------------------------------------------------------------
# RpcMethodInfo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RpcMethodInfo:
    """Metadata for a single RPC method, derived from Protocol type hints.

    Produced by :func:`rpc_methods` when introspecting a Protocol class.

    Attributes:
        name: Method name as it appears on the Protocol.
        service: Name of the Protocol class that declares the method.
        request_type: ``TypedMessage`` subclass of the single request parameter.
        response_type: ``TypedMessage`` subclass the method returns.
        doc: The method's docstring from the Protocol class, or ``None`` if
            no docstring was provided.

    """

    name: str
    service: str
    request_type: type[TypedMessage]
    response_type: type[TypedMessage]
    doc: str | None

    @property
    def wire_name(self) -> str:
        """Method identifier carried in request metadata (``Service/method``)."""
        return f"{self.service}/{self.name}"


# ---------------------------------------------------------------------------
# Protocol introspection
# ---------------------------------------------------------------------------


def _is_message_type(hint: object) -> bool:
    return isinstance(hint, type) and issubclass(hint, TypedMessage)


def _describe_hint(hint: object) -> str:
    return getattr(hint, "__name__", repr(hint))


def _request_parameter(protocol: type, method_name: str, sig: inspect.Signature) -> str:
    """Return the name of the single request parameter of a contract method.

    Raises:
        TypeError: If the method does not take exactly one positional-or-keyword
            parameter besides ``self``.

    """
    params = [p for name, p in sig.parameters.items() if name != "self"]
    if len(params) != 1 or params[0].kind is not inspect.Parameter.POSITIONAL_OR_KEYWORD:
        raise TypeError(
            f"{protocol.__name__}.{method_name}() must take exactly one request parameter,"
            f" got ({', '.join(str(p) for p in params)})"
        )
    return params[0].name


@functools.lru_cache(maxsize=64)
def rpc_methods(protocol: type) -> Mapping[str, RpcMethodInfo]:
    """Introspect a Protocol class and return RpcMethodInfo for each method.

    Skips underscore-prefixed names and non-callable attributes.  Every
    remaining method must have the shape ``(self, request: Req) -> Resp``
    where ``Req`` and ``Resp`` are ``TypedMessage`` subclasses.

    Raises:
        TypeError: If a method's hints cannot be resolved or its signature
            does not have the unary request/response shape.

    """
    result: dict[str, RpcMethodInfo] = {}

    for name in dir(protocol):
        if name.startswith("_"):
            continue
        attr = getattr(protocol, name, None)
        if attr is None or not callable(attr):
            continue

        try:
            method_hints = get_type_hints(attr)
        except (NameError, AttributeError) as exc:
            raise TypeError(f"Failed to resolve type hints for {protocol.__name__}.{name}(): {exc}") from exc

        param_name = _request_parameter(protocol, name, inspect.signature(attr))
        request_type = method_hints.get(param_name)
        response_type = method_hints.get("return")
        if not _is_message_type(request_type):
            raise TypeError(
                f"{protocol.__name__}.{name}() request parameter '{param_name}' must be annotated"
                f" with a TypedMessage subclass, got {_describe_hint(request_type)}"
            )
        if not _is_message_type(response_type):
            raise TypeError(
                f"{protocol.__name__}.{name}() must return a TypedMessage subclass,"
                f" got {_describe_hint(response_type)}"
            )

        result[name] = RpcMethodInfo(
            name=name,
            service=protocol.__name__,
            request_type=request_type,
            response_type=response_type,
            doc=getattr(attr, "__doc__", None),
        )

    return MappingProxyType(result)


# ---------------------------------------------------------------------------
# Implementation validation
# ---------------------------------------------------------------------------


def _format_signature(info: RpcMethodInfo) -> str:
    """Format a protocol method signature for error messages."""
    return f"{info.name}(request: {info.request_type.__name__}) -> {info.response_type.__name__}"


def _validate_implementation(
    protocol: type,
    implementation: object,
    methods: Mapping[str, RpcMethodInfo],
) -> None:
    """Validate that *implementation* conforms to *protocol*.

    Checks that every method declared in the protocol exists on the
    implementation, is callable, and accepts a single positional request.

    Raises:
        TypeError: If one or more validation errors are found.  The
            message lists every problem so the developer can fix them
            all in one pass.

    """
    errors: list[str] = []

    for name, info in methods.items():
        method = getattr(implementation, name, None)

        if method is None:
            errors.append(f"missing method {_format_signature(info)}")
            continue

        if not callable(method):
            errors.append(f"'{name}' exists but is not callable")
            continue

        try:
            inspect.signature(method).bind(None)
        except TypeError:
            errors.append(f"'{name}()' cannot be called with a single request argument")

    if errors:
        impl_name = type(implementation).__name__
        header = f"{impl_name} does not implement {protocol.__name__}:"
        detail = "\n".join(f"  - {e}" for e in errors)
        raise TypeError(f"{header}\n{detail}")
