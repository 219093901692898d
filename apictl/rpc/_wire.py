# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire protocol read/write helpers.

A call is two Arrow IPC streams.  The client writes the request message as
a one-batch stream tagged with ``apictl.method`` and
``apictl.request_version``; the server answers with a stream that holds
zero or more zero-row log batches followed by either the response message
batch or a zero-row ``EXCEPTION`` batch.
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Callable
from io import IOBase
from typing import TypeVar

import pyarrow as pa
from pyarrow import ipc

from apictl.log import Level, Message
from apictl.message import TypedMessage
from apictl.metadata import (
    LOG_EXTRA_KEY,
    LOG_LEVEL_KEY,
    LOG_MESSAGE_KEY,
    REQUEST_ID_KEY,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    SERVER_ID_KEY,
    encode_metadata,
)
from apictl.rpc._common import RpcError, VersionError, _current_request_id
from apictl.rpc._debug import (
    fmt_batch,
    fmt_metadata,
    fmt_value,
    wire_request_logger,
    wire_response_logger,
)
from apictl.rpc._types import RpcMethodInfo

# ---------------------------------------------------------------------------
# IPC stream helpers
# ---------------------------------------------------------------------------


def _at_eof(reader_stream: IOBase) -> bool:
    """Return whether a buffered reader has no more data (peer closed cleanly)."""
    peek = getattr(reader_stream, "peek", None)
    if peek is None:
        return False
    return not peek(1)


def _drain_stream(reader: ipc.RecordBatchStreamReader) -> None:
    """Consume remaining batches so the IPC EOS marker is read."""
    while True:
        try:
            reader.read_next_batch()
        except StopIteration:
            return


def _empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return a zero-row batch with *schema*."""
    return pa.RecordBatch.from_pylist([], schema=schema)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def _write_request(writer_stream: IOBase, info: RpcMethodInfo, request: TypedMessage) -> None:
    """Write a request as a complete IPC stream (schema + 1 batch + EOS).

    Raises:
        TypeError: If *request* is not an instance of the method's request type.

    """
    if not isinstance(request, info.request_type):
        raise TypeError(
            f"{info.wire_name} expects {info.request_type.__name__}, got {type(request).__name__}"
        )
    batch = request.to_batch()
    custom_metadata = pa.KeyValueMetadata(
        {RPC_METHOD_KEY: info.wire_name.encode(), REQUEST_VERSION_KEY: REQUEST_VERSION}
    )
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Write request: method=%s, request=%s, metadata=%s",
            info.wire_name,
            fmt_value(request),
            fmt_metadata(custom_metadata),
        )
    with ipc.new_stream(writer_stream, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)


def _read_request(reader_stream: IOBase) -> tuple[str, pa.RecordBatch]:
    """Read a request IPC stream, return (wire method name, request batch).

    Raises:
        EOFError: If the peer closed the transport before a new request.
        RpcError: If ``apictl.method`` is missing from the batch metadata.
        VersionError: If ``apictl.request_version`` is missing or does not
            match ``REQUEST_VERSION``.

    """
    if _at_eof(reader_stream):
        raise EOFError("transport closed")
    reader = ipc.open_stream(reader_stream)
    batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    _drain_stream(reader)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Read request batch: %s, metadata=%s",
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    method_name_bytes = custom_metadata.get(RPC_METHOD_KEY) if custom_metadata else None
    if method_name_bytes is None:
        raise RpcError.protocol(
            "Missing 'apictl.method' in request batch custom_metadata. "
            "Each request batch must carry the '<Service>/<method>' name under 'apictl.method'."
        )
    version_bytes = custom_metadata.get(REQUEST_VERSION_KEY) if custom_metadata else None
    if version_bytes is None:
        raise VersionError(
            "Missing 'apictl.request_version' in request batch custom_metadata. "
            f"Set the 'apictl.request_version' custom_metadata value to {REQUEST_VERSION!r}."
        )
    if version_bytes != REQUEST_VERSION:
        raise VersionError(f"Unsupported request version {version_bytes!r}, expected {REQUEST_VERSION!r}.")
    return method_name_bytes.decode(), batch


# ---------------------------------------------------------------------------
# Responses (server side)
# ---------------------------------------------------------------------------


def _write_message_batch(
    writer: ipc.RecordBatchStreamWriter,
    schema: pa.Schema,
    msg: Message,
    server_id: str | None = None,
) -> None:
    """Write a zero-row batch with Message metadata on an existing IPC stream writer."""
    md = msg.add_to_metadata()
    if server_id is not None:
        md[SERVER_ID_KEY.decode()] = server_id
    request_id = _current_request_id.get()
    if request_id:
        md[REQUEST_ID_KEY.decode()] = request_id
    writer.write_batch(_empty_batch(schema), custom_metadata=encode_metadata(md))


def _write_error_batch(
    writer: ipc.RecordBatchStreamWriter,
    schema: pa.Schema,
    exc: BaseException,
    server_id: str | None = None,
) -> None:
    """Write error as zero-row batch (convenience wrapper)."""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write error batch: %s: %s", type(exc).__name__, str(exc)[:200])
    _write_message_batch(writer, schema, Message.from_exception(exc), server_id=server_id)


def _write_error_stream(
    writer_stream: IOBase, schema: pa.Schema, exc: BaseException, server_id: str | None = None
) -> None:
    """Write a complete IPC stream containing just an error batch."""
    with ipc.new_stream(writer_stream, schema) as writer:
        _write_error_batch(writer, schema, exc, server_id=server_id)


def _write_result_batch(writer: ipc.RecordBatchStreamWriter, response: TypedMessage) -> None:
    """Write the response message batch to an already-open IPC stream writer."""
    batch = response.to_batch()
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write result batch: %s", fmt_batch(batch))
    writer.write_batch(batch)


class _ClientLogSink:
    """Buffers client-directed log messages until an IPC writer is available, then writes directly."""

    __slots__ = ("_buffer", "_schema", "_server_id", "_writer")

    def __init__(self, server_id: str | None = None) -> None:
        self._buffer: list[Message] = []
        self._writer: ipc.RecordBatchStreamWriter | None = None
        self._schema: pa.Schema | None = None
        self._server_id = server_id

    def __call__(self, msg: Message) -> None:
        if self._writer is not None and self._schema is not None:
            _write_message_batch(self._writer, self._schema, msg, server_id=self._server_id)
        else:
            self._buffer.append(msg)

    def flush_contents(self, writer: ipc.RecordBatchStreamWriter, schema: pa.Schema) -> None:
        """Flush buffered messages and switch to direct writing."""
        self._writer = writer
        self._schema = schema
        for msg in self._buffer:
            _write_message_batch(writer, schema, msg, server_id=self._server_id)
        self._buffer.clear()


# ---------------------------------------------------------------------------
# Responses (client side)
# ---------------------------------------------------------------------------


def _dispatch_log_or_error(
    batch: pa.RecordBatch,
    custom_metadata: pa.KeyValueMetadata | None,
    on_log: Callable[[Message], None] | None = None,
) -> bool:
    """Dispatch a zero-row log/error batch; return whether the batch was consumed.

    - Data batches (num_rows > 0 or no log metadata) → return ``False``
    - EXCEPTION level → **raise** ``RpcError``
    - Other log levels → invoke *on_log* callback, return ``True``

    Callers should loop, skipping consumed batches until a data batch is found.
    """
    if custom_metadata is None or batch.num_rows != 0:
        return False
    level_bytes = custom_metadata.get(LOG_LEVEL_KEY)
    message_bytes = custom_metadata.get(LOG_MESSAGE_KEY)
    if level_bytes is None or message_bytes is None:
        return False

    level_str = level_bytes.decode()
    message_str = message_bytes.decode()

    raw_extra_data: dict[str, object] = {}
    raw_extra = custom_metadata.get(LOG_EXTRA_KEY)
    if raw_extra is not None:
        with contextlib.suppress(json.JSONDecodeError):
            raw_extra_data = json.loads(raw_extra.decode())

    request_id_bytes = custom_metadata.get(REQUEST_ID_KEY)
    request_id = request_id_bytes.decode() if request_id_bytes is not None else ""

    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Classify batch: zero-row -> %s: %s", level_str, message_str[:200])

    if level_str == Level.EXCEPTION.value:
        error_type = str(raw_extra_data.get("exception_type", level_str))
        traceback_str = str(raw_extra_data.get("traceback", ""))
        raise RpcError(error_type, message_str, traceback_str, request_id=request_id)

    extra: dict[str, str] = {k: str(v) for k, v in raw_extra_data.items()}
    server_id_bytes = custom_metadata.get(SERVER_ID_KEY)
    if server_id_bytes is not None:
        extra["server_id"] = server_id_bytes.decode()
    if request_id:
        extra["request_id"] = request_id
    try:
        level = Level(level_str)
    except ValueError:
        level = Level.INFO
    if on_log is not None:
        on_log(Message(level, message_str, **extra))
    return True


R = TypeVar("R", bound=TypedMessage)


def _read_response(
    reader_stream: IOBase,
    info: RpcMethodInfo,
    on_log: Callable[[Message], None] | None,
) -> R:
    """Read a unary response: skip logs, decode the response message.

    Raises:
        RpcError: If the server sent an EXCEPTION batch, or the stream ended
            or carried a batch that does not match the response type.

    """
    reader = ipc.open_stream(reader_stream)
    try:
        while True:
            try:
                batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
            except StopIteration:
                raise RpcError.protocol(f"Response stream for {info.wire_name} ended without a result") from None
            if wire_response_logger.isEnabledFor(logging.DEBUG):
                wire_response_logger.debug(
                    "Read batch: %s, metadata=%s",
                    fmt_batch(batch, custom_metadata),
                    fmt_metadata(custom_metadata),
                )
            if not _dispatch_log_or_error(batch, custom_metadata, on_log):
                break
    finally:
        _drain_stream(reader)
    try:
        response = info.response_type.from_batch(batch)
    except (KeyError, TypeError, ValueError, pa.ArrowException) as exc:
        raise RpcError.protocol(f"Cannot decode {info.response_type.__name__} for {info.wire_name}: {exc}") from exc
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Read response: method=%s, response=%s", info.wire_name, fmt_value(response))
    return response  # type: ignore[return-value]
