# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire tracing for ``apictl`` calls.

Three loggers under ``apictl.wire`` trace what crosses a transport; enable
them with ``apictl --log-level DEBUG --log-logger apictl.wire.request`` (or
``.response`` / ``.transport``).  The ``fmt_*`` helpers render IPC objects
in the vocabulary of this tool: metadata keys without their ``apictl.``
prefix, log batches by level and text, and messages in the same text format
``apictl api`` prints.  They only build strings and are meant to be called
behind ``isEnabledFor(logging.DEBUG)``.
"""

from __future__ import annotations

import logging

import pyarrow as pa

from apictl.errors import EncodeError
from apictl.message import TypedMessage
from apictl.metadata import LOG_LEVEL_KEY, LOG_MESSAGE_KEY
from apictl.textformat import encode

wire_request_logger = logging.getLogger("apictl.wire.request")
wire_response_logger = logging.getLogger("apictl.wire.response")
wire_transport_logger = logging.getLogger("apictl.wire.transport")

_MAX_VALUE_LEN = 80
_KEY_PREFIX = "apictl."


def _clip(text: str) -> str:
    return text if len(text) <= _MAX_VALUE_LEN else text[:_MAX_VALUE_LEN] + "..."


def _text(value: bytes | str) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value


def fmt_schema(schema: pa.Schema) -> str:
    """``(name: string, reset: bool)``, or ``()`` for messages without fields."""
    return "(" + ", ".join(f"{f.name}: {f.type}" for f in schema) + ")"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Render custom metadata as ``{method='StatsService/get_stats', request_version='1'}``.

    Keys in the ``apictl.`` namespace lose the prefix; other keys are shown
    in full.  Long values are clipped.
    """
    if metadata is None:
        return "{}"
    parts: list[str] = []
    for k, v in metadata.items():
        key = _text(k).removeprefix(_KEY_PREFIX)
        parts.append(f"{key}={_clip(_text(v))!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_batch(batch: pa.RecordBatch, metadata: pa.KeyValueMetadata | None = None) -> str:
    """Summarize a batch.

    A zero-row batch carrying a server log message renders as
    ``Log(WARN: 'disk almost full')``; anything else as
    ``Batch(rows=1, schema=(name: string, reset: bool), bytes=24)``.
    """
    if batch.num_rows == 0 and metadata is not None:
        level = metadata.get(LOG_LEVEL_KEY)
        if level is not None:
            text = _clip(_text(metadata.get(LOG_MESSAGE_KEY) or b""))
            return f"Log({_text(level)}: {text!r})"
    return f"Batch(rows={batch.num_rows}, schema={fmt_schema(batch.schema)}, bytes={batch.nbytes})"


def fmt_value(value: object) -> str:
    """Render a message as ``GetStatsRequest{name: "uplink" reset: true}``.

    Values that are not messages, or that cannot be encoded, fall back to
    ``repr``.
    """
    if isinstance(value, TypedMessage):
        try:
            body = " ".join(line.strip() for line in encode(value).splitlines())
        except EncodeError:
            return _clip(repr(value))
        return _clip(f"{type(value).__name__}{{{body}}}")
    return _clip(repr(value))
