# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON formatter behind ``apictl --log-format json``.

:class:`ApiJsonFormatter` writes each record as one JSON object with a fixed
layout so lines from ``apictl.access`` and ``apictl.remote`` can be compared
and filtered by key position as well as by name:

1. ``timestamp``, ``level``, ``logger``, ``message``;
2. the call fields, in :data:`CALL_FIELDS` order, when present;
3. ``remote``: the ``remote_*`` extras of a forwarded server log, prefix
   removed, in the order the server sent them;
4. any other ``extra`` fields, sorted by name;
5. ``exception`` and ``stack_info``.

This module is **not** auto-imported by ``apictl``; import it explicitly::

    from apictl.logging_utils import ApiJsonFormatter
"""

from __future__ import annotations

import json
import logging

__all__ = ["CALL_FIELDS", "ApiJsonFormatter"]

# Anything not in this set was injected via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset(
    {"timestamp", "level", "logger", "message", "remote", "exception", "stack_info"}
)

CALL_FIELDS: tuple[str, ...] = (
    "server_id",
    "request_id",
    "service",
    "method",
    "status",
    "duration_ms",
    "error_type",
)
"""Extras describing one call, written right after ``message``."""

_REMOTE_PREFIX = "remote_"


class ApiJsonFormatter(logging.Formatter):
    """Single-line JSON formatter for ``apictl`` log records.

    Standard fields cannot be overwritten by extras of the same name.
    Non-serializable values are coerced to strings.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        extras = {
            k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS
        }
        for key in CALL_FIELDS:
            if key in extras:
                obj[key] = extras.pop(key)
        remote = {k[len(_REMOTE_PREFIX) :]: extras.pop(k) for k in list(extras) if k.startswith(_REMOTE_PREFIX)}
        if remote:
            obj["remote"] = remote
        for key in sorted(extras):
            obj[key] = extras[key]
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)
