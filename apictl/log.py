# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Log records transmitted from the server to the client.

A server answers a call with either a response batch or a zero-row batch
whose custom metadata carries a :class:`Message`.  ``EXCEPTION`` messages
terminate the call (the client raises ``RpcError``); every other level is a
diagnostic that the client forwards to the ``apictl.remote`` logger.

EXCEPTION HANDLING
------------------
Servers capture a failing method with :meth:`Message.from_exception`, which
records the exception type and a bounded traceback::

    try:
        result = method(request)
    except Exception as e:
        write_error(Message.from_exception(e))

"""

from __future__ import annotations

import json
import logging
import traceback
from enum import Enum
from typing import ClassVar

from apictl.metadata import LOG_EXTRA_KEY, LOG_LEVEL_KEY, LOG_MESSAGE_KEY

__all__ = [
    "Level",
    "Message",
]


class Level(Enum):
    """Severity levels for server-sent log messages, most severe first.

    Attributes:
        EXCEPTION: Unrecoverable error that terminated the call.
        ERROR: Significant error that did not terminate the call.
        WARN: Potential issue worth reviewing.
        INFO: General informational message.
        DEBUG: Detailed information useful for debugging.
        TRACE: Fine-grained tracing information.

    """

    EXCEPTION = "EXCEPTION"
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"
    TRACE = "TRACE"

    @property
    def logging_level(self) -> int:
        """The closest standard-library ``logging`` level."""
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS: dict[Level, int] = {
    Level.EXCEPTION: logging.ERROR,
    Level.ERROR: logging.ERROR,
    Level.WARN: logging.WARNING,
    Level.INFO: logging.INFO,
    Level.DEBUG: logging.DEBUG,
    Level.TRACE: logging.DEBUG,
}


class Message:
    """A log message with a level, text and optional extra fields."""

    __slots__ = ("extra", "level", "message")
    __hash__ = None  # type: ignore[assignment]  # Unhashable since we define __eq__

    _MAX_TRACEBACK_CHARS: ClassVar[int] = 16_000

    def __init__(self, level: Level, message: str, **kwargs: object) -> None:
        """Create a log message with level, message text, and optional extras."""
        self.level = level
        self.message = message
        self.extra: dict[str, object] | None = kwargs if kwargs else None

    def __eq__(self, other: object) -> bool:
        """Compare log messages by level, message, and extra fields."""
        if not isinstance(other, Message):
            return NotImplemented
        return self.level == other.level and self.message == other.message and self.extra == other.extra

    def __repr__(self) -> str:
        """Return a string representation suitable for debugging."""
        if self.extra:
            return f"Message({self.level!r}, {self.message!r}, **{self.extra!r})"
        return f"Message({self.level!r}, {self.message!r})"

    def add_to_metadata(self, metadata: dict[str, str] | None = None) -> dict[str, str]:
        """Return a copy of *metadata* with the log level, text and extras added.

        The extras are serialized as a JSON object under ``apictl.log_extra``
        and omitted when empty.  The input dictionary is not mutated.
        """
        result = dict(metadata) if metadata else {}
        result[LOG_LEVEL_KEY.decode()] = self.level.value
        result[LOG_MESSAGE_KEY.decode()] = self.message
        if self.extra:
            result[LOG_EXTRA_KEY.decode()] = json.dumps(self.extra, default=str)
        return result

    @classmethod
    def from_exception(cls, exc: BaseException) -> Message:
        """Produce an EXCEPTION message from an exception, including its traceback."""
        tb_exc = traceback.TracebackException.from_exception(exc, capture_locals=False)
        formatted_tb = "".join(tb_exc.format())
        if len(formatted_tb) > cls._MAX_TRACEBACK_CHARS:
            formatted_tb = formatted_tb[: cls._MAX_TRACEBACK_CHARS] + "\n… <traceback truncated>"
        return cls(
            Level.EXCEPTION,
            str(exc),
            exception_type=type(exc).__name__,
            traceback=formatted_tb,
        )
