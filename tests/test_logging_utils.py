# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for apictl.logging_utils.ApiJsonFormatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from apictl.log import Level, Message
from apictl.logging_utils import CALL_FIELDS, ApiJsonFormatter
from apictl.rpc import forward_remote_log


def _record(msg: str = "test", level: int = logging.INFO, exc_info: object = None) -> logging.LogRecord:
    return logging.LogRecord(
        name="apictl.access",
        level=level,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=exc_info,  # type: ignore[arg-type]
    )


class TestApiJsonFormatter:
    """Tests for ApiJsonFormatter."""

    def test_valid_json_output(self) -> None:
        """Output is one line of JSON with the standard fields."""
        output = ApiJsonFormatter().format(_record("test message"))
        assert "\n" not in output
        parsed = json.loads(output)
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "apictl.access"
        assert parsed["message"] == "test message"
        assert "timestamp" in parsed

    def test_args_interpolated(self) -> None:
        """%-style arguments are merged into the message."""
        record = logging.LogRecord("apictl", logging.INFO, "", 0, "calling %s", ("StatsService/get_stats",), None)
        assert json.loads(ApiJsonFormatter().format(record))["message"] == "calling StatsService/get_stats"

    def test_extra_fields_in_output(self) -> None:
        """Fields attached via ``extra`` appear in the output."""
        record = _record()
        record.service = "StatsService"
        record.method = "get_stats"
        record.duration_ms = 1.25
        parsed = json.loads(ApiJsonFormatter().format(record))
        assert parsed["service"] == "StatsService"
        assert parsed["method"] == "get_stats"
        assert parsed["duration_ms"] == 1.25

    def test_extra_cannot_override_standard_fields(self) -> None:
        """An extra named like a standard field does not replace it."""
        record = _record("real")
        record.level = "fake"
        parsed = json.loads(ApiJsonFormatter().format(record))
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "real"

    def test_exception_info_included(self) -> None:
        """Exception info is rendered under ``exception``."""
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()
        parsed = json.loads(ApiJsonFormatter().format(_record("error occurred", logging.ERROR, exc_info)))
        assert "ValueError" in parsed["exception"]

    def test_none_exc_info_tuple_excluded(self) -> None:
        """exc_info=(None, None, None) does not produce an exception key."""
        parsed = json.loads(ApiJsonFormatter().format(_record(exc_info=(None, None, None))))
        assert "exception" not in parsed

    def test_non_serializable_coerced(self) -> None:
        """Non-serializable values are coerced to strings."""
        record = _record()
        record.custom_obj = object()
        parsed = json.loads(ApiJsonFormatter().format(record))
        assert parsed["custom_obj"].startswith("<object object")

    def test_stack_info_included(self) -> None:
        """stack_info is included when present."""
        record = _record()
        record.stack_info = "Stack (most recent call last):\n  File test.py"
        parsed = json.loads(ApiJsonFormatter().format(record))
        assert "test.py" in parsed["stack_info"]


class TestFieldLayout:
    """Tests for the key order and grouping of ApiJsonFormatter output."""

    def test_access_record_order(self) -> None:
        """Call fields follow the standard fields in a fixed order, whatever order they were attached in."""
        record = _record("StatsService.get_stats ok")
        for key, value in [
            ("duration_ms", 0.5),
            ("method", "get_stats"),
            ("status", "ok"),
            ("request_id", "0123456789abcdef"),
            ("service", "StatsService"),
            ("server_id", "a1b2c3d4e5f6"),
        ]:
            setattr(record, key, value)
        keys = list(json.loads(ApiJsonFormatter().format(record)))
        assert keys == [
            "timestamp",
            "level",
            "logger",
            "message",
            "server_id",
            "request_id",
            "service",
            "method",
            "status",
            "duration_ms",
        ]

    def test_call_fields_constant(self) -> None:
        """CALL_FIELDS lists the access-log extras, identity first and outcome last."""
        assert CALL_FIELDS[:4] == ("server_id", "request_id", "service", "method")
        assert CALL_FIELDS[-1] == "error_type"

    def test_other_extras_sorted_after_call_fields(self) -> None:
        """Extras that are not call fields come after them, sorted by name."""
        record = _record()
        record.zone = "eu"
        record.attempt = 2
        record.method = "get_stats"
        keys = list(json.loads(ApiJsonFormatter().format(record)))
        assert keys[4:] == ["method", "attempt", "zone"]

    def test_remote_fields_grouped(self) -> None:
        """``remote_*`` extras are nested under ``remote`` without the prefix."""
        record = _record("cache warm")
        record.remote_shard = "3"
        record.remote_items = 120
        record.service = "StatsService"
        parsed = json.loads(ApiJsonFormatter().format(record))
        assert parsed["remote"] == {"shard": "3", "items": 120}
        assert "remote_shard" not in parsed
        assert list(parsed) == ["timestamp", "level", "logger", "message", "service", "remote"]

    def test_no_remote_key_without_remote_fields(self) -> None:
        """Records with no ``remote_*`` extras have no ``remote`` key."""
        assert "remote" not in json.loads(ApiJsonFormatter().format(_record()))

    def test_exception_last(self) -> None:
        """``exception`` follows every extra field."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = _record("failed", logging.ERROR, exc_info)
        record.error_type = "RuntimeError"
        record.remote_phase = "read"
        keys = list(json.loads(ApiJsonFormatter().format(record)))
        assert keys[-3:] == ["error_type", "remote", "exception"]

    def test_forwarded_server_log(self, caplog: pytest.LogCaptureFixture) -> None:
        """A server log forwarded on ``apictl.remote`` renders its extras under ``remote``."""
        with caplog.at_level(logging.INFO, logger="apictl.remote"):
            forward_remote_log(Message(Level.WARN, "disk almost full", free_mb=12, mount="/var"))
        record = next(r for r in caplog.records if r.name == "apictl.remote")
        parsed = json.loads(ApiJsonFormatter().format(record))
        assert parsed["level"] == "WARNING"
        assert parsed["message"] == "disk almost full"
        assert parsed["remote"] == {"free_mb": 12, "mount": "/var"}
