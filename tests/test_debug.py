# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the wire-trace formatting helpers in apictl.rpc._debug."""

from __future__ import annotations

import pyarrow as pa

from apictl.metadata import LOG_LEVEL_KEY, LOG_MESSAGE_KEY, REQUEST_VERSION_KEY, RPC_METHOD_KEY
from apictl.rpc._debug import fmt_batch, fmt_metadata, fmt_schema, fmt_value
from apictl.services.stats import GetStatsRequest, Stat


class TestFmtMetadata:
    """Tests for fmt_metadata."""

    def test_none(self) -> None:
        """Missing metadata renders as an empty mapping."""
        assert fmt_metadata(None) == "{}"

    def test_apictl_prefix_stripped(self) -> None:
        """Keys in the apictl namespace are shown without the prefix."""
        md = pa.KeyValueMetadata({RPC_METHOD_KEY: b"StatsService/get_stats", REQUEST_VERSION_KEY: b"1"})
        assert fmt_metadata(md) == "{method='StatsService/get_stats', request_version='1'}"

    def test_foreign_key_kept(self) -> None:
        """Keys outside the apictl namespace are shown in full."""
        assert fmt_metadata(pa.KeyValueMetadata({b"trace.id": b"abc"})) == "{trace.id='abc'}"

    def test_long_value_clipped(self) -> None:
        """Values longer than 80 characters are clipped with an ellipsis."""
        out = fmt_metadata(pa.KeyValueMetadata({LOG_MESSAGE_KEY: b"x" * 200}))
        assert out == "{log_message='" + "x" * 80 + "...'}"


class TestFmtBatch:
    """Tests for fmt_schema and fmt_batch."""

    def test_schema(self) -> None:
        """Schemas list each field with its Arrow type."""
        assert fmt_schema(GetStatsRequest.arrow_schema()) == "(name: string, reset: bool)"
        assert fmt_schema(pa.schema([])) == "()"

    def test_data_batch(self) -> None:
        """A message batch shows rows, schema and size."""
        out = fmt_batch(GetStatsRequest(name="uplink").to_batch())
        assert out.startswith("Batch(rows=1, schema=(name: string, reset: bool), bytes=")

    def test_log_batch(self) -> None:
        """A zero-row batch with log metadata shows its level and text."""
        batch = pa.RecordBatch.from_pylist([], schema=Stat.arrow_schema())
        md = pa.KeyValueMetadata({LOG_LEVEL_KEY: b"WARN", LOG_MESSAGE_KEY: b"disk almost full"})
        assert fmt_batch(batch, md) == "Log(WARN: 'disk almost full')"

    def test_zero_rows_without_log_level(self) -> None:
        """A zero-row batch without a log level is summarized as data."""
        batch = pa.RecordBatch.from_pylist([], schema=Stat.arrow_schema())
        out = fmt_batch(batch, pa.KeyValueMetadata({RPC_METHOD_KEY: b"StatsService/get_stats"}))
        assert out.startswith("Batch(rows=0, schema=(name: string, value: int64)")


class TestFmtValue:
    """Tests for fmt_value."""

    def test_message_in_text_format(self) -> None:
        """Messages render on one line in text format."""
        assert fmt_value(GetStatsRequest(name="uplink", reset=True)) == 'GetStatsRequest{name: "uplink" reset: true}'

    def test_default_message(self) -> None:
        """A default-valued message renders with an empty body."""
        assert fmt_value(GetStatsRequest()) == "GetStatsRequest{}"

    def test_unencodable_message_uses_repr(self) -> None:
        """A message the text encoder rejects falls back to repr."""
        out = fmt_value(Stat(name="bad\ud800"))
        assert out.startswith("Stat(name=")

    def test_non_message_uses_repr(self) -> None:
        """Other values render with repr."""
        assert fmt_value(None) == "None"
        assert fmt_value({"a": 1}) == "{'a': 1}"

    def test_long_value_clipped(self) -> None:
        """Long renderings are clipped."""
        out = fmt_value(Stat(name="n" * 200))
        assert out.endswith("...")
        assert len(out) == 83
