# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Traffic statistics service contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Protocol

import pyarrow as pa

from apictl.message import ArrowType, TypedMessage

__all__ = [
    "GetStatsRequest",
    "GetStatsResponse",
    "QueryStatsRequest",
    "QueryStatsResponse",
    "Stat",
    "StatsService",
    "SysStatsRequest",
    "SysStatsResponse",
]

UInt32 = Annotated[int, ArrowType(pa.uint32())]
UInt64 = Annotated[int, ArrowType(pa.uint64())]


@dataclass(frozen=True)
class Stat(TypedMessage):
    """A named counter, e.g. ``inbound>>>api>>>traffic>>>uplink``."""

    name: str = ""
    value: int = 0


@dataclass(frozen=True)
class GetStatsRequest(TypedMessage):
    """Request for a single counter.

    Attributes:
        name: Full name of the counter.
        reset: Reset the counter to zero after reading it.

    """

    name: str = ""
    reset: bool = False


@dataclass(frozen=True)
class GetStatsResponse(TypedMessage):
    """The requested counter, absent when the server has none by that name."""

    stat: Stat | None = None


@dataclass(frozen=True)
class QueryStatsRequest(TypedMessage):
    """Request for every counter whose name contains *pattern*."""

    pattern: str = ""
    reset: bool = False


@dataclass(frozen=True)
class QueryStatsResponse(TypedMessage):
    stat: list[Stat] = field(default_factory=list)


@dataclass(frozen=True)
class SysStatsRequest(TypedMessage):
    pass


@dataclass(frozen=True)
class SysStatsResponse(TypedMessage):
    """Runtime statistics of the server process."""

    num_goroutine: UInt32 = 0
    num_gc: UInt32 = 0
    alloc: UInt64 = 0
    total_alloc: UInt64 = 0
    sys: UInt64 = 0
    mallocs: UInt64 = 0
    frees: UInt64 = 0
    live_objects: UInt64 = 0
    pause_total_ns: UInt64 = 0
    uptime: UInt32 = 0


class StatsService(Protocol):
    """Read traffic counters and runtime statistics from the server."""

    def get_stats(self, request: GetStatsRequest) -> GetStatsResponse:
        """Return one counter by name."""
        ...

    def query_stats(self, request: QueryStatsRequest) -> QueryStatsResponse:
        """Return all counters matching a pattern."""
        ...

    def get_sys_stats(self, request: SysStatsRequest) -> SysStatsResponse:
        """Return runtime statistics of the server process."""
        ...
