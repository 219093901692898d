# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-memory implementations of the service contracts used by the tests."""

from __future__ import annotations

import threading
from collections.abc import Mapping

from apictl.log import Level
from apictl.rpc import client_log
from apictl.services import (
    GetStatsRequest,
    GetStatsResponse,
    LoggerService,
    QueryStatsRequest,
    QueryStatsResponse,
    RestartLoggerRequest,
    RestartLoggerResponse,
    Stat,
    StatsService,
    SysStatsRequest,
    SysStatsResponse,
)

UPLINK = "inbound>>>api>>>traffic>>>uplink"
DOWNLINK = "inbound>>>api>>>traffic>>>downlink"


class FakeStatsService:
    """Counter store answering ``StatsService`` calls.

    A counter named ``boom`` makes ``get_stats`` raise, and ``noisy`` makes
    it send a log message to the client before answering.
    """

    def __init__(self, counters: Mapping[str, int] | None = None) -> None:
        self._lock = threading.Lock()
        self._counters = dict(counters) if counters is not None else {UPLINK: 1024, DOWNLINK: 4096}

    def get_stats(self, request: GetStatsRequest) -> GetStatsResponse:
        if request.name == "boom":
            raise ValueError("counter store unavailable")
        if request.name == "noisy":
            client_log(Level.INFO, "looking up noisy counter", source="fixture")
        with self._lock:
            if request.name not in self._counters:
                return GetStatsResponse()
            value = self._counters[request.name]
            if request.reset:
                self._counters[request.name] = 0
        return GetStatsResponse(stat=Stat(name=request.name, value=value))

    def query_stats(self, request: QueryStatsRequest) -> QueryStatsResponse:
        with self._lock:
            matches = sorted((n, v) for n, v in self._counters.items() if request.pattern in n)
            if request.reset:
                for name, _ in matches:
                    self._counters[name] = 0
        return QueryStatsResponse(stat=[Stat(name=n, value=v) for n, v in matches])

    def get_sys_stats(self, request: SysStatsRequest) -> SysStatsResponse:
        return SysStatsResponse(num_goroutine=12, num_gc=3, alloc=2**40, sys=2**33, uptime=3600)


class FakeLoggerService:
    """Counts ``restart_logger`` calls."""

    def __init__(self) -> None:
        self.restarts = 0

    def restart_logger(self, request: RestartLoggerRequest) -> RestartLoggerResponse:
        self.restarts += 1
        return RestartLoggerResponse()


def fixture_services() -> dict[type, object]:
    """Return fresh implementations for both contracts."""
    return {StatsService: FakeStatsService(), LoggerService: FakeLoggerService()}
