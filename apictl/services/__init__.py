# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Service contracts reachable through ``apictl api``."""

from apictl.services.logger import LoggerService, RestartLoggerRequest, RestartLoggerResponse
from apictl.services.stats import (
    GetStatsRequest,
    GetStatsResponse,
    QueryStatsRequest,
    QueryStatsResponse,
    Stat,
    StatsService,
    SysStatsRequest,
    SysStatsResponse,
)

__all__ = [
    "GetStatsRequest",
    "GetStatsResponse",
    "LoggerService",
    "QueryStatsRequest",
    "QueryStatsResponse",
    "RestartLoggerRequest",
    "RestartLoggerResponse",
    "Stat",
    "StatsService",
    "SysStatsRequest",
    "SysStatsResponse",
]
