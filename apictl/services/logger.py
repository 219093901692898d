# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Logger management service contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from apictl.message import TypedMessage

__all__ = ["LoggerService", "RestartLoggerRequest", "RestartLoggerResponse"]


@dataclass(frozen=True)
class RestartLoggerRequest(TypedMessage):
    pass


@dataclass(frozen=True)
class RestartLoggerResponse(TypedMessage):
    pass


class LoggerService(Protocol):
    """Control the server's log output."""

    def restart_logger(self, request: RestartLoggerRequest) -> RestartLoggerResponse:
        """Close and reopen the server's log files."""
        ...
