# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for calling management services.

Usage::

    apictl api StatsService.GetStats 'name: "uplink"'
    apictl --server 10.0.0.5:8080 api StatsService.QueryStats 'pattern: "rx_*"'
    apictl --cmd "./stats-server --stdio" api LoggerService.RestartLogger ''
    apictl methods
    apictl --format json loggers

"""

from __future__ import annotations

import importlib.metadata
import json
import logging
import shlex
import sys
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated

import typer

from apictl.dispatch import DEFAULT_REGISTRY, invoke, parse_service_method
from apictl.errors import ApiError
from apictl.log import Message
from apictl.rpc import DEFAULT_ADDRESS, RpcTransport, SubprocessTransport, dial

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for listing commands."""

    table = "table"
    json = "json"


class LogFormat(StrEnum):
    """Format of log records written to stderr."""

    text = "text"
    json = "json"


class LogLevel(StrEnum):
    """Levels accepted by ``--log-level``."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    server: str = DEFAULT_ADDRESS
    cmd: str | None = None
    dial_timeout: float | None = None
    format: OutputFormat = OutputFormat.table
    verbose: bool = False


# ---------------------------------------------------------------------------
# Known loggers registry
# ---------------------------------------------------------------------------

_KNOWN_LOGGERS: tuple[tuple[str, str, str], ...] = (
    ("apictl", "Root logger for all apictl output", "Enable to see all logging"),
    ("apictl.dispatch", "Service and method routing", "Debug why a Service.Method is not found"),
    ("apictl.rpc", "RPC server lifecycle and method errors", "Debug server-side dispatch"),
    ("apictl.access", "One structured record per served RPC call", "Monitor request throughput and errors"),
    ("apictl.remote", "Log messages sent by the server during a call", "See what the server reported"),
    ("apictl.subprocess.stderr", "Child process stderr capture", "See --cmd server stderr output"),
    ("apictl.wire.request", "Request serialization/deserialization", "Debug requests the server rejects"),
    ("apictl.wire.response", "Response serialization/deserialization", "Debug result schema and type mismatches"),
    ("apictl.wire.transport", "Transport lifecycle (TCP, pipe, subprocess)", "Debug connection hangs or dial failures"),
)

_KNOWN_LOGGER_NAMES: frozenset[str] = frozenset(name for name, _, _ in _KNOWN_LOGGERS)


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------


def _configure_logging(
    debug: bool,
    log_level: LogLevel | None,
    log_loggers: list[str] | None,
    log_format: LogFormat,
) -> None:
    """Attach a stderr handler to the target loggers at the requested level."""
    level: str | None = log_level.value if log_level is not None else None
    if debug:
        level = "DEBUG"
    if level is None:
        return

    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.json:
        from apictl.logging_utils import ApiJsonFormatter

        handler.setFormatter(ApiJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(name)-30s %(levelname)-5s %(message)s"))

    numeric_level = logging.getLevelNamesMapping()[level]
    targets: list[str] = log_loggers if log_loggers else ["apictl"]

    for name in targets:
        if name not in _KNOWN_LOGGER_NAMES:
            sys.stderr.write(f"Warning: unknown logger '{name}'\n")
            sys.stderr.flush()
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        logger.addHandler(handler)


def _version_callback(value: bool) -> None:
    if not value:
        return
    try:
        version = importlib.metadata.version("apictl")
    except importlib.metadata.PackageNotFoundError:
        version = "unknown"
    typer.echo(f"apictl {version}")
    raise typer.Exit()


app = typer.Typer(
    name="apictl",
    help="Call management APIs of a running server.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    server: Annotated[
        str, typer.Option("--server", "-s", envvar="APICTL_SERVER", help="Server address (host:port)")
    ] = DEFAULT_ADDRESS,
    cmd: Annotated[
        str | None,
        typer.Option("--cmd", "-c", envvar="APICTL_CMD", help="Spawn a server and talk over its stdin/stdout"),
    ] = None,
    dial_timeout: Annotated[
        float | None, typer.Option("--dial-timeout", min=0.0, help="Seconds to wait for the TCP connection")
    ] = None,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format for listings")] = (
        OutputFormat.table
    ),
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show server log messages on stderr")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Enable DEBUG logging on the apictl loggers")] = False,
    log_level: Annotated[
        LogLevel | None, typer.Option("--log-level", case_sensitive=False, help="Level for the selected loggers")
    ] = None,
    log_logger: Annotated[
        list[str] | None, typer.Option("--log-logger", help="Logger to configure (repeatable, default apictl)")
    ] = None,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log record format")] = LogFormat.text,
    version: Annotated[
        bool,
        typer.Option("--version", "-V", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """Configure transport, output and logging options."""
    _configure_logging(debug, log_level, log_logger, log_format)
    ctx.obj = _CliConfig(server=server, cmd=cmd, dial_timeout=dial_timeout, format=fmt, verbose=verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _log_to_stderr(msg: Message) -> None:
    """Write a log message to stderr."""
    sys.stderr.write(f"[{msg.level.value}] {msg.message}\n")
    sys.stderr.flush()


def _get_on_log(config: _CliConfig) -> Callable[[Message], None] | None:
    """Return the stderr log callback when ``--verbose`` is set."""
    return _log_to_stderr if config.verbose else None


def _format_table(rows: list[dict[str, object]]) -> str:
    """Format rows as a simple column-aligned text table.

    Args:
        rows: List of dicts (all with the same keys).

    Returns:
        A formatted table string.

    """
    if not rows:
        return "(empty)"
    columns = list(rows[0].keys())
    widths = {col: max(len(col), *(len(str(row.get(col, ""))) for row in rows)) for col in columns}
    lines = [
        "  ".join(col.ljust(widths[col]) for col in columns),
        "  ".join("-" * widths[col] for col in columns),
    ]
    lines.extend("  ".join(str(row.get(col, "")).ljust(widths[col]) for col in columns) for row in rows)
    return "\n".join(lines)


def _open_transport(config: _CliConfig) -> RpcTransport:
    """Spawn ``--cmd`` or dial ``--server``.

    Raises:
        OSError: If the process cannot be started or the server is unreachable.
        ValueError: If ``--cmd`` is empty or ``--server`` is malformed.

    """
    if config.cmd:
        argv = shlex.split(config.cmd)
        if not argv:
            raise ValueError("empty command")
        return SubprocessTransport(argv)
    return dial(config.server, timeout=config.dial_timeout)


# ---------------------------------------------------------------------------
# api command
# ---------------------------------------------------------------------------


@app.command()
def api(
    ctx: typer.Context,
    identifier: Annotated[str, typer.Argument(metavar="SERVICE.METHOD", help="e.g. StatsService.GetStats")],
    request: Annotated[str, typer.Argument(metavar="REQUEST", help="Request message in text format")] = "",
) -> None:
    """Call SERVICE.METHOD with REQUEST and print the response."""
    config: _CliConfig = ctx.obj
    service, _ = parse_service_method(identifier)
    if service not in DEFAULT_REGISTRY:
        typer.echo(f"Unknown service: {service}", err=True)
        raise typer.Exit(1)

    target = config.cmd if config.cmd else config.server
    try:
        transport = _open_transport(config)
    except (OSError, ValueError) as e:
        typer.echo(f"Failed to dial {target}: {e}", err=True)
        raise typer.Exit(1) from None

    try:
        response = invoke(transport, identifier, request, on_log=_get_on_log(config))
    except ApiError as e:
        typer.echo(f"failed to call service {identifier}: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        transport.close()
    typer.echo(response.rstrip("\n"))


# ---------------------------------------------------------------------------
# methods command
# ---------------------------------------------------------------------------


@app.command()
def methods(ctx: typer.Context) -> None:
    """List the supported SERVICE.METHOD names."""
    config: _CliConfig = ctx.obj
    names = [f"{handler.name}.{method}" for handler in DEFAULT_REGISTRY for method in handler.method_names]
    names.sort()
    if config.format == OutputFormat.json:
        typer.echo(json.dumps(names, indent=2))
        return
    typer.echo("Usage: apictl api SERVICE.METHOD REQUEST\n\nMethods:")
    for name in names:
        typer.echo(f"  {name}")


# ---------------------------------------------------------------------------
# loggers command
# ---------------------------------------------------------------------------


@app.command()
def loggers(ctx: typer.Context) -> None:
    """List the loggers that --log-logger can target."""
    config: _CliConfig = ctx.obj
    rows: list[dict[str, object]] = [
        {"name": name, "description": description, "scenario": scenario}
        for name, description, scenario in _KNOWN_LOGGERS
    ]
    if config.format == OutputFormat.json:
        typer.echo(json.dumps(rows, indent=2))
    else:
        typer.echo(_format_table(rows))
