"""Main CLI application.

Click commands for the conflux aggregator: serve, tools, check.
"""

from __future__ import annotations

import asyncio
import json as json_mod
import os
import sys
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from conflux import __version__
from conflux.config.loader import load_config
from conflux.core.errors import ConfigurationError, ConfluxError
from conflux.core.logs import configure_logging

if TYPE_CHECKING:
    from conflux.config.schema import ConfluxConfig


# ── Helpers ──────────────────────────────────────────────────────


def _error(msg: str) -> None:
    """Print an error message to stderr and exit."""
    click.echo(f"Error: {msg}", err=True)
    sys.exit(1)


def _load_config(
    config_path: str | None,
    overrides: dict[str, Any] | None = None,
) -> ConfluxConfig:
    """Load config with user-friendly error handling."""
    try:
        return load_config(path=config_path, overrides=overrides)
    except ConfigurationError as e:
        _error(str(e))
        raise  # unreachable, keeps mypy happy


def _default_log_file() -> str:
    return str(Path(tempfile.gettempdir()) / f"conflux-{os.getpid()}.log")


def _overrides(
    *,
    separator: str | None = None,
    name: str | None = None,
    strict: bool = False,
    debug: bool = False,
    log_file: str | None = None,
) -> dict[str, Any]:
    """Translate CLI flags into config overrides."""
    aggregator: dict[str, Any] = {}
    if separator is not None:
        aggregator["separator"] = separator
    if name is not None:
        aggregator["name"] = name
    if strict:
        aggregator["require_all"] = True

    logging_cfg: dict[str, Any] = {}
    if debug:
        logging_cfg["level"] = "DEBUG"
        logging_cfg["file"] = log_file or _default_log_file()
    elif log_file:
        logging_cfg["file"] = log_file

    overrides: dict[str, Any] = {}
    if aggregator:
        overrides["aggregator"] = aggregator
    if logging_cfg:
        overrides["logging"] = logging_cfg
    return overrides


# ── CLI group ────────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="conflux")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to MCP config JSON (default: $CONFLUX_CONFIG).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """conflux - Aggregate many MCP servers into one.

    Every child's tools are exposed as serverKey:toolName.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ── serve ────────────────────────────────────────────────────────


@cli.command()
@click.option("--separator", default=None, help="Namespace separator (default ':').")
@click.option("--name", default=None, help="Server name reported to clients.")
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    help="Exit if any child server fails to start.",
)
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Log file (default with --debug: <tmp>/conflux-<pid>.log).",
)
@click.pass_context
def serve(
    ctx: click.Context,
    separator: str | None,
    name: str | None,
    strict: bool,
    debug: bool,
    log_file: str | None,
) -> None:
    """Start the aggregating MCP server on stdio."""
    overrides = _overrides(
        separator=separator, name=name, strict=strict, debug=debug, log_file=log_file
    )
    config = _load_config(ctx.obj["config_path"], overrides)
    configure_logging(config.logging)

    try:
        asyncio.run(_serve_async(config))
    except ConfluxError as e:
        _error(str(e))


async def _serve_async(config: ConfluxConfig) -> None:
    from conflux.aggregator.facade import Aggregator
    from conflux.mcp.server import run_server

    async with Aggregator.from_config(config) as aggregator:
        result = aggregator.spawn_result
        if result is not None and result.failures and config.aggregator.require_all:
            raise next(iter(result.failures.values()))
        await run_server(aggregator, name=config.aggregator.name, version=__version__)


# ── tools ────────────────────────────────────────────────────────


@cli.command()
@click.option("--separator", default=None, help="Namespace separator (default ':').")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON.")
@click.pass_context
def tools(ctx: click.Context, separator: str | None, as_json: bool) -> None:
    """Start every child, print the merged tool list, and exit."""
    config = _load_config(ctx.obj["config_path"], _overrides(separator=separator))
    configure_logging(config.logging)

    try:
        listed, failures = asyncio.run(_tools_async(config))
    except ConfluxError as e:
        _error(str(e))
        return  # unreachable

    if as_json:
        payload = [t.model_dump(mode="json", exclude_none=True) for t in listed]
        click.echo(json_mod.dumps(payload, indent=2))
        for key, error in failures.items():
            click.echo(f"Skipped {key}: {error}", err=True)
        return

    from rich.console import Console

    from conflux.cli.display import AggregatorDisplay

    display = AggregatorDisplay()
    display.show_tools(listed)
    if failures:
        AggregatorDisplay(Console(stderr=True)).show_failures(failures)


async def _tools_async(
    config: ConfluxConfig,
) -> tuple[list[Any], dict[str, Exception]]:
    from conflux.aggregator.facade import Aggregator

    async with Aggregator.from_config(config) as aggregator:
        failures: dict[str, Exception] = {}
        if aggregator.spawn_result is not None:
            failures.update(aggregator.spawn_result.failures)
        failures.update(aggregator.list_failures)
        return aggregator.list_tools(), failures


# ── check ────────────────────────────────────────────────────────


@cli.command()
@click.option("--separator", default=None, help="Namespace separator (default ':').")
@click.pass_context
def check(ctx: click.Context, separator: str | None) -> None:
    """Validate the config and separator without starting anything."""
    from conflux.aggregator.separator import validate_separator, validate_server_keys
    from conflux.cli.display import AggregatorDisplay

    config = _load_config(ctx.obj["config_path"], _overrides(separator=separator))
    sep = config.aggregator.separator
    try:
        validate_separator(sep)
        validate_server_keys(config.servers, sep)
    except ConfigurationError as e:
        _error(str(e))

    AggregatorDisplay().show_servers(config.servers, sep)
    click.echo("Config OK")
