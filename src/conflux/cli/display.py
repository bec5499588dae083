"""Rich rendering for the ``tools`` and ``check`` commands.

Accepts an optional :class:`~rich.console.Console` for dependency
injection in tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from mcp.types import Tool

    from conflux.config.schema import ServerConfig

_TRUNCATE_LEN = 80


def _truncate(text: str, limit: int = _TRUNCATE_LEN) -> str:
    """Truncate text to *limit* characters with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + " ..."


class AggregatorDisplay:
    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    def show_tools(self, tools: Sequence[Tool]) -> None:
        table = Table(title=f"{len(tools)} tools")
        table.add_column("Tool", style="bold cyan", no_wrap=True)
        table.add_column("Description")
        for tool in sorted(tools, key=lambda t: t.name):
            description = _truncate(tool.description or "")
            table.add_row(escape(tool.name), escape(description))
        self._console.print(table)

    def show_servers(self, servers: Mapping[str, ServerConfig], separator: str) -> None:
        table = Table(title=f"{len(servers)} servers (separator {separator!r})")
        table.add_column("Server", style="bold cyan", no_wrap=True)
        table.add_column("Command")
        table.add_column("Env")
        for key, config in servers.items():
            command = " ".join([config.command, *config.args])
            table.add_row(
                escape(key),
                escape(_truncate(command)),
                ", ".join(sorted(config.env)),
            )
        self._console.print(table)

    def show_failures(self, failures: Mapping[str, Exception]) -> None:
        for key, error in failures.items():
            self._console.print(
                f"[yellow]Skipped {escape(key)}:[/yellow] {escape(str(error))}"
            )
