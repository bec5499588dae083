"""MCP server exposing the aggregated tool list on stdio."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError
from mcp.types import CallToolRequest, ServerResult, Tool

from conflux import __version__
from conflux.core.errors import RoutingError

if TYPE_CHECKING:
    from conflux.aggregator.facade import Aggregator

logger = logging.getLogger(__name__)


def create_server(
    aggregator: Aggregator,
    *,
    name: str = "conflux",
    version: str = __version__,
) -> Server:
    """Build the MCP server that fronts *aggregator*."""
    server = Server(name, version=version)

    @server.list_tools()  # type: ignore[no-untyped-call, untyped-decorator]
    async def list_tools() -> list[Tool]:
        """List every aggregated tool under its qualified name."""
        return aggregator.list_tools()

    async def call_tool(req: CallToolRequest) -> ServerResult:
        """Route a call and relay the child's result untouched."""
        try:
            result = await aggregator.call_tool(req.params.name, req.params.arguments)
        except RoutingError as e:
            raise McpError(e.to_error_data()) from e
        return ServerResult(result)

    # Registered directly rather than through ``@server.call_tool()``: the
    # decorator turns every exception into an ``isError`` result, which
    # would hide the error codes children report.
    server.request_handlers[CallToolRequest] = call_tool

    aggregator.on_removal(
        lambda key: logger.warning("Tools of server '%s' are no longer available", key)
    )
    return server


async def run_server(
    aggregator: Aggregator,
    *,
    name: str = "conflux",
    version: str = __version__,
) -> None:
    """Serve *aggregator* over stdio until the client disconnects."""
    server = create_server(aggregator, name=name, version=version)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )
