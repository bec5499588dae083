"""Aggregation facade: the two operations the outer server exposes.

Wires the supervisor, registry and router together. Separator and
server-key validation happen in the constructor, before anything is
spawned.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from conflux.aggregator.registry import ToolRegistry, fetch_tools
from conflux.aggregator.router import Router
from conflux.aggregator.separator import validate_separator, validate_server_keys
from conflux.aggregator.supervisor import Supervisor
from conflux.config.schema import AggregatorConfig
from conflux.core.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from mcp.types import CallToolResult, Tool

    from conflux.aggregator.supervisor import Connector, SpawnResult
    from conflux.config.schema import ConfluxConfig, ServerConfig

logger = logging.getLogger(__name__)


class Aggregator:
    """Many child MCP servers presented as one tool list.

    Usage::

        async with Aggregator(servers) as agg:
            tools = agg.list_tools()
            result = await agg.call_tool("fs:read", {"path": "/a"})
    """

    def __init__(
        self,
        servers: Mapping[str, ServerConfig],
        *,
        settings: AggregatorConfig | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._settings = settings or AggregatorConfig()
        self._separator = validate_separator(self._settings.separator)
        validate_server_keys(servers, self._separator)
        self._servers = dict(servers)

        if connector is None:
            from conflux.mcp.client import stdio_connector

            connector = stdio_connector

        self._supervisor = Supervisor(
            connector,
            startup_timeout=self._settings.startup_timeout,
            ping_interval=self._settings.ping_interval,
            ping_timeout=self._settings.ping_timeout,
            shutdown_timeout=self._settings.shutdown_timeout,
        )
        self._registry = ToolRegistry(self._separator)
        self._router = Router(
            self._registry,
            on_transport_failure=self._supervisor.report_failure,
            call_timeout=self._settings.call_timeout,
        )
        self._removal_callbacks: list[Callable[[str], None]] = []
        self._spawn_result: SpawnResult | None = None
        self._list_failures: dict[str, Exception] = {}

    @classmethod
    def from_config(
        cls,
        config: ConfluxConfig,
        *,
        connector: Connector | None = None,
    ) -> Aggregator:
        return cls(config.servers, settings=config.aggregator, connector=connector)

    @property
    def separator(self) -> str:
        return self._separator

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def supervisor(self) -> Supervisor:
        return self._supervisor

    @property
    def spawn_result(self) -> SpawnResult | None:
        return self._spawn_result

    @property
    def list_failures(self) -> dict[str, Exception]:
        """Children that started but whose tool listing failed."""
        return dict(self._list_failures)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> SpawnResult:
        """Spawn every child, then build the registry from the survivors.

        Never raises for individual child failures; inspect the returned
        :class:`SpawnResult` to decide whether a degraded run is acceptable.
        """
        if self._spawn_result is not None:
            msg = "Aggregator already started"
            raise ConfigurationError(msg)

        for key in self._servers:
            self._supervisor.observe(key, self._handle_crash)

        self._spawn_result = await self._supervisor.spawn_all(self._servers)
        self._list_failures = await self._registry.populate(
            self._spawn_result.connections,
            timeout=self._settings.list_tools_timeout,
        )
        stats = self._registry.stats()
        logger.info(
            "Serving %d tools from %d child servers",
            stats.total_tools,
            len(self._spawn_result.running),
        )
        return self._spawn_result

    async def close(self) -> None:
        """Shut every child down."""
        await self._supervisor.close_all()

    async def __aenter__(self) -> Aggregator:
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Crash handling ───────────────────────────────────────────

    def on_removal(self, callback: Callable[[str], None]) -> None:
        """Call *callback* with a server key after its tools were removed."""
        self._removal_callbacks.append(callback)

    def _handle_crash(self, server_key: str) -> None:
        removed = self._registry.remove_all(server_key)
        logger.warning(
            "Removed %d tool(s) of crashed server '%s'", removed, server_key
        )
        for callback in list(self._removal_callbacks):
            try:
                callback(server_key)
            except Exception:
                logger.exception("Removal callback for '%s' failed", server_key)

    # ── Protocol operations ──────────────────────────────────────

    def list_tools(self) -> list[Tool]:
        """Every aggregated tool, named by its qualified name."""
        return self._registry.list_tools()

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Route a call to the child that owns *name*."""
        return await self._router.call(name, arguments)

    async def refresh_tools(self, server_key: str) -> int:
        """Re-query one child's tools and swap them into the registry.

        Returns:
            Number of tools now registered for *server_key*.
        """
        conn = self._supervisor.get(server_key)
        if conn is None or not conn.is_running:
            return 0
        tools = await fetch_tools(conn, timeout=self._settings.list_tools_timeout)
        return len(self._registry.add_server_tools(conn, tools, replace=True))
