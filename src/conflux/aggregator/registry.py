"""Tool registry: the namespaced map from qualified name to owning child.

Every mutation builds a fresh dict and publishes it as a read-only
snapshot in a single assignment. Readers (lookups, listings) grab the
current snapshot and never observe a half-applied add or removal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

from conflux.aggregator.separator import DEFAULT_SEPARATOR, validate_separator
from conflux.aggregator.supervisor import ChildStatus

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from mcp.types import Tool

    from conflux.aggregator.supervisor import ChildConnection, ChildSession

logger = logging.getLogger(__name__)


def qualify(server_key: str, tool_name: str, separator: str = DEFAULT_SEPARATOR) -> str:
    """Build the qualified name ``{server_key}{separator}{tool_name}``."""
    return f"{server_key}{separator}{tool_name}"


@dataclass(frozen=True, slots=True)
class ToolRegistryEntry:
    """One routable tool.

    ``tool`` is the child's descriptor with its name rewritten to the
    qualified form; description and input schema are the child's own,
    passed through untouched.
    """

    connection: ChildConnection
    original_name: str
    tool: Tool

    @property
    def server_key(self) -> str:
        return self.connection.server_key

    @property
    def qualified_name(self) -> str:
        return self.tool.name


@dataclass(frozen=True, slots=True)
class RegistryStats:
    """Tool counts, overall and per server."""

    total_tools: int
    server_counts: dict[str, int]


class ToolRegistry:
    """Registry of aggregated tools keyed by qualified name."""

    def __init__(self, separator: str = DEFAULT_SEPARATOR) -> None:
        self._separator = validate_separator(separator)
        self._entries: Mapping[str, ToolRegistryEntry] = MappingProxyType({})

    @property
    def separator(self) -> str:
        return self._separator

    def _publish(self, entries: dict[str, ToolRegistryEntry]) -> None:
        self._entries = MappingProxyType(entries)

    # ── Mutation ─────────────────────────────────────────────────

    def add_server_tools(
        self,
        connection: ChildConnection,
        tools: Iterable[Tool],
        *,
        replace: bool = False,
    ) -> list[str]:
        """Insert *connection*'s tools under qualified names.

        With ``replace=True`` the server's previous entries are dropped in
        the same snapshot swap, which is how a refreshed tool list lands.
        Tools of a connection that is no longer running are not added.

        Returns:
            The qualified names that were inserted.
        """
        if connection.status is not ChildStatus.RUNNING:
            logger.debug(
                "Not registering tools of '%s' (status %s)",
                connection.server_key,
                connection.status,
            )
            return []

        entries = dict(self._entries)
        if replace:
            entries = {
                name: entry
                for name, entry in entries.items()
                if entry.server_key != connection.server_key
            }

        added: list[str] = []
        seen: set[str] = set()
        for tool in tools:
            name = qualify(connection.server_key, tool.name, self._separator)
            if name in seen:
                logger.warning(
                    "Server '%s' reported tool '%s' more than once; keeping the first",
                    connection.server_key,
                    tool.name,
                )
                continue
            entries[name] = ToolRegistryEntry(
                connection=connection,
                original_name=tool.name,
                tool=tool.model_copy(update={"name": name}),
            )
            added.append(name)
            seen.add(name)
            logger.debug("Registered tool %s", name)

        self._publish(entries)
        return added

    def remove_all(self, server_key: str) -> int:
        """Drop every entry owned by *server_key*. Returns how many."""
        current = self._entries
        kept = {
            name: entry
            for name, entry in current.items()
            if entry.server_key != server_key
        }
        removed = len(current) - len(kept)
        if removed:
            self._publish(kept)
        return removed

    # ── Queries ──────────────────────────────────────────────────

    def lookup(self, qualified_name: str) -> ToolRegistryEntry | None:
        """Return the entry for *qualified_name*, or None if absent."""
        return self._entries.get(qualified_name)

    def snapshot(self) -> Mapping[str, ToolRegistryEntry]:
        """The current, immutable view of the registry."""
        return self._entries

    def list_tools(self) -> list[Tool]:
        """Qualified tool descriptors, from a single snapshot."""
        return [entry.tool for entry in self._entries.values()]

    def list_names(self) -> list[str]:
        """Return all qualified names."""
        return list(self._entries.keys())

    def stats(self) -> RegistryStats:
        counts: dict[str, int] = {}
        entries = self._entries
        for entry in entries.values():
            counts[entry.server_key] = counts.get(entry.server_key, 0) + 1
        return RegistryStats(total_tools=len(entries), server_counts=counts)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, qualified_name: str) -> bool:
        return qualified_name in self._entries

    # ── Population ───────────────────────────────────────────────

    async def populate(
        self,
        connections: Mapping[str, ChildConnection],
        *,
        timeout: float | None = None,
    ) -> dict[str, Exception]:
        """Query every running connection concurrently and add its tools.

        A child whose listing fails contributes nothing; the others are
        still registered.

        Returns:
            Listing failures keyed by server key.
        """
        running = [c for c in connections.values() if c.status is ChildStatus.RUNNING]
        results = await asyncio.gather(
            *(fetch_tools(conn, timeout=timeout) for conn in running),
            return_exceptions=True,
        )

        failures: dict[str, Exception] = {}
        for conn, result in zip(running, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(
                    "Failed to list tools from server '%s': %s",
                    conn.server_key,
                    result,
                )
                failures[conn.server_key] = result
                continue
            if isinstance(result, BaseException):
                raise result
            self.add_server_tools(conn, result)

        logger.info("Registry built with %d tools", len(self))
        return failures


async def fetch_tools(
    connection: ChildConnection,
    *,
    timeout: float | None = None,
) -> list[Tool]:
    """Ask one child for its full tool list, following ``nextCursor`` pages.

    *timeout* bounds the whole listing, not each page.
    """
    session = connection.session
    if session is None:
        msg = f"Server '{connection.server_key}' has no session"
        raise RuntimeError(msg)
    if timeout is None:
        return await _list_all_pages(connection.server_key, session)
    return await asyncio.wait_for(
        _list_all_pages(connection.server_key, session), timeout
    )


async def _list_all_pages(server_key: str, session: ChildSession) -> list[Tool]:
    tools: list[Tool] = []
    seen: set[str] = set()
    response = await session.list_tools()
    tools.extend(response.tools or [])
    while response.nextCursor:
        cursor = response.nextCursor
        if cursor in seen:
            logger.warning(
                "Server '%s' repeated tools/list cursor %r; stopping", server_key, cursor
            )
            break
        seen.add(cursor)
        response = await session.list_tools(cursor=cursor)
        tools.extend(response.tools or [])
    return tools


async def build_registry(
    connections: Mapping[str, ChildConnection],
    separator: str = DEFAULT_SEPARATOR,
    *,
    timeout: float | None = None,
) -> ToolRegistry:
    """Build a registry from every running connection.

    The separator is validated before any child is queried.
    """
    registry = ToolRegistry(separator)
    await registry.populate(connections, timeout=timeout)
    return registry
