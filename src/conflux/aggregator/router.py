"""Request routing from a qualified tool name to the owning child.

Each call runs parse, resolve, dispatch and relay in order. The registry
key is authoritative: the parsed server key is only used for diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED

from conflux.aggregator.supervisor import ChildStatus
from conflux.core.errors import ChildTransportFailure, MalformedRequest, ToolNotFound

if TYPE_CHECKING:
    from collections.abc import Callable

    from mcp.types import CallToolResult

    from conflux.aggregator.registry import ToolRegistry, ToolRegistryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QualifiedName:
    """A qualified tool name split on the first separator."""

    server_key: str
    tool_name: str


def parse_qualified_name(name: str, separator: str) -> QualifiedName:
    """Split *name* on the first occurrence of *separator*.

    The remainder keeps any further separators, so original tool names
    that contain the separator survive intact.

    Raises:
        MalformedRequest: If the separator is absent or either side is empty.
    """
    server_key, found, tool_name = name.partition(separator)
    if not found or not server_key or not tool_name:
        msg = (
            f"Invalid tool name format: missing namespace qualifier. "
            f"Expected 'serverKey{separator}toolName', got '{name}'"
        )
        raise MalformedRequest(msg)
    return QualifiedName(server_key=server_key, tool_name=tool_name)


class Router:
    """Routes tool calls to the child that owns them.

    Args:
        registry: The live tool registry.
        on_transport_failure: Called with ``(server_key, error)`` when
            talking to a child breaks mid-call; the supervisor uses it to
            crash the child and drop its tools.
        call_timeout: Optional deadline in seconds for each dispatch.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        on_transport_failure: Callable[[str, BaseException], object] | None = None,
        call_timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._on_transport_failure = on_transport_failure
        self._call_timeout = call_timeout

    def resolve(self, qualified_name: str) -> ToolRegistryEntry:
        """Parse and look up *qualified_name*.

        Raises:
            MalformedRequest: No namespace qualifier.
            ToolNotFound: Not registered, or its owner is no longer running.
        """
        parse_qualified_name(qualified_name, self._registry.separator)
        entry = self._registry.lookup(qualified_name)
        # A crashed owner routes nowhere, even while its entries linger.
        if entry is None or entry.connection.status is not ChildStatus.RUNNING:
            raise ToolNotFound(qualified_name)
        return entry

    async def call(
        self,
        qualified_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Invoke *qualified_name* on its owning child.

        The child's result is returned as-is, and an ``McpError`` the
        child reports is re-raised as the same object. Any other failure
        becomes a :class:`ChildTransportFailure`.
        """
        entry = self.resolve(qualified_name)
        logger.debug(
            "Routing %s to server '%s' as '%s'",
            qualified_name,
            entry.server_key,
            entry.original_name,
        )
        return await self._dispatch(entry, arguments)

    async def _dispatch(
        self,
        entry: ToolRegistryEntry,
        arguments: dict[str, Any] | None,
    ) -> CallToolResult:
        session = entry.connection.session
        if session is None:
            raise ToolNotFound(entry.qualified_name)

        try:
            if self._call_timeout is None:
                return await session.call_tool(entry.original_name, arguments)
            return await asyncio.wait_for(
                session.call_tool(entry.original_name, arguments),
                self._call_timeout,
            )
        except McpError as e:
            if e.error.code != CONNECTION_CLOSED:
                raise
            failure: Exception = e
        except TimeoutError as e:
            msg = (
                f"Error calling tool '{entry.qualified_name}': "
                f"timed out after {self._call_timeout}s"
            )
            raise ChildTransportFailure(entry.server_key, msg, timed_out=True) from e
        except Exception as e:
            failure = e

        if self._on_transport_failure is not None:
            self._on_transport_failure(entry.server_key, failure)
        detail = str(failure) or type(failure).__name__
        msg = f"Error calling tool '{entry.qualified_name}': {detail}"
        raise ChildTransportFailure(entry.server_key, msg) from failure
