"""Default connector: spawn a child over stdio and open an MCP session."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

import anyio
from anyio.abc import ObjectReceiveStream
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import Implementation

from conflux import __version__

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from conflux.config.schema import ServerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def child_environment(
    config: ServerConfig,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """The process environment overlaid with the server's ``env``."""
    env = dict(os.environ if base is None else base)
    env.update(config.env)
    return env


def server_parameters(config: ServerConfig) -> StdioServerParameters:
    return StdioServerParameters(
        command=config.command,
        args=list(config.args),
        env=child_environment(config),
    )


class WatchedReceiveStream(ObjectReceiveStream[T]):
    """Receive stream that sets *closed* once the sending side is gone.

    The stdio transport closes its end when the child's stdout reaches
    EOF, which is how a child that exits on its own becomes visible.
    """

    def __init__(self, inner: ObjectReceiveStream[T], closed: anyio.Event) -> None:
        self._inner = inner
        self._closed = closed

    async def receive(self) -> T:
        try:
            return await self._inner.receive()
        except (anyio.EndOfStream, anyio.BrokenResourceError, anyio.ClosedResourceError):
            self._closed.set()
            raise

    async def aclose(self) -> None:
        self._closed.set()
        await self._inner.aclose()


class ChildClientSession(ClientSession):
    """``ClientSession`` that can wait for its child to go away."""

    def __init__(
        self,
        read_stream: ObjectReceiveStream[Any],
        write_stream: Any,
        **kwargs: Any,
    ) -> None:
        self._child_closed = anyio.Event()
        super().__init__(
            WatchedReceiveStream(read_stream, self._child_closed),  # type: ignore[arg-type]
            write_stream,
            **kwargs,
        )

    async def wait_closed(self) -> None:
        await self._child_closed.wait()


@asynccontextmanager
async def stdio_connector(
    server_key: str,
    config: ServerConfig,
) -> AsyncIterator[ChildClientSession]:
    """Spawn *config*'s command and yield an initialized session.

    Leaving the context closes the session and terminates the process.
    """
    logger.debug(
        "Spawning '%s': %s %s", server_key, config.command, " ".join(config.args)
    )
    async with stdio_client(server_parameters(config)) as (read_stream, write_stream):
        async with ChildClientSession(
            read_stream,
            write_stream,
            client_info=Implementation(
                name=f"conflux-client-{server_key}", version=__version__
            ),
        ) as session:
            init = await session.initialize()
            logger.debug(
                "Handshake with '%s' done (server %s %s)",
                server_key,
                init.serverInfo.name,
                init.serverInfo.version,
            )
            yield session
