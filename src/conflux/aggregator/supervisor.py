"""Child process supervision.

Each configured child runs inside its own asyncio task that holds the
connector context (process + protocol session) open for the lifetime of
the run. Entering and leaving the context in the same task keeps the
SDK's task groups happy; other components only ever see the
:class:`ChildConnection` handle.

Status transitions::

    starting ──► running ──► crashed   (unexpected exit, failed ping,
        │            │                  transport failure on a call)
        │            └─────► closed    (deliberate shutdown)
        └──────────────────► crashed   (spawn failure)

``crashed`` and ``closed`` are terminal: there is no restart.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from conflux.core.errors import ConfigurationError, SpawnFailure, SpawnPhase

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from contextlib import AbstractAsyncContextManager

    from mcp.types import CallToolResult, ListToolsResult

    from conflux.config.schema import ServerConfig

logger = logging.getLogger(__name__)


class ChildStatus(enum.StrEnum):
    """Lifecycle status of a child server."""

    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    CLOSED = "closed"


@runtime_checkable
class ChildSession(Protocol):
    """The slice of an MCP client session the aggregator relies on."""

    async def list_tools(self, cursor: str | None = None) -> ListToolsResult: ...

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> CallToolResult: ...

    async def send_ping(self) -> Any: ...

    async def wait_closed(self) -> None:
        """Return once the child stops sending, e.g. because it exited."""
        ...


if TYPE_CHECKING:
    Connector = Callable[[str, ServerConfig], AbstractAsyncContextManager[ChildSession]]


@dataclass(eq=False)
class ChildConnection:
    """Runtime handle for one spawned child."""

    server_key: str
    config: ServerConfig
    status: ChildStatus = ChildStatus.STARTING
    session: ChildSession | None = None
    error: BaseException | None = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _closing: bool = field(default=False, init=False, repr=False)

    @property
    def is_running(self) -> bool:
        return self.status is ChildStatus.RUNNING


@dataclass
class SpawnResult:
    """Outcome of :meth:`Supervisor.spawn_all`.

    ``connections`` holds every configured key, failed ones included
    (with status ``crashed``); ``failures`` holds one error per failed key.
    """

    connections: dict[str, ChildConnection] = field(default_factory=dict)
    failures: dict[str, SpawnFailure] = field(default_factory=dict)

    @property
    def running(self) -> dict[str, ChildConnection]:
        return {k: c for k, c in self.connections.items() if c.is_running}


class Supervisor:
    """Owns the authoritative set of child connections for a run."""

    def __init__(
        self,
        connector: Connector,
        *,
        startup_timeout: float = 30.0,
        ping_interval: float = 0.0,
        ping_timeout: float = 10.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._connector = connector
        self._startup_timeout = startup_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._shutdown_timeout = shutdown_timeout
        self._connections: dict[str, ChildConnection] = {}
        self._observers: dict[str, list[Callable[[str], None]]] = {}

    @property
    def connections(self) -> Mapping[str, ChildConnection]:
        return MappingProxyType(self._connections)

    def get(self, server_key: str) -> ChildConnection | None:
        return self._connections.get(server_key)

    # ── Crash observation ────────────────────────────────────────

    def observe(self, server_key: str, on_crash: Callable[[str], None]) -> None:
        """Register *on_crash* to be called once when *server_key* crashes.

        May be called before the child is spawned.
        """
        self._observers.setdefault(server_key, []).append(on_crash)

    def report_failure(self, server_key: str, error: BaseException) -> bool:
        """Mark a running child as crashed.

        Returns True if this call performed the transition, False if the
        child was unknown or already crashed/closed.
        """
        conn = self._connections.get(server_key)
        if conn is None:
            return False
        return self._mark_crashed(conn, error)

    def _mark_crashed(self, conn: ChildConnection, error: BaseException) -> bool:
        # Status check first: a second fault (including one raised from an
        # observer) finds the connection already crashed and stops here.
        if conn.status is not ChildStatus.RUNNING or conn._closing:
            return False
        conn.status = ChildStatus.CRASHED
        conn.error = error
        conn._stop.set()
        logger.error("Child server '%s' crashed: %s", conn.server_key, error)

        for callback in list(self._observers.get(conn.server_key, ())):
            try:
                callback(conn.server_key)
            except Exception:
                logger.exception("Crash observer for '%s' failed", conn.server_key)
        return True

    # ── Spawning ─────────────────────────────────────────────────

    async def spawn_all(self, configs: Mapping[str, ServerConfig]) -> SpawnResult:
        """Start every configured child concurrently.

        Waits for every attempt to settle. A failed child is recorded with
        status ``crashed`` and does not affect the others.

        Raises:
            ConfigurationError: If a key was already spawned by this
                supervisor. Nothing is started in that case.
        """
        duplicates = [key for key in configs if key in self._connections]
        if duplicates:
            msg = f"Server already spawned: {', '.join(duplicates)}"
            raise ConfigurationError(msg)

        keys = list(configs)
        outcomes = await asyncio.gather(
            *(self._spawn(key, configs[key]) for key in keys),
            return_exceptions=True,
        )

        result = SpawnResult()
        for key, outcome in zip(keys, outcomes, strict=True):
            if isinstance(outcome, SpawnFailure):
                logger.warning("Failed to start server '%s': %s", key, outcome)
                result.failures[key] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            result.connections[key] = self._connections[key]

        logger.info(
            "%d of %d child servers started",
            len(result.running),
            len(keys),
        )
        return result

    async def _spawn(self, server_key: str, config: ServerConfig) -> ChildConnection:
        conn = ChildConnection(server_key=server_key, config=config)
        self._connections[server_key] = conn

        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        conn._task = asyncio.create_task(
            self._run(conn, ready), name=f"conflux-child-{server_key}"
        )
        logger.info("Starting child server '%s'", server_key)

        try:
            await asyncio.wait_for(ready, self._startup_timeout)
        except TimeoutError:
            msg = f"Handshake timed out after {self._startup_timeout}s"
            failure = SpawnFailure(server_key, msg, SpawnPhase.INITIALIZATION)
            conn.status = ChildStatus.CRASHED
            conn.error = failure
            conn._stop.set()
            await self._cancel(conn)
            raise failure from None
        except Exception as e:
            phase = (
                SpawnPhase.STARTUP
                if isinstance(e, OSError)
                else SpawnPhase.INITIALIZATION
            )
            conn.status = ChildStatus.CRASHED
            conn.error = e
            raise SpawnFailure(server_key, f"Failed to start: {e}", phase) from e

        logger.info("Child server '%s' is running", server_key)
        return conn

    async def _run(self, conn: ChildConnection, ready: asyncio.Future[None]) -> None:
        """Hold the connector context open until stop, crash, or exit."""
        try:
            async with self._connector(conn.server_key, conn.config) as session:
                if ready.done():
                    # Startup already gave up on this child.
                    return
                conn.session = session
                conn.status = ChildStatus.RUNNING
                ready.set_result(None)
                await self._serve(conn, session)
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            elif conn._closing:
                logger.debug("Error while closing '%s': %s", conn.server_key, e)
            else:
                self._mark_crashed(conn, e)

    async def _serve(self, conn: ChildConnection, session: ChildSession) -> None:
        """Wait for stop, for the child to go away, or for a failed ping.

        Raises whatever the session reported while waiting for the child
        to close; the caller treats that as a crash.
        """
        stop = asyncio.create_task(conn._stop.wait())
        exited = asyncio.create_task(session.wait_closed())
        watchers = {stop, exited}
        if self._ping_interval > 0:
            watchers.add(asyncio.create_task(self._watchdog(conn, session)))

        try:
            await asyncio.wait(watchers, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

        if stop.done() and not stop.cancelled():
            return
        if exited.done() and not exited.cancelled():
            error = exited.exception()
            if error is not None:
                raise error
            self._mark_crashed(conn, RuntimeError("child process exited"))

    async def _watchdog(self, conn: ChildConnection, session: ChildSession) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                await asyncio.wait_for(session.send_ping(), self._ping_timeout)
            except Exception as e:
                self._mark_crashed(conn, e)
                return

    # ── Shutdown ─────────────────────────────────────────────────

    async def close(self, server_key: str) -> None:
        """Deliberately shut one child down. Errors are logged, not raised."""
        conn = self._connections.get(server_key)
        if conn is None or conn.status is ChildStatus.CLOSED:
            return
        crashed = conn.status is ChildStatus.CRASHED
        conn._closing = True
        conn._stop.set()
        await self._finish(conn)
        if not crashed:
            conn.status = ChildStatus.CLOSED
        logger.info("Child server '%s' closed", server_key)

    async def close_all(self) -> None:
        """Shut every child down concurrently."""
        await asyncio.gather(*(self.close(key) for key in list(self._connections)))

    async def _finish(self, conn: ChildConnection) -> None:
        task = conn._task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self._shutdown_timeout)
        if not done:
            logger.warning(
                "Child server '%s' did not stop within %ss; cancelling",
                conn.server_key,
                self._shutdown_timeout,
            )
            await self._cancel(conn)

    async def _cancel(self, conn: ChildConnection) -> None:
        task = conn._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
