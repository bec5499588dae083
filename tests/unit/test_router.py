"""Tests for qualified-name parsing and call routing."""

from __future__ import annotations

from typing import Any

import anyio
import pytest
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, INVALID_PARAMS, ErrorData

from conflux.aggregator.registry import ToolRegistry
from conflux.aggregator.router import Router, parse_qualified_name
from conflux.aggregator.supervisor import ChildStatus
from conflux.core.errors import ChildTransportFailure, MalformedRequest, ToolNotFound
from tests.fixtures.children import FakeSession, make_tool, text_result

# ── Parsing ──────────────────────────────────────────────────────


class TestParseQualifiedName:
    def test_simple(self) -> None:
        parsed = parse_qualified_name("fs:read", ":")
        assert parsed.server_key == "fs"
        assert parsed.tool_name == "read"

    def test_splits_on_first_occurrence(self) -> None:
        parsed = parse_qualified_name("fs:read:all", ":")
        assert parsed.server_key == "fs"
        assert parsed.tool_name == "read:all"

    def test_multi_char_separator(self) -> None:
        parsed = parse_qualified_name("github__create_issue", "__")
        assert parsed.server_key == "github"
        assert parsed.tool_name == "create_issue"

    @pytest.mark.parametrize("name", ["nope", ":read", "fs:", ":", ""])
    def test_malformed(self, name: str) -> None:
        with pytest.raises(MalformedRequest, match="missing namespace qualifier"):
            parse_qualified_name(name, ":")


# ── Routing ──────────────────────────────────────────────────────


def _router(
    make_connection: Any,
    session: FakeSession,
    *,
    key: str = "fs",
    separator: str = ":",
    **kwargs: Any,
) -> tuple[Router, ToolRegistry, Any]:
    registry = ToolRegistry(separator)
    conn = make_connection(key, session)
    registry.add_server_tools(conn, session.tools)
    return Router(registry, **kwargs), registry, conn


class TestResolve:
    def test_unknown_tool(self, make_connection: Any) -> None:
        router, _, _ = _router(make_connection, FakeSession([make_tool("read")]))
        with pytest.raises(ToolNotFound) as exc_info:
            router.resolve("fs:write")
        assert exc_info.value.name == "fs:write"

    def test_unknown_server(self, make_connection: Any) -> None:
        router, _, _ = _router(make_connection, FakeSession([make_tool("read")]))
        with pytest.raises(ToolNotFound):
            router.resolve("db:read")

    def test_malformed_before_lookup(self, make_connection: Any) -> None:
        router, _, _ = _router(make_connection, FakeSession([make_tool("read")]))
        with pytest.raises(MalformedRequest):
            router.resolve("read")

    def test_crashed_owner_not_routable(self, make_connection: Any) -> None:
        router, registry, conn = _router(make_connection, FakeSession([make_tool("read")]))
        conn.status = ChildStatus.CRASHED
        assert "fs:read" in registry
        with pytest.raises(ToolNotFound):
            router.resolve("fs:read")


class TestCall:
    async def test_forwards_original_name_and_arguments(
        self, make_connection: Any
    ) -> None:
        session = FakeSession([make_tool("read")])
        router, _, _ = _router(make_connection, session)
        arguments = {"path": "/a", "opts": {"follow": True}}

        await router.call("fs:read", arguments)

        [(name, sent)] = session.call_log
        assert name == "read"
        assert sent is arguments

    async def test_result_passed_through(self, make_connection: Any) -> None:
        result = text_result("file contents")
        session = FakeSession([make_tool("read")], results={"read": result})
        router, _, _ = _router(make_connection, session)

        assert await router.call("fs:read", {"path": "/a"}) is result

    async def test_error_result_passed_through(self, make_connection: Any) -> None:
        result = text_result("permission denied", is_error=True)
        session = FakeSession([make_tool("read")], results={"read": result})
        router, _, _ = _router(make_connection, session)

        relayed = await router.call("fs:read")
        assert relayed is result
        assert relayed.isError is True

    async def test_no_arguments(self, make_connection: Any) -> None:
        session = FakeSession([make_tool("ping")])
        router, _, _ = _router(make_connection, session)
        await router.call("fs:ping")
        assert session.call_log == [("ping", None)]

    async def test_tool_name_containing_separator(self, make_connection: Any) -> None:
        session = FakeSession([make_tool("read:all")])
        router, registry, _ = _router(make_connection, session)
        assert registry.list_names() == ["fs:read:all"]

        await router.call("fs:read:all", {})

        assert session.call_log == [("read:all", {})]

    async def test_custom_separator(self, make_connection: Any) -> None:
        session = FakeSession([make_tool("create_issue")])
        router, _, _ = _router(make_connection, session, key="github", separator="__")
        await router.call("github__create_issue", {"title": "t"})
        assert session.call_log == [("create_issue", {"title": "t"})]

    async def test_unknown_tool_never_dispatches(self, make_connection: Any) -> None:
        session = FakeSession([make_tool("read")])
        router, _, _ = _router(make_connection, session)
        with pytest.raises(ToolNotFound):
            await router.call("fs:write")
        assert session.call_log == []


class TestCallErrors:
    async def test_child_protocol_error_relayed_unchanged(
        self, make_connection: Any
    ) -> None:
        error = McpError(ErrorData(code=INVALID_PARAMS, message="path required"))
        session = FakeSession([make_tool("read")], errors={"read": error})
        failures: list[tuple[str, BaseException]] = []
        router, _, conn = _router(
            make_connection,
            session,
            on_transport_failure=lambda k, e: failures.append((k, e)),
        )

        with pytest.raises(McpError) as exc_info:
            await router.call("fs:read")

        assert exc_info.value is error
        assert exc_info.value.error.code == INVALID_PARAMS
        assert failures == []
        assert conn.status is ChildStatus.RUNNING

    async def test_transport_failure(self, make_connection: Any) -> None:
        session = FakeSession([make_tool("read")], errors={"read": BrokenPipeError("EOF")})
        failures: list[tuple[str, BaseException]] = []
        router, _, _ = _router(
            make_connection,
            session,
            on_transport_failure=lambda k, e: failures.append((k, e)),
        )

        with pytest.raises(ChildTransportFailure) as exc_info:
            await router.call("fs:read")

        assert exc_info.value.server_key == "fs"
        assert "Error calling tool 'fs:read'" in exc_info.value.message
        assert "EOF" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, BrokenPipeError)
        assert [k for k, _ in failures] == ["fs"]

    async def test_transport_failure_without_message(
        self, make_connection: Any
    ) -> None:
        session = FakeSession(
            [make_tool("read")], errors={"read": anyio.ClosedResourceError()}
        )
        router, _, _ = _router(make_connection, session)

        with pytest.raises(ChildTransportFailure) as exc_info:
            await router.call("fs:read")

        assert exc_info.value.message == (
            "Error calling tool 'fs:read': ClosedResourceError"
        )

    async def test_connection_closed_is_transport_failure(
        self, make_connection: Any
    ) -> None:
        error = McpError(ErrorData(code=CONNECTION_CLOSED, message="Connection closed"))
        session = FakeSession([make_tool("read")], errors={"read": error})
        failures: list[str] = []
        router, _, _ = _router(
            make_connection,
            session,
            on_transport_failure=lambda k, e: failures.append(k),
        )

        with pytest.raises(ChildTransportFailure):
            await router.call("fs:read")
        assert failures == ["fs"]

    async def test_timeout(self, make_connection: Any) -> None:
        session = FakeSession([make_tool("slow")], call_delay=1.0)
        failures: list[str] = []
        router, _, _ = _router(
            make_connection,
            session,
            on_transport_failure=lambda k, e: failures.append(k),
            call_timeout=0.01,
        )

        with pytest.raises(ChildTransportFailure) as exc_info:
            await router.call("fs:slow")

        assert exc_info.value.timed_out is True
        assert "timed out" in exc_info.value.message
        assert failures == []

    async def test_missing_session(self, make_connection: Any) -> None:
        router, _, conn = _router(make_connection, FakeSession([make_tool("read")]))
        conn.session = None
        with pytest.raises(ToolNotFound):
            await router.call("fs:read")
