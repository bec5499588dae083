"""Exception hierarchy for conflux.

Every module imports from here. The hierarchy is:

    ConfluxError
    ├── ConfigurationError
    ├── ChildError(server_key)
    │   └── SpawnFailure(phase)
    └── RoutingError(code)
        ├── MalformedRequest
        ├── ToolNotFound(name)
        └── ChildTransportFailure(server_key)

Errors a child server reports for an invocation are not wrapped: they
surface as the SDK's own ``McpError`` and are relayed untouched.
"""

from __future__ import annotations

import enum

from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND, ErrorData


class ConfluxError(Exception):
    """Base exception for all conflux errors."""


# ─── Configuration Errors ─────────────────────────────────────


class ConfigurationError(ConfluxError):
    """Invalid configuration: bad separator, server definitions, or file."""


# ─── Child Errors ─────────────────────────────────────────────


class SpawnPhase(enum.StrEnum):
    """Where in the startup sequence a child failed."""

    STARTUP = "startup"
    INITIALIZATION = "initialization"


class ChildError(ConfluxError):
    """Base for errors tied to a single child server."""

    def __init__(self, server_key: str, message: str) -> None:
        self.server_key = server_key
        super().__init__(f"[{server_key}] {message}")


class SpawnFailure(ChildError):
    """A child failed to start. Isolated to its server key."""

    def __init__(
        self,
        server_key: str,
        message: str,
        phase: SpawnPhase = SpawnPhase.STARTUP,
    ) -> None:
        self.phase = phase
        super().__init__(server_key, message)


# ─── Routing Errors ───────────────────────────────────────────


class RoutingError(ConfluxError):
    """Per-request failure with a JSON-RPC error classification."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_error_data(self) -> ErrorData:
        """Protocol-shaped form of this error."""
        return ErrorData(code=self.code, message=self.message)


class MalformedRequest(RoutingError):
    """Qualified tool name without a namespace qualifier."""

    code = INVALID_REQUEST


class ToolNotFound(RoutingError):
    """Well-formed qualified name that is not in the registry."""

    code = METHOD_NOT_FOUND

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool not found: {name}")


class ChildTransportFailure(RoutingError):
    """Communication with a child broke during a call.

    Carries the original message as context. ``timed_out`` marks a
    caller-supplied deadline expiring, which does not crash the child.
    """

    code = INTERNAL_ERROR

    def __init__(
        self,
        server_key: str,
        message: str,
        *,
        timed_out: bool = False,
    ) -> None:
        self.server_key = server_key
        self.timed_out = timed_out
        super().__init__(message)
