"""Core errors and shared utilities."""

from conflux.core.errors import (
    ChildError,
    ChildTransportFailure,
    ConfigurationError,
    ConfluxError,
    MalformedRequest,
    RoutingError,
    SpawnFailure,
    SpawnPhase,
    ToolNotFound,
)
from conflux.core.logs import configure_logging

__all__ = [
    "ChildError",
    "ChildTransportFailure",
    "ConfigurationError",
    "ConfluxError",
    "MalformedRequest",
    "RoutingError",
    "SpawnFailure",
    "SpawnPhase",
    "ToolNotFound",
    "configure_logging",
]
