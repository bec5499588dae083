"""Aggregation engine: supervise children, namespace their tools, route calls."""

from conflux.aggregator.facade import Aggregator
from conflux.aggregator.registry import (
    RegistryStats,
    ToolRegistry,
    ToolRegistryEntry,
    build_registry,
    qualify,
)
from conflux.aggregator.router import QualifiedName, Router, parse_qualified_name
from conflux.aggregator.separator import (
    DEFAULT_SEPARATOR,
    validate_separator,
    validate_server_keys,
)
from conflux.aggregator.supervisor import (
    ChildConnection,
    ChildSession,
    ChildStatus,
    SpawnResult,
    Supervisor,
)

__all__ = [
    "DEFAULT_SEPARATOR",
    "Aggregator",
    "ChildConnection",
    "ChildSession",
    "ChildStatus",
    "QualifiedName",
    "RegistryStats",
    "Router",
    "SpawnResult",
    "Supervisor",
    "ToolRegistry",
    "ToolRegistryEntry",
    "build_registry",
    "parse_qualified_name",
    "qualify",
    "validate_separator",
    "validate_server_keys",
]
