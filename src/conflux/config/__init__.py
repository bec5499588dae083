"""Configuration loading and validation."""

from conflux.config.loader import load_config, parse_config
from conflux.config.schema import (
    AggregatorConfig,
    ConfluxConfig,
    LoggingConfig,
    ServerConfig,
)

__all__ = [
    "AggregatorConfig",
    "ConfluxConfig",
    "LoggingConfig",
    "ServerConfig",
    "load_config",
    "parse_config",
]
