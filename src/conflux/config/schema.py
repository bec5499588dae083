"""Pydantic models for conflux configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ServerConfig(BaseModel):
    """Launch specification for a single child MCP server."""

    model_config = ConfigDict(frozen=True)

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "command must be a non-empty string"
            raise ValueError(msg)
        return value


class AggregatorConfig(BaseModel):
    """Aggregation engine settings."""

    separator: str = ":"
    name: str = "conflux"
    startup_timeout: float = 30.0
    list_tools_timeout: float = 30.0
    call_timeout: float | None = None
    ping_interval: float = 30.0
    ping_timeout: float = 10.0
    shutdown_timeout: float = 5.0
    require_all: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    file: str = ""
    structured: bool = False


class ConfluxConfig(BaseModel):
    """Top-level configuration for conflux.

    ``mcpServers`` is the key used by desktop MCP clients, so existing
    client configs load unchanged.
    """

    model_config = ConfigDict(populate_by_name=True)

    servers: dict[str, ServerConfig] = Field(alias="mcpServers")
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("servers")
    @classmethod
    def _servers_present(
        cls, value: dict[str, ServerConfig]
    ) -> dict[str, ServerConfig]:
        if not value:
            msg = "mcpServers must contain at least one server"
            raise ValueError(msg)
        for key in value:
            if not key.strip():
                msg = "server keys must be non-empty"
                raise ValueError(msg)
        return value
