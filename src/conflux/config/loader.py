"""Configuration loading: JSON file, env var expansion, merge logic.

Resolution order for the config file:
    1. Explicit path passed to ``load_config``
    2. ``$CONFLUX_CONFIG`` environment variable

Every string inside ``mcpServers`` may reference environment variables
as ``${VAR}`` or ``$VAR``. All missing variables are reported at once.
Programmatic overrides (CLI flags) are merged last.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from conflux.core.errors import ConfigurationError

from .schema import ConfluxConfig

if TYPE_CHECKING:
    from collections.abc import Mapping

_ENV_REF = re.compile(r"\$\{([^}]+)\}|\$([A-Z_][A-Z0-9_]*)")

_EXAMPLE = """{
  "mcpServers": {
    "filesystem": {
      "command": "npx",
      "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
    }
  }
}"""


def _resolve_path(path: str | Path | None) -> Path:
    """Pick the config file to load."""
    if path is None:
        env_path = os.environ.get("CONFLUX_CONFIG")
        if not env_path:
            msg = "No config file given. Use --config or set CONFLUX_CONFIG."
            raise ConfigurationError(msg)
        path = env_path
    p = Path(path).expanduser()
    if not p.is_file():
        msg = f"Config file not found: {path}"
        raise ConfigurationError(msg)
    return p


def _read_json(path: Path) -> dict[str, Any]:
    """Read and parse a JSON config file."""
    try:
        with path.open("rb") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        msg = f"Invalid JSON in {path}: {e}\n\nExample of a valid config:\n{_EXAMPLE}"
        raise ConfigurationError(msg) from e
    except OSError as e:
        msg = f"Cannot read config file {path}: {e}"
        raise ConfigurationError(msg) from e
    if not isinstance(data, dict):
        msg = f"Config in {path} must be a JSON object"
        raise ConfigurationError(msg)
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override wins on conflicts."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def expand_env_vars(value: str, env: Mapping[str, str], missing: list[str]) -> str:
    """Expand ``${VAR}``/``$VAR`` references in *value*.

    Unknown names are appended to *missing* and left as written.
    """

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if name not in env:
            missing.append(name)
            return match.group(0)
        return env[name]

    return _ENV_REF.sub(_sub, value)


def expand_config_env_vars(obj: Any, env: Mapping[str, str] | None = None) -> Any:
    """Recursively expand env references in every string of *obj*.

    Raises:
        ConfigurationError: Naming every variable that is not set.
    """
    environ = os.environ if env is None else env
    missing: list[str] = []

    def _walk(node: Any) -> Any:
        if isinstance(node, str):
            return expand_env_vars(node, environ, missing)
        if isinstance(node, list):
            return [_walk(item) for item in node]
        if isinstance(node, dict):
            return {key: _walk(item) for key, item in node.items()}
        return node

    expanded = _walk(obj)
    if missing:
        names = ", ".join(dict.fromkeys(missing))
        plural = "s" if len(set(missing)) > 1 else ""
        msg = f"Missing environment variable{plural}: {names}"
        raise ConfigurationError(msg)
    return expanded


def parse_config(
    data: dict[str, Any],
    env: Mapping[str, str] | None = None,
) -> ConfluxConfig:
    """Expand and validate an already-decoded config mapping."""
    if "mcpServers" not in data and "servers" not in data:
        msg = "Missing required field: mcpServers"
        raise ConfigurationError(msg)

    data = dict(data)
    key = "mcpServers" if "mcpServers" in data else "servers"
    data[key] = expand_config_env_vars(data[key], env)

    try:
        return ConfluxConfig.model_validate(data)
    except ValidationError as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigurationError(msg) from e


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ConfluxConfig:
    """Load and validate configuration.

    Args:
        path: Config file path. Falls back to ``$CONFLUX_CONFIG``.
        overrides: Dict of overrides merged last (highest priority).

    Returns:
        Validated ConfluxConfig instance.

    Raises:
        ConfigurationError: On a missing file, invalid JSON, a missing
            environment variable, or validation failure.
    """
    data = _read_json(_resolve_path(path))

    if overrides:
        data = _deep_merge(data, overrides)

    return parse_config(data)
