"""Tests for config loading: JSON, env var expansion, merge, validation."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from conflux.config.loader import (
    _deep_merge,
    expand_config_env_vars,
    expand_env_vars,
    load_config,
    parse_config,
)
from conflux.config.schema import AggregatorConfig, ConfluxConfig, ServerConfig
from conflux.core.errors import ConfigurationError


def _write(tmp_path: Path, data: Any, name: str = "mcp.json") -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


_BASIC = {
    "mcpServers": {
        "fs": {"command": "npx", "args": ["-y", "server-filesystem", "/tmp"]},
        "github": {"command": "gh-mcp", "env": {"TOKEN": "abc"}},
    }
}


# ── Schema ───────────────────────────────────────────────────────


class TestSchema:
    def test_aggregator_defaults(self) -> None:
        cfg = AggregatorConfig()
        assert cfg.separator == ":"
        assert cfg.name == "conflux"
        assert cfg.require_all is False
        assert cfg.call_timeout is None

    def test_server_config_defaults(self) -> None:
        cfg = ServerConfig(command="node")
        assert cfg.args == []
        assert cfg.env == {}

    def test_server_config_frozen(self) -> None:
        cfg = ServerConfig(command="node")
        with pytest.raises(ValidationError):
            cfg.command = "python"  # type: ignore[misc]

    def test_blank_command_rejected(self) -> None:
        with pytest.raises(ValidationError, match="command"):
            ServerConfig(command="  ")

    def test_alias_and_field_name(self) -> None:
        by_alias = ConfluxConfig.model_validate({"mcpServers": {"a": {"command": "x"}}})
        by_name = ConfluxConfig.model_validate({"servers": {"a": {"command": "x"}}})
        assert by_alias.servers == by_name.servers

    def test_empty_servers_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least one"):
            ConfluxConfig.model_validate({"mcpServers": {}})


# ── Env var expansion ────────────────────────────────────────────


class TestEnvExpansion:
    def test_braced(self) -> None:
        missing: list[str] = []
        assert expand_env_vars("${HOME}/x", {"HOME": "/h"}, missing) == "/h/x"
        assert missing == []

    def test_bare(self) -> None:
        missing: list[str] = []
        assert expand_env_vars("$TOKEN", {"TOKEN": "t"}, missing) == "t"

    def test_lowercase_bare_untouched(self) -> None:
        missing: list[str] = []
        assert expand_env_vars("cost $usd", {}, missing) == "cost $usd"
        assert missing == []

    def test_missing_left_as_written(self) -> None:
        missing: list[str] = []
        assert expand_env_vars("${NOPE}", {}, missing) == "${NOPE}"
        assert missing == ["NOPE"]

    def test_nested_structures(self) -> None:
        data = {"a": {"command": "$BIN", "args": ["--root", "${ROOT}"], "env": {}}}
        out = expand_config_env_vars(data, {"BIN": "/bin/x", "ROOT": "/srv"})
        assert out == {"a": {"command": "/bin/x", "args": ["--root", "/srv"], "env": {}}}

    def test_all_missing_reported(self) -> None:
        data = {"a": {"command": "$ONE", "args": ["${TWO}", "$ONE"]}}
        with pytest.raises(ConfigurationError) as exc_info:
            expand_config_env_vars(data, {})
        msg = str(exc_info.value)
        assert "Missing environment variables" in msg
        assert "ONE, TWO" in msg

    def test_non_strings_pass_through(self) -> None:
        assert expand_config_env_vars({"n": 1, "b": True, "x": None}, {}) == {
            "n": 1,
            "b": True,
            "x": None,
        }


# ── parse_config ─────────────────────────────────────────────────


class TestParseConfig:
    def test_valid(self) -> None:
        cfg = parse_config(_BASIC, env={})
        assert list(cfg.servers) == ["fs", "github"]
        assert cfg.servers["fs"].args == ["-y", "server-filesystem", "/tmp"]
        assert cfg.servers["github"].env == {"TOKEN": "abc"}

    def test_missing_servers(self) -> None:
        with pytest.raises(ConfigurationError, match="mcpServers"):
            parse_config({"aggregator": {}}, env={})

    def test_validation_error_wrapped(self) -> None:
        with pytest.raises(ConfigurationError, match="validation failed"):
            parse_config({"mcpServers": {"a": {"args": []}}}, env={})

    def test_env_expanded_only_in_servers(self) -> None:
        data = {
            "mcpServers": {"a": {"command": "$BIN"}},
            "aggregator": {"name": "$NAME"},
        }
        cfg = parse_config(data, env={"BIN": "node"})
        assert cfg.servers["a"].command == "node"
        assert cfg.aggregator.name == "$NAME"

    def test_does_not_mutate_input(self) -> None:
        data = {"mcpServers": {"a": {"command": "$BIN"}}}
        parse_config(data, env={"BIN": "node"})
        assert data["mcpServers"]["a"]["command"] == "$BIN"


# ── load_config ──────────────────────────────────────────────────


class TestLoadConfig:
    def test_load_from_path(self, tmp_path: Path) -> None:
        cfg = load_config(_write(tmp_path, _BASIC))
        assert set(cfg.servers) == {"fs", "github"}

    def test_env_fallback(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, _BASIC)
        monkeypatch.setenv("CONFLUX_CONFIG", str(path))
        cfg = load_config()
        assert "fs" in cfg.servers

    def test_no_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONFLUX_CONFIG", raising=False)
        with pytest.raises(ConfigurationError, match="No config file"):
            load_config()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "{not json")
        with pytest.raises(ConfigurationError, match="Invalid JSON") as exc_info:
            load_config(path)
        assert "mcpServers" in str(exc_info.value)

    def test_not_an_object(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="JSON object"):
            load_config(_write(tmp_path, [1, 2]))

    def test_missing_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONFLUX_TEST_TOKEN", raising=False)
        data = {"mcpServers": {"a": {"command": "x", "env": {"T": "${CONFLUX_TEST_TOKEN}"}}}}
        with pytest.raises(ConfigurationError, match="CONFLUX_TEST_TOKEN"):
            load_config(_write(tmp_path, data))

    def test_env_var_from_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CONFLUX_TEST_TOKEN", "secret")
        data = {"mcpServers": {"a": {"command": "x", "env": {"T": "${CONFLUX_TEST_TOKEN}"}}}}
        cfg = load_config(_write(tmp_path, data))
        assert cfg.servers["a"].env == {"T": "secret"}

    def test_overrides(self, tmp_path: Path) -> None:
        data = {**_BASIC, "aggregator": {"separator": ".", "name": "hub"}}
        cfg = load_config(
            _write(tmp_path, data),
            overrides={"aggregator": {"separator": "__"}},
        )
        assert cfg.aggregator.separator == "__"
        assert cfg.aggregator.name == "hub"


class TestDeepMerge:
    def test_nested(self) -> None:
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = _deep_merge(base, {"a": {"y": 3}, "c": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base == {"a": {"x": 1, "y": 2}, "b": 1}

    def test_non_dict_replaces(self) -> None:
        assert _deep_merge({"a": {"x": 1}}, {"a": 5}) == {"a": 5}
