"""Shared test fixtures for conflux."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from conflux.aggregator.supervisor import ChildConnection, ChildStatus
from conflux.config.schema import ServerConfig
from tests.fixtures.children import FakeSession


@pytest.fixture(autouse=True)
def _reset_conflux_logger() -> Any:
    """Undo handlers installed by configure_logging so caplog keeps working."""
    yield
    logger = logging.getLogger("conflux")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(command="fake-server", args=["--stdio"])


@pytest.fixture
def make_connection(server_config: ServerConfig) -> Any:
    """Factory fixture for a running ChildConnection backed by a FakeSession."""

    def _make(
        server_key: str,
        session: FakeSession | None = None,
        status: ChildStatus = ChildStatus.RUNNING,
    ) -> ChildConnection:
        return ChildConnection(
            server_key=server_key,
            config=server_config,
            status=status,
            session=session if session is not None else FakeSession(),
        )

    return _make
