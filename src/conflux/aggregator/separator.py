"""Validation of the namespace separator."""

from __future__ import annotations

from typing import TYPE_CHECKING

from conflux.core.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable

DEFAULT_SEPARATOR = ":"


def validate_separator(separator: object) -> str:
    """Return *separator* if it is a usable namespace delimiter.

    Must be a non-empty string with no whitespace anywhere in it.

    Raises:
        ConfigurationError: Naming the rejected value.
    """
    if not isinstance(separator, str) or not separator:
        msg = f"Invalid separator {separator!r}: must be a non-empty string"
        raise ConfigurationError(msg)
    if any(ch.isspace() for ch in separator):
        msg = f"Invalid separator {separator!r}: must not contain whitespace"
        raise ConfigurationError(msg)
    return separator


def validate_server_keys(server_keys: Iterable[str], separator: str) -> None:
    """Reject server keys that would make qualified names ambiguous."""
    for key in server_keys:
        if not key:
            msg = "Server keys must be non-empty"
            raise ConfigurationError(msg)
        if separator in key:
            msg = (
                f"Server key {key!r} contains the separator {separator!r}; "
                "qualified tool names would be ambiguous"
            )
            raise ConfigurationError(msg)
