"""
Validation and parsing of the connection section of the configuration.

The configuration object describes one connection session:

- `commands` (list, optional): setup commands launched in order. Each entry is a dict with
    - `command` (str, required): whitespace separated program and arguments.
    - `waitForPort` (int, optional): local port to wait for; 0 or absent means no wait.
- `kubeConfig` (str, required): kubeconfig path handed to the cluster client. `~` is expanded.

All validation errors raise `ConnectionConfigurationError` with a descriptive message.
"""

__all__ = [
    "validate_connection_config",
    "parse_connection_spec",
]

import logging
import os
from typing import Any

from cluster_connect._exceptions import ConnectionConfigurationError
from cluster_connect.connection import CommandSpec, ConnectionSpec

_LOGGER = logging.getLogger(__name__)

_ALLOWED_CONNECTION_FIELDS: set[str] = {"commands", "kubeConfig"}
"""Top-level keys allowed in the connection configuration."""

_REQUIRED_CONNECTION_FIELDS: set[str] = {"kubeConfig"}
"""Top-level keys that must be present in the connection configuration."""

_ALLOWED_COMMAND_FIELDS: set[str] = {"command", "waitForPort"}
"""Keys allowed in each entry of `commands`."""

_MAX_PORT = 65535


def _validate_command_entry(index: int, entry: Any) -> None:
    if not isinstance(entry, dict):
        raise ConnectionConfigurationError(
            f"'commands[{index}]' must be a dictionary, got {type(entry).__name__}"
        )

    unknown = set(entry) - _ALLOWED_COMMAND_FIELDS
    if unknown:
        raise ConnectionConfigurationError(
            f"Unknown field(s) in 'commands[{index}]': {sorted(unknown)}"
        )

    command = entry.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ConnectionConfigurationError(
            f"'commands[{index}].command' must be a non-empty string"
        )

    if "waitForPort" in entry:
        port = entry["waitForPort"]
        # bool is an int subclass; reject it explicitly
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConnectionConfigurationError(
                f"'commands[{index}].waitForPort' must be an integer, got {type(port).__name__}"
            )
        if not 0 <= port <= _MAX_PORT:
            raise ConnectionConfigurationError(
                f"'commands[{index}].waitForPort' must be between 0 and {_MAX_PORT}, got {port}"
            )


def validate_connection_config(config: Any) -> None:
    """
    Validate a connection configuration object.

    Args:
        config (Any): The parsed configuration (expected to be a dict).

    Raises:
        ConnectionConfigurationError: If the object is not a dict, required keys are missing,
            unknown keys are present, or any field has the wrong type or range.

    Example:
        >>> validate_connection_config(
        ...     {"commands": [{"command": "kubectl proxy", "waitForPort": 8001}], "kubeConfig": "kc"}
        ... )
    """
    if not isinstance(config, dict):
        raise ConnectionConfigurationError(
            f"Connection configuration must be a dictionary, got {type(config).__name__}"
        )

    missing = _REQUIRED_CONNECTION_FIELDS - set(config)
    if missing:
        raise ConnectionConfigurationError(
            f"Missing required field(s) in connection configuration: {sorted(missing)}"
        )

    unknown = set(config) - _ALLOWED_CONNECTION_FIELDS
    if unknown:
        raise ConnectionConfigurationError(
            f"Unknown field(s) in connection configuration: {sorted(unknown)}"
        )

    kube_config = config["kubeConfig"]
    if not isinstance(kube_config, str) or not kube_config.strip():
        raise ConnectionConfigurationError("'kubeConfig' must be a non-empty string")

    commands = config.get("commands", [])
    if commands is None:
        commands = []
    if not isinstance(commands, list):
        raise ConnectionConfigurationError(
            f"'commands' must be a list, got {type(commands).__name__}"
        )
    for index, entry in enumerate(commands):
        _validate_command_entry(index, entry)

    _LOGGER.debug(
        f"[_connection:validate_connection_config] Connection configuration is valid "
        f"({len(commands)} command(s))"
    )


def parse_connection_spec(config: dict[str, Any]) -> ConnectionSpec:
    """
    Build a ConnectionSpec from a connection configuration object.

    The configuration is validated first. Command lines are whitespace-trimmed, a
    `waitForPort` of 0 becomes None, and `~` in `kubeConfig` is expanded.

    Args:
        config (dict[str, Any]): The parsed connection configuration.

    Returns:
        ConnectionSpec: The immutable startup recipe.

    Raises:
        ConnectionConfigurationError: If the configuration is invalid.
    """
    validate_connection_config(config)
    commands = tuple(
        CommandSpec(
            command_line=entry["command"].strip(),
            wait_for_port=entry.get("waitForPort") or None,
        )
        for entry in config.get("commands") or []
    )
    return ConnectionSpec(
        kube_config_path=os.path.expanduser(config["kubeConfig"].strip()),
        commands=commands,
    )
