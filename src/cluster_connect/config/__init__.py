"""
Async cluster-connect configuration management.

This module loads, validates and caches the connection configuration from a JSON or YAML
file. The file path comes from the CLUSTER_CONNECT_CONFIG_FILE environment variable (or
is passed explicitly by the CLI). Files are read with aiofiles so loading never blocks
the event loop.

Configuration Schema:
---------------------
The file must contain a single object with these keys:

  - `commands` (list, optional): Setup commands launched in order. Each entry is an object:
        - `command` (str, required): Program and arguments separated by whitespace. Quoting
          is not supported, so arguments cannot contain spaces.
        - `waitForPort` (int, optional): Local TCP port that must accept connections before
          the next command is launched. `0` or absent means no wait.
  - `kubeConfig` (str, required): Path of the kubeconfig the cluster client uses once the
    session is ready. A leading `~` is expanded.

Unknown keys fail validation.

Example Valid Configuration (YAML):
-----------------------------------
```yaml
commands:
  - command: ssh -N -v -L 6443:10.0.0.1:6443 bastion.example.com
    waitForPort: 6443
  - command: kubectl proxy --port 8001 --kubeconfig /home/me/.kube/tunnel.yaml
    waitForPort: 8001
kubeConfig: ~/.kube/tunnel.yaml
```

Example Valid Configuration (JSON):
-----------------------------------
```json
{"commands": [{"command": "kubectl proxy", "waitForPort": 8001}], "kubeConfig": "/tmp/kc"}
```

Format Detection:
-----------------
Files ending in `.yaml` or `.yml` are parsed with PyYAML (`safe_load`); everything else is
parsed as JSON.

Environment Variables:
---------------------
- `CLUSTER_CONNECT_CONFIG_FILE`: Path to the configuration file.
"""

__all__ = [
    "ConfigManager",
    "CONFIG_ENV_VAR",
    "get_config_path",
    "load_and_validate_config",
    "validate_config",
    "validate_connection_config",
    "parse_connection_spec",
]

import asyncio
import json
import logging
import os
from typing import Any, cast

import aiofiles
import yaml

from cluster_connect._exceptions import (
    ConfigurationError,
    ConnectionConfigurationError,
)
from cluster_connect.connection import ConnectionSpec

from ._connection import parse_connection_spec, validate_connection_config

_LOGGER = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CLUSTER_CONNECT_CONFIG_FILE"
"""
str: Name of the environment variable specifying the path to the configuration file.
"""

_YAML_SUFFIXES = (".yaml", ".yml")


class ConfigManager:
    """
    Async configuration manager for cluster-connect.

    Loads the configuration once, validates it and caches the result behind an
    asyncio.Lock so concurrent callers share a single read.
    """

    def __init__(self, config_path: str | None = None) -> None:
        """
        Initialize a new ConfigManager.

        Args:
            config_path (str | None): Explicit configuration file path. When None, the path is
                read from CLUSTER_CONNECT_CONFIG_FILE on first load.
        """
        self._config_path = config_path
        self._cache: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def clear_config_cache(self) -> None:
        """
        Clear the cached configuration (coroutine-safe).

        The next access reloads the file from disk.
        """
        _LOGGER.debug("Clearing cluster-connect configuration cache...")
        async with self._lock:
            self._cache = None
        _LOGGER.debug("Configuration cache cleared.")

    async def _set_config_cache(self, config: dict[str, Any]) -> None:
        """
        PRIVATE: Inject a configuration dictionary, bypassing file I/O (for tests).

        Args:
            config (dict[str, Any]): The configuration to cache. It is validated first.

        Raises:
            ConnectionConfigurationError: If the configuration is invalid.
        """
        async with self._lock:
            self._cache = validate_config(config)

    async def get_config(self) -> dict[str, Any]:
        """
        Load and validate the configuration (coroutine-safe, cached).

        Returns:
            dict[str, Any]: The validated configuration dictionary.

        Raises:
            ConfigurationError: If no path is configured, or the file cannot be read, parsed
                or validated.
        """
        _LOGGER.debug("Loading cluster-connect configuration...")
        async with self._lock:
            if self._cache is not None:
                _LOGGER.debug("Using cached cluster-connect configuration.")
                return self._cache

            config_path = self._config_path or get_config_path()
            validated = await load_and_validate_config(config_path)
            self._cache = validated
            _log_config_summary(validated)
            return validated

    async def get_connection_spec(self) -> ConnectionSpec:
        """
        Return the configured connection session recipe.

        Returns:
            ConnectionSpec: The parsed commands and kubeconfig path.

        Raises:
            ConfigurationError: If the configuration cannot be loaded or is invalid.
        """
        return parse_connection_spec(await self.get_config())


def get_config_path() -> str:
    """
    Retrieve the configuration file path from the environment.

    Returns:
        str: The value of CLUSTER_CONNECT_CONFIG_FILE.

    Raises:
        ConfigurationError: If the environment variable is not set.
    """
    if CONFIG_ENV_VAR not in os.environ:
        _LOGGER.error(f"Environment variable {CONFIG_ENV_VAR} is not set.")
        raise ConfigurationError(f"Environment variable {CONFIG_ENV_VAR} is not set.")
    config_path = os.environ[CONFIG_ENV_VAR]
    _LOGGER.info(f"Environment variable {CONFIG_ENV_VAR} is set to: {config_path}")
    return config_path


def _parse_config_text(config_path: str, content: str) -> Any:
    if config_path.lower().endswith(_YAML_SUFFIXES):
        return yaml.safe_load(content)
    return json.loads(content)


async def _load_config_from_file(config_path: str) -> dict[str, Any]:
    """
    Read and parse the configuration file asynchronously.

    Args:
        config_path (str): Path to a JSON or YAML configuration file.

    Returns:
        dict[str, Any]: The parsed configuration.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or not valid JSON/YAML.
    """
    try:
        async with aiofiles.open(config_path) as f:
            content = await f.read()
        return cast(dict[str, Any], _parse_config_text(config_path, content))
    except FileNotFoundError:
        _LOGGER.error(f"Configuration file not found: {config_path}")
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except PermissionError:
        _LOGGER.error(
            f"Permission denied when trying to read configuration file: {config_path}"
        )
        raise ConfigurationError(
            f"Permission denied when trying to read configuration file: {config_path}"
        ) from None
    except json.JSONDecodeError as e:
        _LOGGER.error(f"Invalid JSON in configuration file {config_path}: {e}")
        raise ConfigurationError(
            f"Invalid JSON in configuration file {config_path}: {e}"
        ) from e
    except yaml.YAMLError as e:
        _LOGGER.error(f"Invalid YAML in configuration file {config_path}: {e}")
        raise ConfigurationError(
            f"Invalid YAML in configuration file {config_path}: {e}"
        ) from e
    except Exception as e:
        _LOGGER.error(
            f"Unexpected error loading or parsing config file {config_path}: {e}"
        )
        raise ConfigurationError(
            f"Unexpected error loading or parsing config file {config_path}: {e}"
        ) from e


async def load_and_validate_config(config_path: str) -> dict[str, Any]:
    """
    Load and validate the configuration file.

    Args:
        config_path (str): Path to the configuration file.

    Returns:
        dict[str, Any]: The validated configuration.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or fails validation.
            Validation failures are raised as ConnectionConfigurationError.
    """
    data = await _load_config_from_file(config_path)
    try:
        return validate_config(data)
    except ConnectionConfigurationError as e:
        _LOGGER.error(f"Configuration validation failed for {config_path}: {e}")
        raise


def _log_config_summary(config: dict[str, Any]) -> None:
    commands = config.get("commands") or []
    _LOGGER.info(f"Configured kubeconfig: {config['kubeConfig']}")
    if not commands:
        _LOGGER.info("No connection commands configured.")
        return
    _LOGGER.info("Configured connection commands:")
    for index, entry in enumerate(commands, start=1):
        port = entry.get("waitForPort") or "no wait"
        _LOGGER.info(f"  {index}. {entry['command']} (port: {port})")


def validate_config(config: Any) -> dict[str, Any]:
    """
    Validate the configuration object.

    Args:
        config (Any): The parsed configuration.

    Returns:
        dict[str, Any]: The same configuration, once validated.

    Raises:
        ConnectionConfigurationError: If the configuration is invalid.
    """
    validate_connection_config(config)
    _LOGGER.info("Configuration validation passed.")
    return cast(dict[str, Any], config)
