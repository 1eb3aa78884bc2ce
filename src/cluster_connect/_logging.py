"""
Logging and global exception handling utilities for cluster-connect.

This module provides functions to:
- Configure the root logger early in process startup (`setup_logging`).
- Ensure unhandled synchronous and asynchronous exceptions are logged (`setup_global_exception_logging`).

Command output captured from setup commands is logged at DEBUG, so run with
`CLUSTER_CONNECT_LOG_LEVEL=DEBUG` to see what a tunnel or proxy printed while starting.
With `CLUSTER_CONNECT_LOG_FORMAT=json` every record is written as one JSON object, including
the structured `command`, `line`, `port` and `returncode` fields attached by the session code.
"""

import asyncio
import logging
import os
import sys
from types import TracebackType
from typing import Any

from pythonjsonlogger import json as jsonlogger

_LOGGER = logging.getLogger(__name__)

LOG_LEVEL_ENV_VAR = "CLUSTER_CONNECT_LOG_LEVEL"
"""str: Environment variable consulted for the log level before PYTHONLOGLEVEL."""

LOG_FORMAT_ENV_VAR = "CLUSTER_CONNECT_LOG_FORMAT"
"""str: Environment variable selecting the log format, "text" (default) or "json"."""

LOG_FORMATS = ("text", "json")

_TEXT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def _resolve_log_level(level: str | None) -> str:
    if level:
        return level.upper()
    return (
        os.getenv(LOG_LEVEL_ENV_VAR) or os.getenv("PYTHONLOGLEVEL") or "INFO"
    ).upper()


def _resolve_log_format(log_format: str | None) -> str:
    resolved = (log_format or os.getenv(LOG_FORMAT_ENV_VAR) or "text").lower()
    if resolved not in LOG_FORMATS:
        raise ValueError(
            f"Unknown log format '{resolved}', expected one of: {', '.join(LOG_FORMATS)}"
        )
    return resolved


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Set up logging configuration for the application.

    The level is taken from the `level` argument, then the CLUSTER_CONNECT_LOG_LEVEL
    environment variable, then PYTHONLOGLEVEL, and defaults to INFO. The format is taken
    from `log_format`, then CLUSTER_CONNECT_LOG_FORMAT, and defaults to "text". Logs go to
    stderr so that stdout stays free for the kubeconfig path printed by the CLI.

    Args:
        level (str | None): Explicit log level name (e.g. "DEBUG"), or None to use the environment.
        log_format (str | None): "text" or "json", or None to use the environment.

    Raises:
        ValueError: If the resolved log format is not one of LOG_FORMATS.
    """
    resolved_level = _resolve_log_level(level)

    if _resolve_log_format(log_format) == "json":
        json_handler = logging.StreamHandler(sys.stderr)
        json_handler.setFormatter(
            jsonlogger.JsonFormatter(
                fmt=_JSON_FORMAT,
                datefmt="%Y-%m-%dT%H:%M:%S%z",
            )
        )
        logging.basicConfig(level=resolved_level, handlers=[json_handler], force=True)
        return

    logging.basicConfig(
        level=resolved_level,
        format=_TEXT_FORMAT,
        stream=sys.stderr,
        force=True,  # Override any configuration installed by imported libraries
    )


# Idempotency guard for global exception logging setup
_EXC_LOGGING_INSTALLED = False


def _log_unhandled_exception(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        # Ctrl-C is the normal way to end a session
        return
    _LOGGER.critical(
        f"[_logging:excepthook] Unhandled exception: {exc_type.__name__}: {exc_value}",
        exc_info=(exc_type, exc_value, exc_traceback),
    )


def _describe_source(context: dict[str, Any]) -> str | None:
    """Name of the task or future an asyncio error context refers to, if any."""
    source = context.get("task") or context.get("future")
    if isinstance(source, asyncio.Task):
        return source.get_name()
    return None


def _log_unhandled_async_exception(
    loop: asyncio.AbstractEventLoop, context: dict[str, Any]
) -> None:
    exception = context.get("exception")
    source = _describe_source(context)
    # Session tasks are named "output:<command line>" / "completion:<command line>"
    where = f" in task '{source}'" if source else ""
    _LOGGER.error(
        f"[_logging:asyncio] Unhandled exception{where}: {context.get('message')}",
        exc_info=(
            (type(exception), exception, exception.__traceback__)
            if exception is not None
            else None
        ),
        extra={"task": source},
    )


def setup_global_exception_logging() -> None:
    """
    Log every unhandled exception, synchronous or asynchronous.

    Installs a `sys.excepthook` and an asyncio exception handler. The handler is set on
    the running event loop if there is one, and on every loop created afterwards through
    `asyncio.new_event_loop`. A background task of a setup command (output pump, completion
    watcher) that fails without being awaited is logged with its task name, which carries
    the command line.

    Calling this more than once has no further effect.
    """
    global _EXC_LOGGING_INSTALLED
    if _EXC_LOGGING_INSTALLED:
        return
    _EXC_LOGGING_INSTALLED = True

    sys.excepthook = _log_unhandled_exception

    original_new_event_loop = asyncio.new_event_loop

    def _new_event_loop_with_handler(
        *args: Any, **kwargs: Any
    ) -> asyncio.AbstractEventLoop:
        loop = original_new_event_loop(*args, **kwargs)
        loop.set_exception_handler(_log_unhandled_async_exception)
        return loop

    asyncio.new_event_loop = _new_event_loop_with_handler

    try:
        asyncio.get_running_loop().set_exception_handler(_log_unhandled_async_exception)
    except RuntimeError:
        # No running loop; loops created later get the handler from new_event_loop
        pass
