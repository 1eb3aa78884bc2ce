"""
CLI entrypoint for cluster-connect.

Subcommands:
    connect    Start the configured connection session, print the kubeconfig path and keep the
               session up until SIGINT/SIGTERM. With a client command after `--`, run it with
               KUBECONFIG set instead and exit with its status. Setup commands still running
               on exit are terminated (SIGTERM, then SIGKILL).
    free-port  Print a free local TCP port.

Example:
    cluster-connect connect -c ~/.config/cluster-connect/prod.yaml -- kubectl get pods
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from ._exceptions import (
    ConfigurationError,
    PortAllocationError,
    SessionCancelledError,
    SessionError,
)
from ._logging import LOG_FORMATS, setup_global_exception_logging, setup_logging
from .config import CONFIG_ENV_VAR, ConfigManager
from .connection import ConnectionManager, find_available_port

_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CLIENT_NOT_FOUND = 127
EXIT_CANCELLED = 130

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(
    manager: ConnectionManager, shutdown: asyncio.Event
) -> list[asyncio.Task[None]]:
    """Route SIGINT/SIGTERM to the session's stop(); returns the list that holds stop tasks."""
    loop = asyncio.get_running_loop()
    stop_tasks: list[asyncio.Task[None]] = []

    def _on_signal(signum: int) -> None:
        _LOGGER.warning(f"Received {signal.Signals(signum).name}, stopping connection session")
        shutdown.set()
        stop_tasks.append(asyncio.ensure_future(manager.stop()))

    for signum in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(signum, _on_signal, signum)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            _LOGGER.debug(f"Signal handler for {signum} not supported on this platform")
    return stop_tasks


async def _run_client(
    client_args: list[str], kube_config: str, shutdown: asyncio.Event
) -> int:
    """
    Run the cluster client with KUBECONFIG pointing at the session's kubeconfig.

    A shutdown signal received while the client runs is passed on to it as SIGTERM.
    """
    _LOGGER.info(f"Running client: {' '.join(client_args)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *client_args, env={**os.environ, "KUBECONFIG": kube_config}
        )
    except OSError as e:
        _LOGGER.error(f"Failed to run client '{client_args[0]}': {e}")
        return EXIT_CLIENT_NOT_FOUND

    exited = asyncio.ensure_future(process.wait())
    signalled = asyncio.ensure_future(shutdown.wait())
    try:
        await asyncio.wait({exited, signalled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        signalled.cancel()

    if not exited.done():
        _LOGGER.warning(f"Terminating client '{client_args[0]}'")
        try:
            process.terminate()
        except ProcessLookupError:
            pass
    return await exited


async def run_connect(config_path: str | None, client_args: list[str]) -> int:
    """
    Start the connection session and either run a client or wait for a shutdown signal.

    The session is always stopped before this returns. Setup commands still running at that
    point (tunnels, proxies) belong to this session and are terminated first.

    Args:
        config_path (str | None): Configuration file, or None to use CLUSTER_CONNECT_CONFIG_FILE.
        client_args (list[str]): Client command to run once the session is ready; empty to
            wait for SIGINT/SIGTERM instead.

    Returns:
        int: The process exit status.
    """
    setup_global_exception_logging()

    try:
        spec = await ConfigManager(config_path).get_connection_spec()
    except ConfigurationError as e:
        _LOGGER.error(f"Invalid configuration: {e}")
        return EXIT_FAILURE

    manager = ConnectionManager()
    shutdown = asyncio.Event()
    stop_tasks = _install_signal_handlers(manager, shutdown)
    try:
        try:
            kube_config = await manager.start(spec)
        except SessionCancelledError:
            _LOGGER.warning("Connection session cancelled before it was ready")
            return EXIT_CANCELLED
        except SessionError as e:
            _LOGGER.error(f"Connection session failed: {e}")
            return EXIT_FAILURE

        print(kube_config, flush=True)

        if client_args:
            return await _run_client(client_args, kube_config, shutdown)

        _LOGGER.info("Connection session is up; press Ctrl-C to stop")
        await shutdown.wait()
        return EXIT_OK
    finally:
        await manager.terminate()
        if stop_tasks:
            await asyncio.gather(*stop_tasks)
        for signum in _SHUTDOWN_SIGNALS:
            try:
                asyncio.get_running_loop().remove_signal_handler(signum)
            except NotImplementedError:
                pass


def run_free_port() -> int:
    """Print a free local TCP port and return the exit status."""
    try:
        port = find_available_port()
    except PortAllocationError as e:
        _LOGGER.error(f"Could not allocate a port: {e}")
        return EXIT_FAILURE
    print(port, flush=True)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the `cluster-connect` command."""
    parser = argparse.ArgumentParser(
        prog="cluster-connect",
        description="Run the local setup commands of a remote cluster connection.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG shows command output). Default: $CLUSTER_CONNECT_LOG_LEVEL or INFO",
    )
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=None,
        help="Log format. Default: $CLUSTER_CONNECT_LOG_FORMAT or text",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    connect = subparsers.add_parser(
        "connect", help="Start the connection session described by the configuration file."
    )
    connect.add_argument(
        "-c",
        "--config",
        default=None,
        help=f"Configuration file (JSON or YAML). Default: ${CONFIG_ENV_VAR}",
    )
    connect.add_argument(
        "client",
        nargs=argparse.REMAINDER,
        help="Optional client command to run once connected, after '--'.",
    )

    subparsers.add_parser("free-port", help="Print a free local TCP port.")
    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Command-line entry point for cluster-connect.

    Args:
        argv (list[str] | None): Arguments without the program name; defaults to sys.argv[1:].

    Returns:
        int: The process exit status.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_format)
    _LOGGER.debug(f"CLI args: {vars(args)}")

    if args.command == "free-port":
        return run_free_port()

    client_args = list(args.client)
    if client_args and client_args[0] == "--":
        client_args = client_args[1:]
    return asyncio.run(run_connect(args.config, client_args))


if __name__ == "__main__":
    sys.exit(main())
