"""
Local network helpers for connection sessions.

- **Port readiness**: `wait_for_port` polls a local TCP port until it accepts connections,
  with a bounded retry budget and prompt cancellation.
- **Port allocation**: `find_available_port` asks the OS for a free ephemeral port, for
  callers that must pick a port before the session starts.
"""

import asyncio
import logging
import socket

from cluster_connect._exceptions import PortAllocationError, PortTimeoutError

from ._scope import CancellationScope

_LOGGER = logging.getLogger(__name__)

DEFAULT_PORT_ATTEMPTS = 10
"""int: Number of connection attempts made by wait_for_port."""

DEFAULT_CONNECT_TIMEOUT = 0.5
"""float: Per-attempt TCP connect timeout in seconds."""

DEFAULT_RETRY_INTERVAL = 0.5
"""float: Sleep in seconds after each failed attempt."""


def find_available_port() -> int:
    """
    Find an available TCP port on localhost.

    Binds a socket to port 0 so the OS assigns a port from its ephemeral range, reads the
    port back and releases the socket.

    Returns:
        int: An available port number.

    Raises:
        PortAllocationError: If the OS refuses to bind or listen (e.g. file descriptor
            limit reached, no ports available).

    Note:
        The port is released before this returns. Another process can claim it before the
        caller's command binds it; callers must tolerate that race.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("localhost", 0))
            s.listen(1)
            port = s.getsockname()[1]
            _LOGGER.debug(f"[_network:find_available_port] Found available port: {port}")
            return port
    except OSError as e:
        _LOGGER.error(f"[_network:find_available_port] Failed to find available port: {e}")
        raise PortAllocationError(f"Failed to find available port: {e}") from e


async def _probe(host: str, port: int) -> None:
    _reader, writer = await asyncio.open_connection(host, port)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        _LOGGER.debug(f"[_network:_probe] Error closing probe connection to {host}:{port}: {e}")


async def wait_for_port(
    scope: CancellationScope,
    port: int,
    *,
    host: str = "localhost",
    attempts: int = DEFAULT_PORT_ATTEMPTS,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    retry_interval: float = DEFAULT_RETRY_INTERVAL,
) -> None:
    """
    Wait until `host:port` accepts TCP connections.

    Makes up to `attempts` connection attempts, each bounded by `connect_timeout`, and
    sleeps `retry_interval` after every failed attempt. With the defaults the worst case is
    about 5 seconds. Both the connect and the sleep race against the scope's cancellation
    signal.

    Args:
        scope (CancellationScope): The session scope whose cancellation aborts the wait.
        port (int): The local port to probe.
        host (str): Host to connect to. Default: "localhost".
        attempts (int): Number of connection attempts. Default: 10.
        connect_timeout (float): Per-attempt timeout in seconds. Default: 0.5.
        retry_interval (float): Seconds to sleep after a failed attempt. Default: 0.5.

    Raises:
        SessionCancelledError: If the scope is cancelled before the port opens.
        PortTimeoutError: If the port never accepted a connection.
    """
    _LOGGER.debug(
        f"[_network:wait_for_port] Waiting for {host}:{port} "
        f"(attempts: {attempts}, interval: {retry_interval}s)",
        extra={"port": port},
    )

    for attempt in range(1, attempts + 1):
        try:
            await scope.run(_probe(host, port), timeout=connect_timeout)
            _LOGGER.info(
                f"[_network:wait_for_port] Port {port} is ready (attempt {attempt})",
                extra={"port": port},
            )
            return
        except (TimeoutError, OSError) as e:
            _LOGGER.debug(
                f"[_network:wait_for_port] Port {port} not ready "
                f"(attempt {attempt}/{attempts}): {e!r}",
                extra={"port": port},
            )

        await scope.run(asyncio.sleep(retry_interval))

    _LOGGER.error(
        f"[_network:wait_for_port] Timeout waiting for port {port} after {attempts} attempts",
        extra={"port": port},
    )
    raise PortTimeoutError(f"Timeout waiting for port {port}", port=port)
