"""
Connection session management public API.

This package runs the local setup commands a remote cluster connection needs (tunnels,
proxies, port-forwards), detects when each one has started and when its local port is
reachable, and tears the whole session down again without leaking processes.

Exports - Session:
    - ConnectionManager: Launches a ConnectionSpec's commands sequentially, waits for their
      ports and, on stop(), cancels in-flight waits and drains every spawned process;
      terminate() also ends commands that are still running.
    - SessionState: Lifecycle phases of a ConnectionManager (IDLE, LAUNCHING, READY, FAILED,
      DRAINING, STOPPED).
    - CancellationScope: Shared cancellation signal and outstanding-process tracker used by
      one session.

Exports - Data Model:
    - CommandSpec: One command line plus an optional port to wait for.
    - ConnectionSpec: Ordered commands plus the kubeconfig path returned once ready.

Exports - Process Runner:
    - CommandProcess: Handle for one spawned command with its output pump and completion.
    - run_command: Spawn a command, track it in a scope and wait for its first output line.
    - split_command_line: Whitespace splitting of a command line (no quoting support).

Exports - Network:
    - wait_for_port: Bounded, cancellable TCP readiness probe for a local port.
    - find_available_port: Ask the OS for a free ephemeral port (advisory, racy by nature).

Async Safety:
    - Everything runs on one asyncio event loop; scope state is only mutated from that loop.
    - Each spawned command owns two background tasks (output pump, completion watcher).
    - Cancelling the scope stops waits; it does not kill running processes.

Usage Example:
    >>> from cluster_connect.connection import CommandSpec, ConnectionManager, ConnectionSpec
    >>>
    >>> spec = ConnectionSpec(
    ...     kube_config_path="/home/me/.kube/tunnel.yaml",
    ...     commands=(
    ...         CommandSpec("ssh -N -v -L 6443:10.0.0.1:6443 bastion", wait_for_port=6443),
    ...     ),
    ... )
    >>> async with ConnectionManager() as manager:
    ...     kube_config = await manager.start(spec)
    ...     # run the cluster client against kube_config...
"""

from ._command import CommandProcess, run_command, split_command_line
from ._manager import ConnectionManager, SessionState
from ._network import find_available_port, wait_for_port
from ._scope import CancellationScope
from ._spec import CommandSpec, ConnectionSpec

__all__ = [
    "ConnectionManager",
    "SessionState",
    "CancellationScope",
    "CommandSpec",
    "ConnectionSpec",
    "CommandProcess",
    "run_command",
    "split_command_line",
    "wait_for_port",
    "find_available_port",
]
