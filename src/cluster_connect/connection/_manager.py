"""Session manager orchestrating the setup commands of one connection session.

ConnectionManager launches the configured commands one after another, waits for each
declared port to become reachable, and on shutdown cancels every in-flight wait and blocks
until all spawned processes have exited and their output has been drained.

One manager instance is one session. Construct it where the session begins and pass it to
whatever needs to start or stop the session; a stopped manager cannot be restarted.
"""

import asyncio
import enum
import logging
from types import TracebackType

from cluster_connect._exceptions import (
    SessionCancelledError,
    SessionError,
    SessionStateError,
)

from ._command import DEFAULT_START_TIMEOUT, DEFAULT_TERMINATE_GRACE, CommandProcess
from ._network import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_PORT_ATTEMPTS,
    DEFAULT_RETRY_INTERVAL,
    wait_for_port,
)
from ._scope import CancellationScope
from ._spec import ConnectionSpec

_LOGGER = logging.getLogger(__name__)


class SessionState(enum.Enum):
    """Lifecycle phase of a ConnectionManager.

    IDLE → LAUNCHING → READY → DRAINING → STOPPED, with FAILED reachable from LAUNCHING.
    DRAINING and STOPPED are reachable from every other state through stop().
    """

    IDLE = "idle"
    """start() has not been called."""

    LAUNCHING = "launching"
    """Commands are being spawned and their ports probed."""

    READY = "ready"
    """Every command is started and every declared port is reachable."""

    FAILED = "failed"
    """A command or port wait failed during start(); stop() must still be called."""

    DRAINING = "draining"
    """stop() cancelled the scope and is waiting for processes to exit."""

    STOPPED = "stopped"
    """All processes have exited. Terminal."""


class ConnectionManager:
    """
    Owns the processes and the cancellation scope of one connection session.

    `start()` is strictly sequential: command k+1 is never spawned before command k has
    printed its first line and, when it declares `wait_for_port`, that port accepts
    connections. The first failure aborts `start()`; commands already running are not
    rolled back and are reclaimed by `stop()`, which callers must always invoke.

    The manager is also an async context manager that stops the session on exit:

        async with ConnectionManager() as manager:
            kube_config = await manager.start(spec)
            ...

    Attributes:
        commands (list[CommandProcess]): Every command spawned so far, in launch order.
    """

    def __init__(
        self,
        *,
        start_timeout: float = DEFAULT_START_TIMEOUT,
        port_attempts: int = DEFAULT_PORT_ATTEMPTS,
        port_connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        port_retry_interval: float = DEFAULT_RETRY_INTERVAL,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize an idle manager.

        Args:
            start_timeout (float): Seconds each command may stay silent before it is killed.
            port_attempts (int): Connection attempts per declared port.
            port_connect_timeout (float): Per-attempt connect timeout in seconds.
            port_retry_interval (float): Sleep between port attempts in seconds.
            logger (logging.Logger | None): Sink for command output and lifecycle events.
                Defaults to this module's logger.
        """
        self._start_timeout = start_timeout
        self._port_attempts = port_attempts
        self._port_connect_timeout = port_connect_timeout
        self._port_retry_interval = port_retry_interval
        self._logger = logger or _LOGGER
        self._scope = CancellationScope()
        self._state = SessionState.IDLE
        self._stop_task: asyncio.Task[None] | None = None
        self.commands: list[CommandProcess] = []

    @property
    def state(self) -> SessionState:
        """SessionState: The current lifecycle phase."""
        return self._state

    @property
    def pending_count(self) -> int:
        """int: Spawned processes whose completion has not resolved yet."""
        return self._scope.pending_count

    @property
    def completed_count(self) -> int:
        """int: Spawned processes that have exited and been drained."""
        return self._scope.completed_count

    async def start(self, spec: ConnectionSpec) -> str:
        """
        Launch every command of `spec` in order and wait for their ports.

        Args:
            spec (ConnectionSpec): The session recipe.

        Returns:
            str: `spec.kube_config_path`, once every command is started and every declared
                port is reachable.

        Raises:
            SessionStateError: If start() was already called or the manager is stopping.
            SessionCancelledError: If stop() was called while commands were starting.
            CommandSpawnError | StartTimeoutError | CommandExitedError: If a command fails to start.
            PortTimeoutError: If a declared port never became reachable. The command that
                should have opened it is left running until stop().
        """
        if self._state is not SessionState.IDLE:
            raise SessionStateError(
                f"Cannot start a connection session in state '{self._state.value}'"
            )

        self._state = SessionState.LAUNCHING
        self._logger.info(
            f"[_manager:ConnectionManager] Starting connection session with "
            f"{len(spec.commands)} command(s)"
        )

        try:
            for index, command_spec in enumerate(spec.commands, start=1):
                self._logger.debug(
                    f"[_manager:ConnectionManager] Launching command {index}/{len(spec.commands)}: "
                    f"'{command_spec.command_line}'",
                    extra={"command": command_spec.command_line},
                )
                await self._launch(command_spec.command_line)

                if command_spec.wait_for_port:
                    await wait_for_port(
                        self._scope,
                        command_spec.wait_for_port,
                        attempts=self._port_attempts,
                        connect_timeout=self._port_connect_timeout,
                        retry_interval=self._port_retry_interval,
                    )
        except (SessionError, ValueError) as e:
            if self._state is SessionState.LAUNCHING:
                self._state = SessionState.FAILED
            self._logger.error(
                f"[_manager:ConnectionManager] Connection session failed to start: {e}"
            )
            raise

        if self._state is SessionState.LAUNCHING:
            self._state = SessionState.READY
        self._logger.info(
            f"[_manager:ConnectionManager] Connection session ready, "
            f"kubeconfig: {spec.kube_config_path}"
        )
        return spec.kube_config_path

    async def _launch(self, command_line: str) -> None:
        if self._scope.cancelled:
            raise SessionCancelledError(
                f"Session cancelled before launching '{command_line}'"
            )
        command = await CommandProcess.spawn(command_line, logger=self._logger)
        self._scope.track(command.completion)
        self.commands.append(command)
        await command.wait_started(self._scope, timeout=self._start_timeout)

    async def stop(self) -> None:
        """
        Cancel in-flight waits and block until every spawned process has exited.

        Processes are not killed; long-lived helpers are expected to exit on their own; use
        terminate() to end them first. There is no timeout. Repeated and concurrent calls wait on
        the same shutdown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._stop())
        await asyncio.shield(self._stop_task)

    async def terminate(self, grace: float = DEFAULT_TERMINATE_GRACE) -> None:
        """
        Stop the session, first ending every command that is still running.

        Cancels the scope so no further command is launched, sends SIGTERM to each running
        command (SIGKILL after `grace` seconds) and then performs the same drain as `stop()`.
        Use this when the session owns its helpers; tunnels and proxies never exit on their own.

        Call it once `start()` has returned or raised: a command spawned concurrently with
        this call is not terminated.

        Args:
            grace (float): Seconds each command gets to exit after SIGTERM. Default: 5.
        """
        self._scope.cancel()
        running = [command for command in self.commands if command.returncode is None]
        if running:
            self._logger.info(
                f"[_manager:ConnectionManager] Terminating {len(running)} running command(s)"
            )
            await asyncio.gather(*(command.terminate(grace) for command in running))
        await self.stop()

    async def _stop(self) -> None:
        self._logger.info(
            f"[_manager:ConnectionManager] Stopping connection session "
            f"({self._scope.pending_count} process(es) outstanding)"
        )
        self._state = SessionState.DRAINING
        self._scope.cancel()
        await self._scope.drain()
        self._state = SessionState.STOPPED
        self._logger.info(
            f"[_manager:ConnectionManager] Connection session stopped "
            f"({self._scope.completed_count} process(es) exited)"
        )

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.stop()
