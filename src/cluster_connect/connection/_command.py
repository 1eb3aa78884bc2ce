"""Process runner for connection setup commands.

Each setup command (an SSH tunnel, a proxy, a port-forward, ...) is spawned as a local
process whose stdout and stderr are merged into one stream. Two background tasks are
attached to every spawned process:

- an **output pump** that reads the merged stream line by line, logs every line at DEBUG
  and flags the process as *started* when the first line arrives, and
- a **completion watcher** that waits for the process to exit, logs a non-zero exit, waits
  for the output pump to reach end-of-stream and only then resolves.

`run_command` spawns a command, registers its completion with the session's
CancellationScope and waits until the command is started. The wait ends with whichever
comes first:

1. the first output line: the command is started and the handle is returned,
2. scope cancellation: SessionCancelledError, the process keeps running,
3. end of output without a single line: the process is killed if needed and
   CommandExitedError is raised,
4. the start timeout with no output: the process is killed and StartTimeoutError is raised.

An output line longer than 1 MiB is dropped as a whole with a warning; it never counts as
the first line.

Command lines are split on whitespace only. Quoting and escaping are not supported, so
an argument can never contain a space.
"""

import asyncio
import logging

from cluster_connect._exceptions import (
    CommandExitedError,
    CommandSpawnError,
    InternalError,
    SessionCancelledError,
    StartTimeoutError,
)

from ._scope import CancellationScope

_LOGGER = logging.getLogger(__name__)

DEFAULT_START_TIMEOUT = 5.0
"""float: Seconds a command may stay silent before it is killed."""

_STREAM_LIMIT = 1024 * 1024
"""int: Longest output line, in bytes, read as a single line."""

_EXIT_GRACE = 1.0
"""float: Seconds to wait for the exit status of a command whose output ended silently."""

DEFAULT_TERMINATE_GRACE = 5.0
"""float: Seconds a terminated command gets to exit before it is killed."""


def split_command_line(command_line: str) -> list[str]:
    """
    Split a command line into program and arguments on whitespace.

    Args:
        command_line (str): The command line as written in the configuration.

    Returns:
        list[str]: The program followed by its arguments.

    Raises:
        ValueError: If the command line is empty or only whitespace.

    Example:
        >>> split_command_line("kubectl proxy  --port 8001")
        ['kubectl', 'proxy', '--port', '8001']
    """
    parts = command_line.split()
    if not parts:
        raise ValueError("command line must not be empty")
    return parts


class CommandProcess:
    """
    A spawned setup command together with its output pump and completion watcher.

    Instances are created by `CommandProcess.spawn()` (or `run_command()`), never
    directly by callers.

    Attributes:
        command_line (str): The command line the process was started from.
        process (asyncio.subprocess.Process): The underlying OS process.
        first_line (str | None): The first output line, or None if nothing was printed yet.
        completion (asyncio.Task[None]): Resolves exactly once, after the process has exited
            and all of its output has been logged.
    """

    def __init__(
        self,
        command_line: str,
        process: asyncio.subprocess.Process,
        logger: logging.Logger | None = None,
    ):
        self.command_line = command_line
        self.process = process
        self.first_line: str | None = None
        self._logger = logger or _LOGGER
        self._started = asyncio.Event()
        self._pump = asyncio.create_task(
            self._pump_output(), name=f"output:{command_line}"
        )
        self.completion = asyncio.create_task(
            self._watch_completion(), name=f"completion:{command_line}"
        )

    @classmethod
    async def spawn(
        cls, command_line: str, logger: logging.Logger | None = None
    ) -> "CommandProcess":
        """
        Spawn a command with no stdin and merged stdout/stderr.

        The program is resolved through PATH and inherits the current environment.

        Args:
            command_line (str): Whitespace separated program and arguments.
            logger (logging.Logger | None): Sink for output lines and lifecycle events.
                Defaults to this module's logger.

        Returns:
            CommandProcess: The handle for the running process.

        Raises:
            ValueError: If `command_line` is empty.
            CommandSpawnError: If the OS could not start the program.
        """
        log = logger or _LOGGER
        program, *args = split_command_line(command_line)
        try:
            process = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            log.error(
                f"[_command:CommandProcess] Failed to spawn command '{command_line}': {e}",
                extra={"command": command_line},
            )
            raise CommandSpawnError(
                f"Failed to spawn command '{command_line}': {e}", command_line
            ) from e

        log.debug(
            f"[_command:CommandProcess] Spawned command '{command_line}' as PID {process.pid}",
            extra={"command": command_line},
        )
        return cls(command_line, process, logger=log)

    @property
    def pid(self) -> int:
        """int: The OS process id."""
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        """int | None: The exit status, or None while the process is running."""
        return self.process.returncode

    @property
    def started(self) -> bool:
        """bool: True once the process has produced its first output line."""
        return self._started.is_set()

    async def _pump_output(self) -> None:
        stream = self.process.stdout
        if stream is None:
            raise InternalError(f"Command '{self.command_line}' has no output pipe")

        # True while the remainder of an oversized line is being discarded
        skipping = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # End of stream; a final line without a newline is still a line
                raw = e.partial
            except asyncio.LimitOverrunError as e:
                # The oversized data stays buffered until it is consumed here
                await stream.readexactly(e.consumed)
                if not skipping:
                    self._logger.warning(
                        f"[_command:CommandProcess] Dropped oversized output line from "
                        f"'{self.command_line}' (longer than {_STREAM_LIMIT} bytes)",
                        extra={"command": self.command_line},
                    )
                skipping = True
                continue
            if not raw:
                break
            if skipping:
                skipping = False
                continue

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self._logger.debug(
                f"Command output: {line}",
                extra={"command": self.command_line, "line": line},
            )
            if not self._started.is_set():
                self.first_line = line
                self._started.set()

    async def _watch_completion(self) -> None:
        returncode = await self.process.wait()
        if returncode != 0:
            self._logger.error(
                f"[_command:CommandProcess] Command failed: '{self.command_line}' "
                f"exited with code {returncode}",
                extra={"command": self.command_line, "returncode": returncode},
            )
        else:
            self._logger.info(
                f"[_command:CommandProcess] Command exited: '{self.command_line}'",
                extra={"command": self.command_line, "returncode": returncode},
            )

        # Completion must follow end-of-stream, whatever happened to the pump
        await asyncio.wait({self._pump})
        if not self._pump.cancelled() and self._pump.exception() is not None:
            self._logger.error(
                f"[_command:CommandProcess] Output pump for '{self.command_line}' failed: "
                f"{self._pump.exception()!r}",
                extra={"command": self.command_line},
            )

    def kill(self) -> None:
        """Kill the process. Does nothing if it has already exited."""
        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            # Exited between the returncode check and the signal
            pass

    async def terminate(self, grace: float = DEFAULT_TERMINATE_GRACE) -> None:
        """
        Ask the process to exit with SIGTERM, killing it if it is still alive after `grace`.

        Returns once the completion has resolved or the process has been killed. Does
        nothing to a process that has already exited.

        Args:
            grace (float): Seconds to wait for the process to exit after SIGTERM. Default: 5.
        """
        if self.process.returncode is None:
            self._logger.info(
                f"[_command:CommandProcess] Terminating command: '{self.command_line}'",
                extra={"command": self.command_line},
            )
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

        done, _pending = await asyncio.wait({self.completion}, timeout=grace)
        if not done:
            self._logger.warning(
                f"[_command:CommandProcess] Command did not exit within {grace}s of SIGTERM, "
                f"killing: '{self.command_line}'",
                extra={"command": self.command_line},
            )
            self.kill()

    async def wait_started(
        self, scope: CancellationScope, timeout: float = DEFAULT_START_TIMEOUT
    ) -> None:
        """
        Wait until the process prints its first line of output.

        Args:
            scope (CancellationScope): The session scope whose cancellation aborts the wait.
            timeout (float): Seconds to wait for the first line. Default: 5.

        Raises:
            SessionCancelledError: If the scope is cancelled first. The process keeps running.
            CommandExitedError: If the output ended without a single line.
            StartTimeoutError: If no output arrived within `timeout`. The process is killed.
        """
        started = asyncio.ensure_future(self._started.wait())
        cancelled = asyncio.ensure_future(scope.wait_cancelled())
        try:
            await asyncio.wait(
                {started, cancelled, self._pump},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            started.cancel()
            cancelled.cancel()

        if self._started.is_set():
            self._logger.info(
                f"[_command:CommandProcess] Command started: '{self.command_line}'",
                extra={"command": self.command_line},
            )
            return

        if scope.cancelled:
            self._logger.warning(
                f"[_command:CommandProcess] Command canceled before it started: "
                f"'{self.command_line}'",
                extra={"command": self.command_line},
            )
            raise SessionCancelledError(
                f"Session cancelled while starting '{self.command_line}'"
            )

        if self._pump.done():
            done, _pending = await asyncio.wait({self.completion}, timeout=_EXIT_GRACE)
            if not done:
                # Output closed but the process lives on; it can never be detected as started
                self.kill()
            self._logger.error(
                f"[_command:CommandProcess] Command exited without output: "
                f"'{self.command_line}' (exit code {self.returncode})",
                extra={"command": self.command_line, "returncode": self.returncode},
            )
            raise CommandExitedError(
                f"Command '{self.command_line}' exited without producing output "
                f"(exit code {self.returncode})",
                self.command_line,
                self.returncode,
            )

        self.kill()
        self._logger.error(
            f"[_command:CommandProcess] Command timeout: '{self.command_line}' "
            f"produced no output within {timeout}s",
            extra={"command": self.command_line},
        )
        raise StartTimeoutError(
            f"Command '{self.command_line}' produced no output within {timeout}s",
            self.command_line,
        )


async def run_command(
    scope: CancellationScope,
    command_line: str,
    *,
    start_timeout: float = DEFAULT_START_TIMEOUT,
    logger: logging.Logger | None = None,
) -> CommandProcess:
    """
    Spawn a setup command and wait until it is started.

    The completion of the spawned process is tracked by `scope` before start detection
    begins, so `scope.drain()` waits for it on every outcome, including a start timeout or
    cancellation. A spawn failure registers nothing.

    Args:
        scope (CancellationScope): The session scope.
        command_line (str): Whitespace separated program and arguments.
        start_timeout (float): Seconds to wait for the first output line. Default: 5.
        logger (logging.Logger | None): Sink for output lines and lifecycle events.

    Returns:
        CommandProcess: The started process.

    Raises:
        ValueError: If `command_line` is empty.
        CommandSpawnError: If the program could not be started.
        SessionCancelledError: If the scope was cancelled before the first line.
        CommandExitedError: If the command exited without output.
        StartTimeoutError: If the command stayed silent for `start_timeout` seconds.
    """
    command = await CommandProcess.spawn(command_line, logger=logger)
    scope.track(command.completion)
    await command.wait_started(scope, timeout=start_timeout)
    return command
