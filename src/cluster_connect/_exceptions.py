"""Custom exception types for cluster-connect.

Defines the exception hierarchy raised while establishing and tearing down a connection
session: lifecycle misuse, command spawn and start failures, port readiness failures,
cancellation, and configuration problems.

All exceptions derive from ClusterConnectError so callers can catch everything raised by
this package with a single except clause, while still distinguishing a user-initiated
shutdown (SessionCancelledError) from a genuine failure.

Exception Hierarchy:
    - Base exceptions: ClusterConnectError, InternalError (extends ClusterConnectError and RuntimeError)
    - Session exceptions: SessionError, SessionStateError, SessionCancelledError
    - Command exceptions: CommandError, CommandSpawnError, StartTimeoutError (also TimeoutError), CommandExitedError
    - Port exceptions: PortError, PortTimeoutError (also TimeoutError), PortAllocationError
    - Configuration exceptions: ConfigurationError, ConnectionConfigurationError

Usage Example:
    ```python
    from cluster_connect._exceptions import SessionCancelledError, SessionError

    try:
        kube_config = await manager.start(spec)
    except SessionCancelledError:
        # Shutdown was requested while commands were still starting
        raise
    except SessionError as e:
        logger.error(f"Connection session failed: {e}")
        raise
    finally:
        await manager.stop()
    ```
"""

__all__ = [
    # Base exceptions
    "ClusterConnectError",
    "InternalError",
    # Session exceptions
    "SessionError",
    "SessionStateError",
    "SessionCancelledError",
    # Command exceptions
    "CommandError",
    "CommandSpawnError",
    "StartTimeoutError",
    "CommandExitedError",
    # Port exceptions
    "PortError",
    "PortTimeoutError",
    "PortAllocationError",
    # Configuration exceptions
    "ConfigurationError",
    "ConnectionConfigurationError",
]


# Base Exceptions


class ClusterConnectError(Exception):
    """Base exception for all cluster-connect errors.

    Examples:
        ```python
        try:
            await manager.start(spec)
        except ClusterConnectError as e:
            logger.error(f"cluster-connect failed: {e}")
        ```
    """

    pass


class InternalError(ClusterConnectError, RuntimeError):
    """Internal errors indicating a bug in cluster-connect rather than a usage problem."""

    pass


# Session Exceptions


class SessionError(ClusterConnectError):
    """Base exception for errors raised while a connection session starts or stops.

    Use the more specific subclasses where one fits:
    - SessionStateError for lifecycle misuse (e.g. starting a stopped manager)
    - SessionCancelledError when the shared cancellation scope aborts a wait
    - CommandError subclasses for setup command failures
    - PortError subclasses for readiness probe and port allocation failures
    """

    pass


class SessionStateError(SessionError):
    """Raised when a session operation is not valid in the manager's current state.

    A ConnectionManager is single-use: start() may only be called once, on a manager
    that has not been stopped.
    """

    pass


class SessionCancelledError(SessionError):
    """Raised when the session's cancellation scope is cancelled mid-wait.

    This signals a user-initiated shutdown rather than a failure. Processes that were
    already spawned keep running and are drained by ConnectionManager.stop().
    """

    pass


# Command Exceptions


class CommandError(SessionError):
    """Base exception for setup command failures.

    Attributes:
        command (str): The command line that failed.
    """

    def __init__(self, message: str, command: str):
        """Initialize the exception.

        Args:
            message (str): Human readable description of the failure.
            command (str): The command line that failed.
        """
        super().__init__(message)
        self.command = command


class CommandSpawnError(CommandError):
    """Raised when the operating system refuses to start a command.

    Typical causes are a program that cannot be found on PATH or a file that is not
    executable. No process exists when this is raised, so nothing is registered for
    draining.
    """

    pass


class StartTimeoutError(CommandError, TimeoutError):
    """Raised when a command produces no output before the start timeout elapses.

    The process is killed before this is raised.
    """

    pass


class CommandExitedError(CommandError):
    """Raised when a command exits before producing any output.

    Attributes:
        command (str): The command line that exited.
        returncode (int | None): The exit status of the process.
    """

    def __init__(self, message: str, command: str, returncode: int | None):
        """Initialize the exception.

        Args:
            message (str): Human readable description of the failure.
            command (str): The command line that exited.
            returncode (int | None): The exit status of the process.
        """
        super().__init__(message, command)
        self.returncode = returncode


# Port Exceptions


class PortError(SessionError):
    """Base exception for local port readiness and allocation failures.

    Attributes:
        port (int | None): The port involved, or None when no port was determined.
    """

    def __init__(self, message: str, port: int | None = None):
        """Initialize the exception.

        Args:
            message (str): Human readable description of the failure.
            port (int | None): The port involved, if known.
        """
        super().__init__(message)
        self.port = port


class PortTimeoutError(PortError, TimeoutError):
    """Raised when a port does not accept connections within the retry budget."""

    pass


class PortAllocationError(PortError):
    """Raised when the operating system cannot provide a free ephemeral port."""

    pass


# Configuration Exceptions


class ConfigurationError(ClusterConnectError):
    """Base exception for configuration loading and validation errors."""

    pass


class ConnectionConfigurationError(ConfigurationError):
    """Raised when the connection section of the configuration is invalid.

    Examples:
        ```python
        if not isinstance(commands, list):
            raise ConnectionConfigurationError("'commands' must be a list")
        ```
    """

    pass
