"""Shared fixtures for cluster-connect tests.

Command lines are split on whitespace without quoting support, so helper processes are
written to script files and launched as `<python> <script> <args...>` rather than with
`python -c`.
"""

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[..., str]:
    """Return a factory writing a Python script and returning its command line."""
    counter = {"n": 0}

    def _make(source: str, *args: object) -> str:
        counter["n"] += 1
        script = tmp_path / f"helper_{counter['n']}.py"
        script.write_text(textwrap.dedent(source))
        return " ".join([sys.executable, str(script), *(str(a) for a in args)])

    return _make


@pytest.fixture
def chatty_command(make_script: Callable[..., str]) -> Callable[..., str]:
    """Command printing `lines` lines immediately, then exiting after `linger` seconds."""

    def _make(lines: int = 1, linger: float = 0.2) -> str:
        return make_script(
            """
            import sys, time
            count, linger = int(sys.argv[1]), float(sys.argv[2])
            for i in range(count):
                print(f"line-{i}", flush=True)
            time.sleep(linger)
            """,
            lines,
            linger,
        )

    return _make


@pytest.fixture
def silent_command(make_script: Callable[..., str]) -> str:
    """Command that never prints and sleeps for a long time."""
    return make_script(
        """
        import time
        time.sleep(30)
        """
    )


@pytest.fixture
def listener_command(make_script: Callable[..., str]) -> Callable[..., str]:
    """Command that prints at once, opens `port` after `delay` seconds and serves for `serve` seconds."""

    def _make(port: int, delay: float = 0.0, serve: float = 2.0) -> str:
        return make_script(
            """
            import socket, sys, time
            port, delay, serve = int(sys.argv[1]), float(sys.argv[2]), float(sys.argv[3])
            print("starting", flush=True)
            time.sleep(delay)
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                s.bind(("127.0.0.1", port))
                s.listen(16)
                print("listening", flush=True)
                time.sleep(serve)
            """,
            port,
            delay,
            serve,
        )

    return _make
