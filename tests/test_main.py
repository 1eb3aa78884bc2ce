"""Tests for the cluster-connect command-line entry point."""

import asyncio
import json
import signal
import sys
from unittest.mock import patch

import pytest

from cluster_connect import main as main_mod
from cluster_connect._exceptions import PortAllocationError
from cluster_connect.connection import ConnectionManager, SessionState


@pytest.fixture(autouse=True)
def no_global_logging_setup():
    # setup_logging(force=True) would remove pytest's capture handlers
    with patch.object(main_mod, "setup_logging"), patch.object(
        main_mod, "setup_global_exception_logging"
    ):
        yield


def _write_config(tmp_path, commands, kube_config="/tmp/cc-test.kubeconfig"):
    path = tmp_path / "connection.json"
    path.write_text(json.dumps({"commands": commands, "kubeConfig": kube_config}))
    return str(path)


# --- argument parsing ---


def test_parser_connect_with_client():
    args = main_mod.build_parser().parse_args(
        ["connect", "-c", "conn.yaml", "--", "kubectl", "get", "pods"]
    )
    assert args.command == "connect"
    assert args.config == "conn.yaml"
    assert args.client[-3:] == ["kubectl", "get", "pods"]


def test_parser_log_options():
    args = main_mod.build_parser().parse_args(
        ["--log-level", "debug", "--log-format", "json", "free-port"]
    )
    assert (args.log_level, args.log_format) == ("debug", "json")

    with pytest.raises(SystemExit):
        main_mod.build_parser().parse_args(["--log-format", "xml", "free-port"])


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        main_mod.build_parser().parse_args([])


# --- free-port ---


def test_free_port_prints_port(capsys):
    assert main_mod.main(["free-port"]) == main_mod.EXIT_OK
    assert int(capsys.readouterr().out.strip()) > 0


def test_free_port_failure(capsys):
    with patch.object(
        main_mod, "find_available_port", side_effect=PortAllocationError("none left")
    ):
        assert main_mod.main(["free-port"]) == main_mod.EXIT_FAILURE
    assert capsys.readouterr().out == ""


# --- connect ---


def test_connect_runs_client_with_kubeconfig(tmp_path, chatty_command, make_script, capsys):
    kube_config = str(tmp_path / "kc.yaml")
    config_path = _write_config(
        tmp_path, [{"command": chatty_command(lines=1, linger=0.3)}], kube_config
    )
    client = make_script(
        """
        import os, sys
        sys.exit(0 if os.environ.get("KUBECONFIG") == sys.argv[1] else 5)
        """,
        kube_config,
    )

    exit_code = main_mod.main(["connect", "-c", config_path, "--", *client.split()])
    assert exit_code == 0
    assert capsys.readouterr().out.strip() == kube_config


def test_connect_returns_client_exit_code(tmp_path, make_script):
    config_path = _write_config(tmp_path, [])
    client = make_script(
        """
        import sys
        sys.exit(4)
        """
    )
    assert main_mod.main(["connect", "-c", config_path, "--", *client.split()]) == 4


def test_connect_missing_client_program(tmp_path):
    config_path = _write_config(tmp_path, [])
    exit_code = main_mod.main(
        ["connect", "-c", config_path, "--", "definitely-not-a-real-client-4f2a"]
    )
    assert exit_code == main_mod.EXIT_CLIENT_NOT_FOUND


def test_connect_invalid_config(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"commands": []}))
    assert main_mod.main(["connect", "-c", str(path)]) == main_mod.EXIT_FAILURE


def test_connect_session_failure(tmp_path, capsys):
    config_path = _write_config(tmp_path, [{"command": "definitely-not-a-real-program-4f2a"}])
    assert main_mod.main(["connect", "-c", config_path, "--", sys.executable]) == 1
    assert capsys.readouterr().out == ""


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
def test_connect_waits_for_signal(tmp_path, make_script, capsys):
    config_path = _write_config(tmp_path, [])

    original_start = main_mod.ConnectionManager.start

    async def start_then_signal(self, spec):
        result = await original_start(self, spec)
        signal.raise_signal(signal.SIGTERM)
        return result

    with patch.object(main_mod.ConnectionManager, "start", start_then_signal):
        assert main_mod.main(["connect", "-c", config_path]) == main_mod.EXIT_OK
    assert capsys.readouterr().out.strip() == "/tmp/cc-test.kubeconfig"


# --- long-lived setup commands ---


@pytest.fixture
def managers(monkeypatch):
    """Record every ConnectionManager created by run_connect."""
    created = []

    class RecordingManager(ConnectionManager):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            created.append(self)

    monkeypatch.setattr(main_mod, "ConnectionManager", RecordingManager)
    return created


async def _wait_until_ready(managers):
    for _ in range(200):
        if managers and managers[0].state is SessionState.READY:
            return
        await asyncio.sleep(0.05)
    raise AssertionError("connection session never became ready")


@pytest.mark.asyncio
async def test_client_exit_ends_long_running_helper(
    tmp_path, chatty_command, make_script, managers
):
    config_path = _write_config(tmp_path, [{"command": chatty_command(lines=1, linger=60)}])
    client = make_script(
        """
        import sys
        sys.exit(3)
        """
    )

    exit_code = await asyncio.wait_for(
        main_mod.run_connect(config_path, client.split()), timeout=15
    )
    assert exit_code == 3
    (helper,) = managers[0].commands
    assert helper.returncode == -signal.SIGTERM
    assert managers[0].state is SessionState.STOPPED


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
@pytest.mark.asyncio
async def test_sigterm_ends_long_running_helper(tmp_path, chatty_command, managers):
    config_path = _write_config(tmp_path, [{"command": chatty_command(lines=1, linger=60)}])

    connecting = asyncio.create_task(main_mod.run_connect(config_path, []))
    await _wait_until_ready(managers)
    signal.raise_signal(signal.SIGTERM)

    assert await asyncio.wait_for(connecting, timeout=15) == main_mod.EXIT_OK
    (helper,) = managers[0].commands
    assert helper.returncode is not None
    assert managers[0].state is SessionState.STOPPED


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
@pytest.mark.asyncio
async def test_sigterm_during_client_ends_client_and_helper(
    tmp_path, chatty_command, make_script, managers
):
    config_path = _write_config(tmp_path, [{"command": chatty_command(lines=1, linger=60)}])
    client = make_script(
        """
        import time
        time.sleep(60)
        """
    )

    connecting = asyncio.create_task(main_mod.run_connect(config_path, client.split()))
    await _wait_until_ready(managers)
    await asyncio.sleep(0.3)
    signal.raise_signal(signal.SIGTERM)

    assert await asyncio.wait_for(connecting, timeout=15) == -signal.SIGTERM
    (helper,) = managers[0].commands
    assert helper.returncode is not None


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
@pytest.mark.asyncio
async def test_sigterm_while_command_is_starting(tmp_path, silent_command, managers):
    config_path = _write_config(tmp_path, [{"command": silent_command}])

    connecting = asyncio.create_task(main_mod.run_connect(config_path, []))
    for _ in range(200):
        if managers and managers[0].commands:
            break
        await asyncio.sleep(0.05)
    signal.raise_signal(signal.SIGTERM)

    assert await asyncio.wait_for(connecting, timeout=15) == main_mod.EXIT_CANCELLED
    (helper,) = managers[0].commands
    assert helper.returncode is not None
