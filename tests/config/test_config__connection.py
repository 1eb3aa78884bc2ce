"""Tests for connection configuration validation and parsing."""

import os

import pytest

from cluster_connect._exceptions import ConnectionConfigurationError
from cluster_connect.config import parse_connection_spec, validate_connection_config
from cluster_connect.connection import CommandSpec, ConnectionSpec


@pytest.fixture
def valid_connection_config():
    return {
        "commands": [
            {"command": "ssh -N -L 6443:10.0.0.1:6443 bastion", "waitForPort": 6443},
            {"command": "kubectl proxy --port 8001"},
        ],
        "kubeConfig": "/home/me/.kube/tunnel.yaml",
    }


# --- validate_connection_config ---


def test_validate_accepts_valid_config(valid_connection_config):
    validate_connection_config(valid_connection_config)


def test_validate_accepts_missing_or_null_commands():
    validate_connection_config({"kubeConfig": "kc"})
    validate_connection_config({"kubeConfig": "kc", "commands": None})
    validate_connection_config({"kubeConfig": "kc", "commands": []})


@pytest.mark.parametrize(
    "config, message",
    [
        ([], "must be a dictionary"),
        ({}, "Missing required field"),
        ({"kubeConfig": "kc", "extra": 1}, "Unknown field"),
        ({"kubeConfig": ""}, "'kubeConfig' must be a non-empty string"),
        ({"kubeConfig": 3}, "'kubeConfig' must be a non-empty string"),
        ({"kubeConfig": "kc", "commands": {"command": "x"}}, "'commands' must be a list"),
        ({"kubeConfig": "kc", "commands": ["ssh host"]}, r"'commands\[0\]' must be a dictionary"),
        ({"kubeConfig": "kc", "commands": [{}]}, r"'commands\[0\].command' must be a non-empty"),
        ({"kubeConfig": "kc", "commands": [{"command": "  "}]}, "must be a non-empty"),
        (
            {"kubeConfig": "kc", "commands": [{"command": "x", "shell": True}]},
            r"Unknown field\(s\) in 'commands\[0\]'",
        ),
        (
            {"kubeConfig": "kc", "commands": [{"command": "x", "waitForPort": "80"}]},
            "must be an integer",
        ),
        (
            {"kubeConfig": "kc", "commands": [{"command": "x", "waitForPort": True}]},
            "must be an integer",
        ),
        (
            {"kubeConfig": "kc", "commands": [{"command": "x", "waitForPort": 70000}]},
            "between 0 and 65535",
        ),
        (
            {"kubeConfig": "kc", "commands": [{"command": "x", "waitForPort": -1}]},
            "between 0 and 65535",
        ),
    ],
)
def test_validate_rejects_invalid_config(config, message):
    with pytest.raises(ConnectionConfigurationError, match=message):
        validate_connection_config(config)


def test_validate_reports_failing_index():
    config = {
        "kubeConfig": "kc",
        "commands": [{"command": "ok"}, {"command": "bad", "waitForPort": 1.5}],
    }
    with pytest.raises(ConnectionConfigurationError, match=r"commands\[1\]"):
        validate_connection_config(config)


# --- parse_connection_spec ---


def test_parse_builds_spec(valid_connection_config):
    spec = parse_connection_spec(valid_connection_config)
    assert spec == ConnectionSpec(
        kube_config_path="/home/me/.kube/tunnel.yaml",
        commands=(
            CommandSpec("ssh -N -L 6443:10.0.0.1:6443 bastion", wait_for_port=6443),
            CommandSpec("kubectl proxy --port 8001", wait_for_port=None),
        ),
    )


def test_parse_maps_zero_port_to_no_wait():
    spec = parse_connection_spec(
        {"kubeConfig": "kc", "commands": [{"command": "x", "waitForPort": 0}]}
    )
    assert spec.commands[0].wait_for_port is None


def test_parse_trims_command_lines():
    spec = parse_connection_spec({"kubeConfig": "kc", "commands": [{"command": "  x y \n"}]})
    assert spec.commands[0].command_line == "x y"


def test_parse_expands_home_in_kube_config():
    spec = parse_connection_spec({"kubeConfig": "~/.kube/config"})
    assert spec.kube_config_path == os.path.expanduser("~/.kube/config")
    assert spec.commands == ()


def test_parse_validates_first():
    with pytest.raises(ConnectionConfigurationError):
        parse_connection_spec({"commands": []})


def test_spec_is_immutable(valid_connection_config):
    spec = parse_connection_spec(valid_connection_config)
    with pytest.raises(AttributeError):
        spec.kube_config_path = "other"  # type: ignore[misc]
