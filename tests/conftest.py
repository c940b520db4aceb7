"""Shared test fixtures and configuration for k8s_infra tests."""

from pathlib import Path
from typing import Callable
from unittest import mock

import pytest

from k8s_infra.paths import ProjectPaths
from k8s_infra.remote import CommandResult


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch('k8s_infra.proxmox_api.ProxmoxAPI') as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.nodes.return_value.qemu.get.return_value = [
            {"vmid": 9101, "name": "nixos-base-template", "template": 1, "status": "stopped"},
            {"vmid": 108, "name": "k3s-vm-pve", "template": 0, "status": "running"},
            {"vmid": 9000, "name": "ubuntu-25.04-cloud-init", "template": 1, "status": "stopped"},
        ]

        yield proxmox


@pytest.fixture
def mock_ssh_client():
    """Mock SSH client for testing remote operations."""
    with mock.patch('paramiko.SSHClient') as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value.decode.return_value = "command output"
        stderr.read.return_value.decode.return_value = ""
        stdout.channel.recv_exit_status.return_value = 0

        client.exec_command.return_value = (None, stdout, stderr)

        yield client


@pytest.fixture
def cmd_result() -> Callable[..., CommandResult]:
    """Factory for CommandResult values returned by a mocked shell."""

    def _make(stdout: str = "", exit_status: int = 0, stderr: str = "", command: str = "") -> CommandResult:
        return CommandResult(command=command, exit_status=exit_status, stdout=stdout, stderr=stderr)

    return _make


@pytest.fixture
def mock_shell(cmd_result):
    """ProxmoxShell stand-in; every command succeeds with empty output by default."""
    shell = mock.MagicMock()
    shell.host = "pve.local"
    shell.user = "root"
    shell.target = "root@pve.local"
    shell.dry_run = False
    shell.run.return_value = cmd_result()
    shell.test_connection.return_value = True
    shell.hostname.return_value = "pve"
    return shell


@pytest.fixture
def project_tree(tmp_path) -> ProjectPaths:
    """Minimal project layout rooted in a temporary directory."""
    for directory in ("shared/config", "nixos", "build/isos", "build/logs", "build/templates", "terraform"):
        (tmp_path / directory).mkdir(parents=True)
    return ProjectPaths(tmp_path)


@pytest.fixture
def populated_nixos(project_tree) -> ProjectPaths:
    """Project with non-placeholder NixOS configurations for every role."""
    nixos = project_tree.nixos_dir
    files = [
        Path("common/configuration.nix"),
        Path("dev/control.nix"),
        Path("dev/worker.nix"),
        Path("prod/control.nix"),
        Path("prod/worker.nix"),
    ]
    for relative in files:
        target = nixos / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("{ config, pkgs, ... }:\n{\n}\n")
    return project_tree
