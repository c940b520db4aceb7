"""Tests for qemu module."""
import logging
from unittest import mock

import paramiko
import pytest

from k8s_infra.errors import InstallTimeoutError, RemoteCommandError, TemplateIdExhaustedError
from k8s_infra.qemu import QemuManager
from k8s_infra.remote import ProxmoxShell


def executed(shell):
    return [c.args[0] for c in shell.execute.call_args_list]


class TestStatus:
    def test_parses_second_field(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result("status: running")
        assert QemuManager(mock_shell).status(100) == "running"
        mock_shell.run.assert_called_once_with("qm status 100")

    def test_unknown_when_command_fails(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result(exit_status=2, stderr="VM 100 does not exist")
        assert QemuManager(mock_shell).status(100) == "unknown"

    def test_unknown_when_output_unparsable(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result("garbage")
        assert QemuManager(mock_shell).status(100) == "unknown"


class TestFindAvailableId:
    def test_skips_ids_in_use(self, mock_shell, cmd_result):
        in_use = {"qm status 9100", "qm status 9101"}
        mock_shell.run.side_effect = lambda cmd, check=False: cmd_result(exit_status=0 if cmd in in_use else 2)

        assert QemuManager(mock_shell).find_available_id(9100) == 9102

    def test_first_id_free(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result(exit_status=2)
        assert QemuManager(mock_shell).find_available_id(9100) == 9100

    def test_gives_up_after_max_attempts(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result("status: stopped")

        with pytest.raises(TemplateIdExhaustedError, match="after checking 3 IDs"):
            QemuManager(mock_shell).find_available_id(9100, max_attempts=3)

        checked = [c.args[0] for c in mock_shell.run.call_args_list]
        assert checked == ["qm status 9100", "qm status 9101", "qm status 9102", "qm status 9103"]


class TestCreateInstallerVm:
    def test_boots_from_iso(self, mock_shell):
        QemuManager(mock_shell).create_installer_vm(
            9101,
            name="nixos-base-template-installer",
            iso_name="nixos-base-template.iso",
            storage_pool="local-lvm",
            iso_storage="local",
        )

        command = executed(mock_shell)[0]
        assert command.startswith("qm create 9101 --name 'nixos-base-template-installer'")
        assert "--memory 4096" in command
        assert "--cores 2" in command
        assert "--scsi0 local-lvm:20" in command
        assert "--ide2 local:iso/nixos-base-template.iso,media=cdrom" in command
        assert "--boot order=ide2" in command
        assert "--agent enabled=1" in command


class TestWaitForShutdown:
    def test_returns_elapsed_when_stopped(self, mock_shell, cmd_result):
        mock_shell.run.side_effect = [
            cmd_result("status: running"),
            cmd_result("status: running"),
            cmd_result("status: stopped"),
        ]
        sleep = mock.MagicMock()

        elapsed = QemuManager(mock_shell).wait_for_shutdown(9101, timeout=1800, interval=30, sleep=sleep)

        assert elapsed == 60
        assert sleep.call_args_list == [mock.call(30), mock.call(30)]

    def test_lost_connection_keeps_waiting(self, mock_shell, cmd_result):
        mock_shell.run.side_effect = [
            cmd_result("status: running"),
            RemoteCommandError("SSH connection to root@pve.local failed: SSH session not active"),
            cmd_result("status: stopped"),
        ]

        elapsed = QemuManager(mock_shell).wait_for_shutdown(9101, interval=30, sleep=mock.MagicMock())

        assert elapsed == 60

    def test_reconnects_after_dropped_session(self, mock_ssh_client):
        """A dropped SSH session is one unknown poll, then a fresh connection."""
        _, stdout, stderr = mock_ssh_client.exec_command.return_value
        stdout.read.return_value.decode.side_effect = ["status: running", "status: stopped"]
        mock_ssh_client.exec_command.side_effect = [
            (None, stdout, stderr),
            paramiko.SSHException("SSH session not active"),
            (None, stdout, stderr),
        ]

        elapsed = QemuManager(ProxmoxShell("pve.local")).wait_for_shutdown(
            9101, interval=30, sleep=mock.MagicMock()
        )

        assert elapsed == 60
        assert mock_ssh_client.connect.call_count == 2
        mock_ssh_client.close.assert_called_once()

    def test_unexpected_status_keeps_waiting(self, mock_shell, cmd_result, caplog):
        mock_shell.run.side_effect = [cmd_result("status: paused"), cmd_result("status: stopped")]

        with caplog.at_level(logging.WARNING):
            elapsed = QemuManager(mock_shell).wait_for_shutdown(9101, interval=30, sleep=mock.MagicMock())

        assert elapsed == 30
        assert "VM 9101 status: paused" in caplog.text

    def test_times_out(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result("status: running")
        sleep = mock.MagicMock()

        with pytest.raises(InstallTimeoutError) as excinfo:
            QemuManager(mock_shell).wait_for_shutdown(9101, timeout=90, interval=30, sleep=sleep)

        assert excinfo.value.vmid == 9101
        assert sleep.call_count == 3
        assert mock_shell.run.call_count == 3

    def test_dry_run_does_not_poll(self, mock_shell):
        mock_shell.dry_run = True
        sleep = mock.MagicMock()

        assert QemuManager(mock_shell).wait_for_shutdown(9101, sleep=sleep) == 0
        mock_shell.run.assert_not_called()
        sleep.assert_not_called()


class TestConvertToTemplate:
    def test_full_conversion(self, mock_shell):
        assert QemuManager(mock_shell).convert_to_template(9101, "nixos-base-template") is True
        assert executed(mock_shell) == [
            "qm set 9101 --ide2 none",
            "qm template 9101",
            "qm set 9101 --name 'nixos-base-template'",
        ]

    def test_iso_removal_failure_is_not_fatal(self, mock_shell):
        def execute(command, description):
            if "--ide2 none" in command:
                raise RemoteCommandError("Removing installation ISO failed")

        mock_shell.execute.side_effect = execute

        assert QemuManager(mock_shell).convert_to_template(9101, "tpl") is True
        assert "qm template 9101" in executed(mock_shell)

    def test_rename_failure_still_counts_as_template(self, mock_shell):
        def execute(command, description):
            if "--name" in command:
                raise RemoteCommandError("rename failed")

        mock_shell.execute.side_effect = execute

        assert QemuManager(mock_shell).convert_to_template(9101, "tpl") is False

    def test_template_failure_raises(self, mock_shell):
        def execute(command, description):
            if command.startswith("qm template"):
                raise RemoteCommandError("Converting VM 9101 to template failed")

        mock_shell.execute.side_effect = execute

        with pytest.raises(RemoteCommandError):
            QemuManager(mock_shell).convert_to_template(9101, "tpl")
        assert not any("--name" in c for c in executed(mock_shell))


class TestInspection:
    def test_get_config(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result("name: nixos-installer\nmemory: 4096\nnet0: virtio=AA:BB,bridge=vmbr0")

        config = QemuManager(mock_shell).get_config(9101)

        assert config == {"name": "nixos-installer", "memory": "4096", "net0": "virtio=AA:BB,bridge=vmbr0"}

    def test_get_config_missing_vm(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result(exit_status=2)
        assert QemuManager(mock_shell).get_config(1) is None

    def test_list_vms(self, mock_shell, cmd_result):
        mock_shell.run.return_value = cmd_result(
            "      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID\n"
            "       108 k3s-vm-pve           running    8192             200.00 1234\n"
            "      9101 nixos-installer      stopped    4096              20.00 0"
        )

        vms = QemuManager(mock_shell).list_vms()

        assert vms == [
            {"vmid": 108, "name": "k3s-vm-pve", "status": "running"},
            {"vmid": 9101, "name": "nixos-installer", "status": "stopped"},
        ]
