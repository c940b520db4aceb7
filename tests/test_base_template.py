"""Tests for base_template module."""
import json
from unittest import mock

import pytest

from k8s_infra.base_template import TemplateBuilder, TemplateRecord, load_template_info
from k8s_infra.errors import InstallTimeoutError, PrerequisiteError, RemoteCommandError


@pytest.fixture
def builder(mock_shell, project_tree):
    builder = TemplateBuilder(
        mock_shell,
        project_tree,
        template_name="nixos-base-template",
        iso_name="nixos-base-template.iso",
        storage_pool="local-lvm",
        iso_storage="local",
        template_id_base=9100,
        proxmox_node="pve",
        install_timeout=1800,
        poll_interval=30,
        sleep=mock.MagicMock(),
    )
    builder.qemu = mock.MagicMock()
    builder.qemu.find_available_id.return_value = 9101
    builder.uploader = mock.MagicMock()
    return builder


class TestTemplateRecord:
    def test_json_layout(self, tmp_path):
        record = TemplateRecord(9101, "nixos-base-template", "nixos-base-template.iso", "2024-05-01T10:00:00+00:00", "pve.local", "pve")
        info = tmp_path / "templates" / "base-template-info.json"

        record.write(info)

        assert json.loads(info.read_text()) == {
            "template": {"vm_id": 9101, "name": "nixos-base-template", "iso": "nixos-base-template.iso"},
            "created_at": "2024-05-01T10:00:00+00:00",
            "proxmox_host": "pve.local",
            "proxmox_node": "pve",
        }
        assert TemplateRecord.load(info) == record

    def test_load_template_info_missing(self, project_tree):
        assert load_template_info(project_tree) is None


class TestPrerequisites:
    def test_missing_iso(self, builder):
        with pytest.raises(PrerequisiteError, match="Base template ISO not found") as excinfo:
            builder.check_prerequisites()
        assert "nixos-generate" in excinfo.value.hints[0]

    def test_ssh_failure(self, builder, mock_shell, project_tree):
        (project_tree.iso_dir / "nixos-base-template.iso").write_bytes(b"iso")
        mock_shell.test_connection.return_value = False

        with pytest.raises(PrerequisiteError, match="root@pve.local") as excinfo:
            builder.check_prerequisites()
        assert "SSH key authentication is set up" in excinfo.value.hints

    def test_detects_node(self, builder, mock_shell, project_tree):
        (project_tree.iso_dir / "nixos-base-template.iso").write_bytes(b"iso")
        builder.proxmox_node = ""
        mock_shell.hostname.return_value = "still-fawn"

        builder.check_prerequisites()

        assert builder.proxmox_node == "still-fawn"


class TestCreateBaseTemplate:
    def test_runs_workflow_in_order(self, builder, project_tree):
        record = builder.create_base_template()

        builder.qemu.find_available_id.assert_called_once_with(9100)
        builder.uploader.upload.assert_called_once_with(project_tree.iso_dir / "nixos-base-template.iso")
        builder.qemu.create_installer_vm.assert_called_once_with(
            9101,
            name="nixos-base-template-installer",
            iso_name="nixos-base-template.iso",
            storage_pool="local-lvm",
            iso_storage="local",
        )
        builder.qemu.start.assert_called_once_with(9101)
        builder.qemu.wait_for_shutdown.assert_called_once()
        assert builder.qemu.wait_for_shutdown.call_args.kwargs["timeout"] == 1800
        builder.qemu.convert_to_template.assert_called_once_with(9101, "nixos-base-template")

        assert record.vm_id == 9101
        assert record.proxmox_host == "pve.local"
        assert load_template_info(project_tree) == record

    def test_dry_run_writes_no_info(self, builder, mock_shell, project_tree):
        mock_shell.dry_run = True

        record = builder.create_base_template()

        assert record.vm_id == 9101
        assert not (project_tree.templates_dir / "base-template-info.json").exists()

    def test_timeout_removes_installer(self, builder):
        builder.qemu.wait_for_shutdown.side_effect = InstallTimeoutError(9101, 1800)
        builder.qemu.status.return_value = "running"

        with pytest.raises(InstallTimeoutError):
            builder.create_base_template()

        builder.qemu.stop.assert_called_once_with(9101)
        builder.qemu.destroy.assert_called_once_with(9101)
        builder.qemu.convert_to_template.assert_not_called()

    def test_keep_failed_installer(self, builder):
        builder.cleanup_on_failure = False
        builder.qemu.start.side_effect = RemoteCommandError("Starting VM 9101 failed")

        with pytest.raises(RemoteCommandError):
            builder.create_base_template()

        builder.qemu.destroy.assert_not_called()

    def test_cleanup_error_does_not_hide_original(self, builder):
        builder.qemu.wait_for_shutdown.side_effect = InstallTimeoutError(9101, 60)
        builder.qemu.status.return_value = "stopped"
        builder.qemu.destroy.side_effect = RemoteCommandError("Destroying VM 9101 failed")

        with pytest.raises(InstallTimeoutError):
            builder.create_base_template()

    def test_template_conversion_failure_removes_installer(self, builder):
        builder.qemu.convert_to_template.side_effect = RemoteCommandError("Converting VM 9101 to template failed")
        builder.qemu.status.return_value = "stopped"

        with pytest.raises(RemoteCommandError):
            builder.create_base_template()

        builder.qemu.stop.assert_not_called()
        builder.qemu.destroy.assert_called_once_with(9101)

    def test_create_failure_leaves_nothing_to_clean(self, builder):
        builder.qemu.create_installer_vm.side_effect = RemoteCommandError("Creating VM 9101 failed")

        with pytest.raises(RemoteCommandError):
            builder.create_base_template()

        builder.qemu.destroy.assert_not_called()


class TestRun:
    def test_writes_log_file(self, builder, project_tree):
        (project_tree.iso_dir / "nixos-base-template.iso").write_bytes(b"iso")

        builder.run()

        lines = builder.log_file.read_text().splitlines()
        assert lines[0].startswith("=== Proxmox Template Creation Log - ")
        assert any(line.endswith("[INFO] Starting Proxmox template creation...") for line in lines)
        assert any("✅ Base template created successfully!" in line for line in lines)
