"""Tests for role_templates module."""
import json
from unittest import mock

import pytest

from k8s_infra.errors import PrerequisiteError, TemplateIdExhaustedError
from k8s_infra.role_templates import RoleIso, RoleTemplateBuilder, parse_iso_name, role_template_name


def test_parse_iso_name():
    assert parse_iso_name("nixos-k8s-control-dev.iso") == RoleIso("control", "dev")
    assert parse_iso_name("nixos-k8s-worker-prod.iso") == RoleIso("worker", "prod")
    assert parse_iso_name("nixos-base-template.iso") is None


def test_role_template_name():
    assert role_template_name(RoleIso("control", "dev"), "23.11") == "nixos-2311-k8s-control-dev"


@pytest.fixture
def role_builder(mock_shell, project_tree, cmd_result):
    for name in ("nixos-k8s-control-dev.iso", "nixos-k8s-worker-dev.iso", "random.iso"):
        (project_tree.iso_dir / name).write_bytes(b"iso")

    # VM 9000 already exists on the host
    mock_shell.run.side_effect = lambda cmd, check=False: cmd_result(exit_status=0 if cmd == "qm status 9000" else 2)

    builder = RoleTemplateBuilder(
        mock_shell,
        project_tree,
        storage_pool="local-lvm",
        iso_storage="local",
        start_id=9000,
        proxmox_node="pve",
        nixos_version="24.11",
        bridge="vmbr0",
    )
    builder.uploader = mock.MagicMock()
    builder.uploader.remote_dir = "/var/lib/vz/template/iso"
    builder.uploader.upload.side_effect = lambda iso, skip_existing=False: iso.name
    return builder


class TestRoleTemplateBuilder:
    def test_creates_templates_with_running_id_counter(self, role_builder, project_tree):
        summary = role_builder.create_templates()

        assert [t["vm_id"] for t in summary.created] == [9001, 9002]
        assert [t["name"] for t in summary.created] == ["nixos-2411-k8s-control-dev", "nixos-2411-k8s-worker-dev"]
        assert summary.failed == ["random.iso"]
        assert not summary.ok

        info_lines = (project_tree.templates_dir / "template-info.json").read_text().splitlines()
        assert [json.loads(line)["node_type"] for line in info_lines] == ["control", "worker"]

        ids = json.loads((project_tree.templates_dir / "proxmox-template-ids.json").read_text())
        assert ids["templates"] == [
            {"iso": "nixos-k8s-control-dev.iso", "vm_id": 9001},
            {"iso": "nixos-k8s-worker-dev.iso", "vm_id": 9002},
        ]
        assert ids["proxmox_host"] == "pve.local"
        assert ids["proxmox_node"] == "pve"

    def test_configures_cloud_init_vm(self, role_builder, mock_shell):
        role_builder.create_template(role_builder.paths.iso_dir / "nixos-k8s-control-dev.iso", 9001)

        commands = [c.args[0] for c in mock_shell.execute.call_args_list]
        assert commands[0].startswith("qm create 9001 --name nixos-2411-k8s-control-dev --memory 2048")
        assert "--scsihw virtio-scsi-pci" in commands[0]
        assert commands[1] == "qm importdisk 9001 /var/lib/vz/template/iso/nixos-k8s-control-dev.iso local-lvm"
        assert "qm set 9001 --scsi0 local-lvm:vm-9001-disk-0" in commands
        assert "qm set 9001 --ide2 local-lvm:cloudinit" in commands
        assert "qm set 9001 --sshkey /root/.ssh/authorized_keys" in commands
        assert commands[-1] == "qm template 9001"
        role_builder.uploader.upload.assert_called_once_with(
            role_builder.paths.iso_dir / "nixos-k8s-control-dev.iso", skip_existing=True
        )

    def test_dry_run_writes_no_files(self, role_builder, mock_shell, project_tree):
        mock_shell.dry_run = True

        summary = role_builder.create_templates()

        assert len(summary.created) == 2
        assert not (project_tree.templates_dir / "template-info.json").exists()
        assert not (project_tree.templates_dir / "proxmox-template-ids.json").exists()

    def test_stops_when_no_free_id_is_left(self, role_builder, mock_shell, cmd_result, project_tree):
        # every id from 9000 to 9299 is taken
        mock_shell.run.side_effect = lambda cmd, check=False: cmd_result(
            exit_status=0 if cmd.startswith("qm status ") and int(cmd.split()[-1]) < 9300 else 2
        )

        with pytest.raises(TemplateIdExhaustedError):
            role_builder.qemu.find_available_id(9000)
        mock_shell.run.reset_mock()

        summary = role_builder.create_templates()

        assert mock_shell.run.call_count == 101
        assert summary.created == []
        assert sorted(summary.failed) == ["nixos-k8s-control-dev.iso", "nixos-k8s-worker-dev.iso", "random.iso"]
        mock_shell.execute.assert_not_called()
        assert not (project_tree.templates_dir / "proxmox-template-ids.json").exists()

    def test_prerequisites_need_isos(self, mock_shell, project_tree):
        with pytest.raises(PrerequisiteError, match="No ISOs found"):
            RoleTemplateBuilder(mock_shell, project_tree).check_prerequisites()
