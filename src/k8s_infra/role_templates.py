"""Per-role Proxmox templates built from the nixos-k8s-<type>-<env> ISOs."""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from k8s_infra.config import Config
from k8s_infra.errors import K8sInfraError, PrerequisiteError, TemplateIdExhaustedError
from k8s_infra.iso import IsoUploader
from k8s_infra.logs import attach_log_file, detach_log_file
from k8s_infra.paths import ProjectPaths
from k8s_infra.qemu import QemuManager
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)

ISO_NAME_RE = re.compile(r"nixos-k8s-([^-]+)-([^.]+)\.iso")
TEMPLATE_INFO_FILE = "template-info.json"
TEMPLATE_IDS_FILE = "proxmox-template-ids.json"


@dataclass
class RoleIso:
    node_type: str
    environment: str


def parse_iso_name(iso_name: str) -> Optional[RoleIso]:
    match = ISO_NAME_RE.search(iso_name)
    if not match:
        return None
    return RoleIso(node_type=match.group(1), environment=match.group(2))


def role_template_name(role: RoleIso, nixos_version: str) -> str:
    """e.g. nixos-2311-k8s-control-dev for NixOS 23.11."""
    digits = re.sub(r"\D", "", nixos_version)
    return f"nixos-{digits}-k8s-{role.node_type}-{role.environment}"


@dataclass
class RoleTemplateSummary:
    created: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class RoleTemplateBuilder:
    """Turns every role ISO in build/isos into a cloud-init ready template."""

    def __init__(
        self,
        shell: ProxmoxShell,
        paths: ProjectPaths,
        storage_pool: Optional[str] = None,
        iso_storage: Optional[str] = None,
        start_id: Optional[int] = None,
        proxmox_node: Optional[str] = None,
        nixos_version: Optional[str] = None,
        bridge: Optional[str] = None,
    ) -> None:
        self.shell = shell
        self.paths = paths
        self.qemu = QemuManager(shell)
        self.storage_pool = storage_pool or Config.STORAGE_POOL
        self.iso_storage = iso_storage or Config.ISO_STORAGE
        self.start_id = start_id or Config.TEMPLATE_START_ID
        self.proxmox_node = proxmox_node or Config.PROXMOX_NODE
        self.nixos_version = nixos_version or Config.NIXOS_VERSION
        self.bridge = bridge or Config.NETWORK_BRIDGE
        self.uploader = IsoUploader(shell, iso_storage=self.iso_storage)

    @property
    def log_file(self) -> Path:
        return self.paths.log_dir / "template-creation.log"

    def iso_files(self) -> List[Path]:
        if not self.paths.iso_dir.is_dir():
            return []
        return sorted(self.paths.iso_dir.glob("*.iso"))

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites...")

        if not self.iso_files():
            raise PrerequisiteError(
                f"No ISOs found in {self.paths.iso_dir}",
                ["Run `k8s-infra iso build-roles` first"],
            )

        if not self.shell.test_connection():
            raise PrerequisiteError(
                f"Cannot connect to Proxmox server via SSH: {self.shell.target}",
                [
                    "SSH key authentication is set up",
                    "Proxmox server is accessible",
                    "User has sufficient privileges",
                ],
            )

        if not self.proxmox_node:
            logger.info("Auto-detecting Proxmox node...")
            self.proxmox_node = self.shell.hostname()
            logger.info(f"Detected Proxmox node: {self.proxmox_node}")

        logger.info("✅ Prerequisites check passed")

    def create_template(self, iso_file: Path, vmid: int) -> Dict[str, Any]:
        """Create one template; returns the entry appended to template-info.json.

        Raises:
            K8sInfraError: If the ISO name cannot be parsed or any step fails
        """
        role = parse_iso_name(iso_file.name)
        if role is None:
            raise K8sInfraError(f"Cannot parse ISO name: {iso_file.name}")
        name = role_template_name(role, self.nixos_version)

        logger.info(f"Creating template: {name} (VM ID: {vmid})")
        iso_name = self.uploader.upload(iso_file, skip_existing=True)

        self.shell.execute(
            f"qm create {vmid} --name {name} --memory 2048 --cores 2"
            f" --net0 virtio,bridge={self.bridge} --scsihw virtio-scsi-pci --ostype l26",
            f"Creating VM {vmid}",
        )
        self.qemu.import_disk(vmid, f"{self.uploader.remote_dir}/{iso_name}", self.storage_pool)

        for args in (
            f"--scsi0 {self.storage_pool}:vm-{vmid}-disk-0",
            "--boot c --bootdisk scsi0",
            f"--ide2 {self.storage_pool}:cloudinit",
            "--serial0 socket --vga serial0",
            "--agent enabled=1",
            "--ciuser nixos",
            "--sshkey /root/.ssh/authorized_keys",
        ):
            self.qemu.set_option(vmid, args)

        self.shell.execute(f"qm template {vmid}", f"Converting VM {vmid} to template")

        entry = {
            "vm_id": vmid,
            "name": name,
            "iso": iso_name,
            "node_type": role.node_type,
            "environment": role.environment,
        }
        if not self.shell.dry_run:
            with open(self.paths.templates_dir / TEMPLATE_INFO_FILE, "a") as f:
                f.write(json.dumps(entry) + "\n")

        logger.info(f"✅ Created template: {name}")
        return entry

    def create_templates(self) -> RoleTemplateSummary:
        logger.info("Creating Proxmox templates from ISOs...")
        summary = RoleTemplateSummary()
        vmid = self.start_id

        iso_files = self.iso_files()
        for index, iso_file in enumerate(iso_files):
            logger.info(f"Processing ISO: {iso_file.name}")

            try:
                vmid = self.qemu.find_available_id(vmid)
            except TemplateIdExhaustedError as e:
                logger.error(str(e))
                summary.failed.extend(iso.name for iso in iso_files[index:])
                break

            try:
                summary.created.append(self.create_template(iso_file, vmid))
            except K8sInfraError as e:
                logger.error(str(e))
                summary.failed.append(iso_file.name)

            vmid += 1

        if summary.created and not self.shell.dry_run:
            self.write_template_ids(summary.created)

        logger.info("Template creation summary:")
        logger.info(f"  Successful: {len(summary.created)}")
        logger.info(f"  Failed: {len(summary.failed)}")
        if summary.failed:
            logger.error("Some templates failed to create. Check logs for details.")
        return summary

    def write_template_ids(self, created: List[Dict[str, Any]]) -> Path:
        ids_file = self.paths.templates_dir / TEMPLATE_IDS_FILE
        data = {
            "templates": [{"iso": t["iso"], "vm_id": t["vm_id"]} for t in created],
            "created_at": datetime.now().astimezone().isoformat(timespec="seconds"),
            "proxmox_host": self.shell.host,
            "proxmox_node": self.proxmox_node,
        }
        ids_file.write_text(json.dumps(data, indent=2) + "\n")
        logger.info(f"Template information saved to: {ids_file}")
        return ids_file

    def run(self) -> RoleTemplateSummary:
        self.check_prerequisites()
        self.paths.ensure_build_dirs()
        handler = attach_log_file(self.log_file, "Proxmox Template Creation")
        try:
            logger.info("Starting Proxmox template creation...")
            return self.create_templates()
        finally:
            detach_log_file(handler)
