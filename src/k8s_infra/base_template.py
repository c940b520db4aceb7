"""Base NixOS template creation on Proxmox.

The workflow is linear:

1. find a free VM id starting at the configured base id
2. upload the auto-install ISO (pruning older copies on the host)
3. create an installer VM that boots the ISO, and start it
4. wait until the installer powers the VM off
5. convert the VM to a template and record its details under build/templates
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from k8s_infra.config import Config
from k8s_infra.errors import K8sInfraError, PrerequisiteError
from k8s_infra.iso import IsoUploader
from k8s_infra.logs import attach_log_file, detach_log_file
from k8s_infra.paths import ProjectPaths
from k8s_infra.qemu import QemuManager
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)

INFO_FILE_NAME = "base-template-info.json"


@dataclass
class TemplateRecord:
    """Details of a created template, persisted as JSON."""

    vm_id: int
    name: str
    iso: str
    created_at: str
    proxmox_host: str
    proxmox_node: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template": {"vm_id": self.vm_id, "name": self.name, "iso": self.iso},
            "created_at": self.created_at,
            "proxmox_host": self.proxmox_host,
            "proxmox_node": self.proxmox_node,
        }

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")

    @classmethod
    def load(cls, path: Path) -> "TemplateRecord":
        data = json.loads(path.read_text())
        template = data["template"]
        return cls(
            vm_id=int(template["vm_id"]),
            name=template["name"],
            iso=template["iso"],
            created_at=data.get("created_at", ""),
            proxmox_host=data.get("proxmox_host", ""),
            proxmox_node=data.get("proxmox_node", ""),
        )


class TemplateBuilder:
    """Creates the single base NixOS template from the auto-install ISO."""

    def __init__(
        self,
        shell: ProxmoxShell,
        paths: ProjectPaths,
        template_name: Optional[str] = None,
        iso_name: Optional[str] = None,
        storage_pool: Optional[str] = None,
        iso_storage: Optional[str] = None,
        template_id_base: Optional[int] = None,
        proxmox_node: Optional[str] = None,
        install_timeout: Optional[int] = None,
        poll_interval: Optional[int] = None,
        cleanup_on_failure: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.shell = shell
        self.paths = paths
        self.qemu = QemuManager(shell)
        self.template_name = template_name or Config.TEMPLATE_NAME
        self.iso_name = iso_name or Config.ISO_NAME
        self.storage_pool = storage_pool or Config.STORAGE_POOL
        self.iso_storage = iso_storage or Config.ISO_STORAGE
        self.template_id_base = template_id_base or Config.TEMPLATE_ID_BASE
        self.proxmox_node = proxmox_node or Config.PROXMOX_NODE
        self.install_timeout = install_timeout or Config.INSTALL_TIMEOUT
        self.poll_interval = poll_interval or Config.INSTALL_POLL_INTERVAL
        self.cleanup_on_failure = cleanup_on_failure
        self.uploader = IsoUploader(shell, iso_storage=self.iso_storage)
        self._sleep = sleep

    @property
    def dry_run(self) -> bool:
        return self.shell.dry_run

    @property
    def iso_path(self) -> Path:
        return self.paths.iso_dir / self.iso_name

    @property
    def info_file(self) -> Path:
        return self.paths.templates_dir / INFO_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.paths.log_dir / "template-creation.log"

    def check_prerequisites(self) -> None:
        """Verify the ISO is built and the host is reachable; detect the node.

        Raises:
            PrerequisiteError: With remediation hints
        """
        logger.info("Checking prerequisites...")

        if not self.iso_path.exists():
            raise PrerequisiteError(
                f"Base template ISO not found: {self.iso_path}",
                [f"Run nixos-generate -f iso -c ./nixos/base-template.nix -o {self.iso_path} first"],
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

    def _discard_installer(self, vmid: int) -> None:
        if self.dry_run or not self.cleanup_on_failure:
            return
        logger.warning(f"Removing failed installer VM {vmid}")
        try:
            if self.qemu.status(vmid) == "running":
                self.qemu.stop(vmid)
            self.qemu.destroy(vmid)
        except K8sInfraError as e:
            logger.warning(f"Could not remove installer VM {vmid}: {e}")

    def install(self, vmid: int) -> None:
        """Create, boot and wait for the installer VM."""
        logger.info(f"Creating VM {vmid} for auto-installation...")
        self.qemu.create_installer_vm(
            vmid,
            name=f"{self.template_name}-installer",
            iso_name=self.iso_name,
            storage_pool=self.storage_pool,
            iso_storage=self.iso_storage,
        )

        try:
            self.qemu.start(vmid)
            logger.info("Waiting for automated installation to finish...")
            self.qemu.wait_for_shutdown(
                vmid,
                timeout=self.install_timeout,
                interval=self.poll_interval,
                sleep=self._sleep,
            )
        except K8sInfraError:
            self._discard_installer(vmid)
            raise

    def create_base_template(self) -> TemplateRecord:
        """Run the whole workflow and return the created template.

        Raises:
            K8sInfraError: From whichever step failed
        """
        logger.info("Creating base NixOS template with auto-installation...")

        template_id = self.qemu.find_available_id(self.template_id_base)
        self.uploader.upload(self.iso_path)
        self.install(template_id)
        try:
            self.qemu.convert_to_template(template_id, self.template_name)
        except K8sInfraError:
            self._discard_installer(template_id)
            raise

        record = TemplateRecord(
            vm_id=template_id,
            name=self.template_name,
            iso=self.iso_name,
            created_at=datetime.now().astimezone().isoformat(timespec="seconds"),
            proxmox_host=self.shell.host,
            proxmox_node=self.proxmox_node,
        )
        if not self.dry_run:
            record.write(self.info_file)

        logger.info("✅ Base template created successfully!")
        logger.info(f"Template ID: {template_id}")
        logger.info(f"Template Name: {self.template_name}")
        return record

    def setup_log(self) -> logging.Handler:
        """Start a fresh template-creation.log, creating the build directories."""
        self.paths.ensure_build_dirs()
        return attach_log_file(self.log_file, "Proxmox Template Creation")

    def run(self) -> TemplateRecord:
        """Prerequisites, log setup and template creation in one call."""
        self.check_prerequisites()
        handler = self.setup_log()
        try:
            logger.info("Starting Proxmox template creation...")
            return self.create_base_template()
        finally:
            detach_log_file(handler)


def load_template_info(paths: ProjectPaths) -> Optional[TemplateRecord]:
    info_file = paths.templates_dir / INFO_FILE_NAME
    if not info_file.is_file():
        return None
    return TemplateRecord.load(info_file)