"""Ubuntu cloud-init template built from the official cloud image."""

import logging
import tempfile
from pathlib import Path
from typing import Dict, Optional

import requests

from k8s_infra.config import Config
from k8s_infra.errors import K8sInfraError, TemplateExistsError
from k8s_infra.paths import ProjectPaths
from k8s_infra.qemu import QemuManager
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)

CLOUD_INIT_FILE = "ubuntu-cloud-init.yml"


def download_image(url: str, destination: Path, chunk_size: int = 8192) -> Path:
    """Stream a cloud image to disk.

    Raises:
        K8sInfraError: If the download fails
    """
    logger.info(f"📥 Downloading {url}...")
    try:
        response = requests.get(url, stream=True, timeout=60)
        response.raise_for_status()
        with open(destination, "wb") as image:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if chunk:
                    image.write(chunk)
    except requests.RequestException as e:
        raise K8sInfraError(f"Failed to download Ubuntu cloud image: {e}") from e
    logger.info("✅ Ubuntu image downloaded successfully")
    return destination


class UbuntuTemplateBuilder:
    """Creates the Ubuntu template consumed by the ubuntu-servers Terraform project."""

    def __init__(
        self,
        shell: ProxmoxShell,
        paths: ProjectPaths,
        template_id: Optional[int] = None,
        template_name: Optional[str] = None,
        vm_name: Optional[str] = None,
        version: Optional[str] = None,
        image_url: Optional[str] = None,
        storage: Optional[str] = None,
        snippets_storage: Optional[str] = None,
        bridge: Optional[str] = None,
        proxmox_node: Optional[str] = None,
    ) -> None:
        self.shell = shell
        self.paths = paths
        self.qemu = QemuManager(shell)
        self.template_id = template_id or Config.UBUNTU_TEMPLATE_ID
        self.version = version or Config.UBUNTU_VERSION
        self.template_name = template_name or Config.UBUNTU_TEMPLATE_NAME
        self.vm_name = vm_name or Config.UBUNTU_VM_NAME
        self.image_url = image_url or Config.UBUNTU_IMAGE_URL
        self.storage = storage or Config.UBUNTU_STORAGE
        self.snippets_storage = snippets_storage or Config.SNIPPETS_STORAGE
        self.bridge = bridge or Config.NETWORK_BRIDGE
        self.proxmox_node = proxmox_node or Config.PROXMOX_NODE

    @property
    def cloud_init_config(self) -> Path:
        return self.paths.ubuntu_dir / "cloud-init" / CLOUD_INIT_FILE

    @property
    def staging_dir(self) -> str:
        return f"/tmp/k8s-infra-ubuntu-{self.template_id}"

    def template_exists(self) -> bool:
        node = self.proxmox_node or self.shell.hostname()
        return self.shell.run(f"pvesh get /nodes/{node}/qemu/{self.template_id}/config").ok

    def stage_image(self) -> str:
        """Download the image locally and copy it to the host; returns the remote path."""
        image_name = Config.image_file_name(self.version)
        remote_path = f"{self.staging_dir}/{image_name}"

        if self.shell.dry_run:
            logger.info(f"[DRY RUN] Would download {self.image_url} and upload it to {remote_path}")
            return remote_path

        self.shell.run(f"mkdir -p {self.staging_dir}", check=True)
        with tempfile.TemporaryDirectory() as tmp:
            local = download_image(self.image_url, Path(tmp) / image_name)
            self.shell.upload(local, remote_path)
        return remote_path

    def apply_cloud_init_config(self) -> bool:
        if not self.cloud_init_config.is_file():
            return False

        logger.info("📋 Found cloud-init configuration, copying to Proxmox...")
        snippets_dir = Config.REMOTE_SNIPPETS_DIR
        if not self.shell.run(f"test -d {snippets_dir}").ok:
            logger.warning("⚠️  Snippets directory not found, skipping custom cloud-init")
            return False

        self.shell.upload(self.cloud_init_config, f"{snippets_dir}/{CLOUD_INIT_FILE}")
        self.qemu.set_option(
            self.template_id,
            f"--cicustom 'user={self.snippets_storage}:snippets/{CLOUD_INIT_FILE}'",
            "Applying cloud-init configuration",
        )
        return True

    def create(self) -> Dict[str, str]:
        """Build the template and return its details.

        Raises:
            TemplateExistsError: If the template id is already taken
            K8sInfraError: If any step fails
        """
        vmid = self.template_id
        logger.info(f"🚀 Creating Ubuntu {self.version} template for Proxmox...")
        logger.info(f"Template ID: {vmid}, name: {self.template_name}, storage: {self.storage}")

        if self.template_exists():
            raise TemplateExistsError(
                f"Template ID {vmid} already exists! To recreate, first run: qm destroy {vmid}"
            )

        image_path = self.stage_image()
        try:
            self.shell.execute(
                f"qm create {vmid} --name '{self.vm_name}' --memory 2048 --cores 2"
                f" --net0 virtio,bridge={self.bridge} --serial0 socket --vga serial0"
                f" --ostype l26 --cpu cputype=host --scsihw virtio-scsi-pci",
                f"🔧 Creating VM {vmid}",
            )
            self.qemu.import_disk(vmid, image_path, self.storage, fmt="raw")
            self.qemu.set_option(
                vmid,
                f"--scsi0 {self.storage}:vm-{vmid}-disk-0,cache=writeback,discard=on",
                "🔗 Attaching disk to VM",
            )
            self.qemu.set_option(vmid, f"--ide2 {self.storage}:cloudinit", "☁️  Adding cloud-init drive")
            self.qemu.set_option(vmid, "--boot c --bootdisk scsi0", "Configuring boot order")
            self.qemu.set_option(vmid, "--agent enabled=1", "Enabling QEMU guest agent")
            # Overridden by Terraform at clone time
            self.qemu.set_option(vmid, "--ciuser ubuntu", "Setting cloud-init user")
            self.qemu.set_option(vmid, '--cipassword "$(openssl passwd -6 ubuntu)"', "Setting cloud-init password")
            self.qemu.set_option(vmid, "--ipconfig0 ip=dhcp", "Setting cloud-init network")
            self.apply_cloud_init_config()
            self.shell.execute(f"qm template {vmid}", "📦 Converting VM to template")
        finally:
            if not self.shell.dry_run:
                self.shell.run(f"rm -rf {self.staging_dir}")

        logger.info("✅ Ubuntu template created successfully!")
        return {
            "id": str(vmid),
            "name": self.template_name,
            "node": self.proxmox_node or "",
            "storage": self.storage,
            "ubuntu_version": self.version,
        }
