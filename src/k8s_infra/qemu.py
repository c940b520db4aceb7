"""Thin wrapper over the Proxmox `qm` command."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from k8s_infra.errors import InstallTimeoutError, RemoteCommandError, TemplateIdExhaustedError
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)


class QemuManager:
    """VM lifecycle operations executed with `qm` over SSH."""

    def __init__(self, shell: ProxmoxShell) -> None:
        self.shell = shell

    @property
    def dry_run(self) -> bool:
        return self.shell.dry_run

    def status(self, vmid: int) -> str:
        """Return the VM power state reported by `qm status`, or "unknown".

        A lost SSH connection also yields "unknown"; the next call reconnects.
        """
        try:
            result = self.shell.run(f"qm status {vmid}")
        except RemoteCommandError as e:
            logger.debug(f"Status poll of VM {vmid} failed: {e}")
            return "unknown"
        if not result.ok:
            return "unknown"
        fields = result.stdout.split()
        return fields[1] if len(fields) > 1 else "unknown"

    def exists(self, vmid: int) -> bool:
        return self.shell.run(f"qm status {vmid}").ok

    def find_available_id(self, start: int, max_attempts: int = 100) -> int:
        """Find the first VM id at or above start that is not in use.

        Raises:
            TemplateIdExhaustedError: If more than max_attempts ids are taken
        """
        logger.info(f"Finding available template ID starting from {start}...")
        current = start

        while self.exists(current):
            logger.info(f"Template ID {current} is in use, trying next...")
            current += 1
            if current > start + max_attempts:
                raise TemplateIdExhaustedError(
                    f"Could not find available template ID after checking {max_attempts} IDs"
                )

        logger.info(f"Found available template ID: {current}")
        return current

    def create_installer_vm(
        self,
        vmid: int,
        name: str,
        iso_name: str,
        storage_pool: str,
        iso_storage: str,
        memory: int = 4096,
        cores: int = 2,
        disk_gb: int = 20,
        bridge: str = "vmbr0",
    ) -> None:
        """Create a VM that boots the auto-install ISO onto an empty disk."""
        command = (
            f"qm create {vmid}"
            f" --name '{name}'"
            f" --memory {memory}"
            f" --cores {cores}"
            f" --net0 virtio,bridge={bridge}"
            f" --scsi0 {storage_pool}:{disk_gb}"
            f" --ide2 {iso_storage}:iso/{iso_name},media=cdrom"
            f" --boot order=ide2"
            f" --ostype l26"
            f" --agent enabled=1"
        )
        self.shell.execute(command, f"Creating VM {vmid}")

    def start(self, vmid: int) -> None:
        self.shell.execute(f"qm start {vmid}", f"Starting VM {vmid}")

    def stop(self, vmid: int) -> None:
        self.shell.execute(f"qm stop {vmid}", f"Stopping VM {vmid}")

    def destroy(self, vmid: int) -> None:
        self.shell.execute(f"qm destroy {vmid}", f"Destroying VM {vmid}")

    def set_option(self, vmid: int, args: str, description: Optional[str] = None) -> None:
        self.shell.execute(f"qm set {vmid} {args}", description or f"Configuring VM {vmid}")

    def import_disk(self, vmid: int, image_path: str, storage: str, fmt: Optional[str] = None) -> None:
        command = f"qm importdisk {vmid} {image_path} {storage}"
        if fmt:
            command += f" --format {fmt}"
        self.shell.execute(command, f"Importing disk for VM {vmid}")

    def wait_for_shutdown(
        self,
        vmid: int,
        timeout: int = 1800,
        interval: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Poll the VM until the installer powers it off.

        Returns:
            Seconds elapsed when the VM was first seen stopped

        Raises:
            InstallTimeoutError: If the VM is still not stopped after timeout
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would wait up to {timeout}s for VM {vmid} to stop")
            return 0

        logger.info(f"Monitoring VM {vmid} automated installation progress...")
        elapsed = 0

        while elapsed < timeout:
            state = self.status(vmid)

            if state == "stopped":
                logger.info(f"✅ VM {vmid} has stopped - installation complete!")
                return elapsed
            if state == "running":
                logger.info(f"Automated installation in progress... ({elapsed}s elapsed)")
            else:
                logger.warning(f"VM {vmid} status: {state} ({elapsed}s elapsed)")

            sleep(interval)
            elapsed += interval

        logger.error(f"Automated installation timeout after {timeout}s - VM may have failed")
        raise InstallTimeoutError(vmid, timeout)

    def convert_to_template(self, vmid: int, name: str) -> bool:
        """Detach the installer ISO, convert the VM and give it its final name.

        Returns:
            True if the rename succeeded as well

        Raises:
            RemoteCommandError: If `qm template` fails
        """
        logger.info(f"Converting VM {vmid} to template...")

        try:
            self.set_option(vmid, "--ide2 none", "Removing installation ISO")
        except RemoteCommandError:
            logger.warning("Failed to remove ISO, continuing...")

        self.shell.execute(f"qm template {vmid}", f"Converting VM {vmid} to template")

        try:
            self.set_option(vmid, f"--name '{name}'", f"Renaming template to {name}")
        except RemoteCommandError:
            logger.warning("Template created but rename failed")
            return False

        logger.info("✅ Template conversion complete!")
        return True

    def get_config(self, vmid: int) -> Optional[Dict[str, str]]:
        """Parse `qm config` into a dict, or None if the VM does not exist."""
        result = self.shell.run(f"qm config {vmid}")
        if not result.ok:
            return None

        config: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition(":")
            if sep:
                config[key.strip()] = value.strip()
        return config

    def list_vms(self) -> List[Dict[str, Any]]:
        """Parse the `qm list` table into dicts with vmid, name and status."""
        result = self.shell.run("qm list", check=True)
        vms = []
        for line in result.stdout.splitlines()[1:]:
            fields = line.split()
            if len(fields) < 3 or not fields[0].isdigit():
                continue
            vms.append({"vmid": int(fields[0]), "name": fields[1], "status": fields[2]})
        return vms
