"""Removal of installer VMs left behind by interrupted template builds."""

import logging
from typing import Dict, Iterable, List, Optional

from k8s_infra.errors import RemoteCommandError
from k8s_infra.qemu import QemuManager
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)

INSTALLER_MARKER = "installer"

REMOVED = "removed"
FAILED = "failed"
MISSING = "missing"
SKIPPED = "skipped"


def is_installer_name(name: str) -> bool:
    return INSTALLER_MARKER in name


class InstallerCleanup:
    def __init__(self, shell: ProxmoxShell) -> None:
        self.qemu = QemuManager(shell)

    def find_installer_vms(self) -> List[int]:
        """VM ids whose name marks them as installer VMs."""
        return [vm["vmid"] for vm in self.qemu.list_vms() if is_installer_name(vm["name"])]

    def cleanup(self, vmids: Optional[Iterable[int]] = None) -> Dict[int, str]:
        """Destroy installer VMs, by explicit id or all that can be found.

        VMs that exist but are not named like an installer are left alone.

        Returns:
            Outcome per VM id: removed, failed, missing or skipped
        """
        candidates = list(vmids) if vmids else self.find_installer_vms()
        logger.info("🧹 Cleaning up orphaned installer VMs...")

        outcomes: Dict[int, str] = {}
        for vmid in candidates:
            logger.info(f"Checking VM {vmid}...")
            config = self.qemu.get_config(vmid)
            if config is None:
                logger.info(f"ℹ️  VM {vmid} doesn't exist (already cleaned up)")
                outcomes[vmid] = MISSING
                continue

            name = config.get("name", "unknown")
            if not is_installer_name(name):
                logger.warning(f"⚠️  VM {vmid} exists but doesn't appear to be an installer VM ({name}), skipping")
                outcomes[vmid] = SKIPPED
                continue

            logger.info(f"Found installer VM: {vmid} ({name})")
            try:
                self.qemu.destroy(vmid)
                outcomes[vmid] = REMOVED
            except RemoteCommandError as e:
                logger.error(f"❌ Failed to remove VM {vmid}: {e}")
                outcomes[vmid] = FAILED

        logger.info("✅ Cleanup complete!")
        return outcomes
