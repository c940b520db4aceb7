import json
import logging
from typing import Any, Dict, List, Optional

from proxmoxer import ProxmoxAPI

from k8s_infra.config import Config
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Read-only Proxmox API access with a pvesh-over-SSH fallback for SSL failures."""

    def __init__(self, host: str, verify_ssl: bool = False, shell: Optional[ProxmoxShell] = None) -> None:
        self.host = host
        self.shell = shell
        self.cli_mode = False

        self.user, self.token_name, self.api_token = Config.get_api_token()

        try:
            self.proxmox: Optional[ProxmoxAPI] = ProxmoxAPI(
                host, user=self.user, token_name=self.token_name, token_value=self.api_token, verify_ssl=verify_ssl
            )
        except Exception as e:
            error_msg = str(e)
            if ("SSL" in error_msg or "certificate" in error_msg) and shell is not None:
                logger.warning(f"API connection failed ({error_msg}), using CLI fallback")
                self.cli_mode = True
                self.proxmox = None
            else:
                raise

    def _pvesh(self, path: str) -> Any:
        """Run `pvesh get` on the host and return the parsed JSON."""
        assert self.shell is not None
        result = self.shell.run(f"pvesh get {path} --output-format json", check=True)
        return json.loads(result.stdout)

    def list_vms(self, node: str) -> List[Dict[str, Any]]:
        if self.cli_mode:
            return self._pvesh(f"/nodes/{node}/qemu")  # type: ignore[no-any-return]
        return self.proxmox.nodes(node).qemu.get()  # type: ignore[no-any-return, union-attr]

    def list_templates(self, node: str) -> List[Dict[str, Any]]:
        """VMs flagged as templates, sorted by id."""
        templates = [vm for vm in self.list_vms(node) if int(vm.get("template", 0)) == 1]
        return sorted(templates, key=lambda vm: int(vm["vmid"]))

    def get_vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        if self.cli_mode:
            return self._pvesh(f"/nodes/{node}/qemu/{vmid}/config")  # type: ignore[no-any-return]
        return self.proxmox.nodes(node).qemu(vmid).config.get()  # type: ignore[no-any-return, union-attr]
