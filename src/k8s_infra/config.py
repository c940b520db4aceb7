import os
from typing import Optional, Tuple

from dotenv import load_dotenv

from k8s_infra.paths import ProjectPaths


def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Loads and manages configuration from environment variables.

    Values come from the process environment, then `.env` in the working
    directory, then `shared/config/defaults.env` in the project root. Earlier
    sources win.
    """

    load_dotenv()
    load_dotenv(ProjectPaths.discover().shared_config_file)

    # Proxmox access
    PROXMOX_HOST = os.getenv("PROXMOX_HOST", "")
    PROXMOX_USER = os.getenv("PROXMOX_USER", "root")
    PROXMOX_NODE = os.getenv("PROXMOX_NODE", "")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
    SSH_CONNECT_TIMEOUT = int(os.getenv("SSH_CONNECT_TIMEOUT", "5"))
    API_TOKEN = os.getenv("API_TOKEN")

    # Storage
    STORAGE_POOL = os.getenv("STORAGE_POOL", "local-lvm")
    ISO_STORAGE = os.getenv("ISO_STORAGE", "local")
    REMOTE_ISO_DIR = os.getenv("REMOTE_ISO_DIR", "/var/lib/vz/template/iso")
    REMOTE_SNIPPETS_DIR = os.getenv("REMOTE_SNIPPETS_DIR", "/var/lib/vz/snippets")
    ISO_KEEP_COUNT = int(os.getenv("ISO_KEEP_COUNT", "3"))
    NETWORK_BRIDGE = os.getenv("NETWORK_BRIDGE", "vmbr0")

    # NixOS base template
    TEMPLATE_ID_BASE = int(os.getenv("TEMPLATE_ID_BASE", "9100"))
    TEMPLATE_START_ID = int(os.getenv("TEMPLATE_START_ID", "9000"))
    TEMPLATE_NAME = os.getenv("NIXOS_TEMPLATE_NAME", "nixos-base-template")
    ISO_NAME = os.getenv("ISO_NAME", "nixos-base-template.iso")
    NIXOS_VERSION = os.getenv("NIXOS_VERSION", "24.11")
    INSTALL_TIMEOUT = int(os.getenv("INSTALL_TIMEOUT", "1800"))
    INSTALL_POLL_INTERVAL = int(os.getenv("INSTALL_POLL_INTERVAL", "30"))

    DRY_RUN = _as_bool(os.getenv("DRY_RUN", "false"))

    # Ubuntu cloud-init template
    UBUNTU_VERSION = os.getenv("UBUNTU_VERSION", "25.04")
    UBUNTU_IMAGE_URL = os.getenv(
        "UBUNTU_IMAGE_URL",
        "https://cloud-images.ubuntu.com/plucky/current/plucky-server-cloudimg-amd64.img",
    )
    UBUNTU_TEMPLATE_ID = int(os.getenv("UBUNTU_TEMPLATE_ID", "9000"))
    UBUNTU_TEMPLATE_NAME = os.getenv("UBUNTU_TEMPLATE_NAME", f"ubuntu-{UBUNTU_VERSION}-cloud-init")
    UBUNTU_VM_NAME = os.getenv("UBUNTU_VM_NAME", f"ubuntu-{UBUNTU_VERSION}-template")
    UBUNTU_STORAGE = os.getenv("UBUNTU_STORAGE", "local-lvm")
    SNIPPETS_STORAGE = os.getenv("SNIPPETS_STORAGE", "local")

    # Terraform deployment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")
    TERRAFORM_ACTION = os.getenv("TERRAFORM_ACTION", "apply")
    SKIP_TEMPLATE = _as_bool(os.getenv("SKIP_TEMPLATE", "false"))
    SKIP_TERRAFORM = _as_bool(os.getenv("SKIP_TERRAFORM", "false"))

    @classmethod
    def get_api_token(cls) -> Tuple[str, str, str]:
        """Split API_TOKEN into (user, token_name, token_value).

        Raises:
            ValueError: If API_TOKEN is not set or malformed
        """
        if not cls.API_TOKEN:
            raise ValueError("API_TOKEN environment variable is not set")
        try:
            user_token, token_value = cls.API_TOKEN.split("=", 1)
            user, token_name = user_token.split("!", 1)
        except ValueError:
            raise ValueError("API_TOKEN must look like 'user@realm!tokenid=secret'")
        return user, token_name, token_value

    @staticmethod
    def image_file_name(version: str) -> str:
        """Local file name of the Ubuntu cloud image for a release."""
        return f"ubuntu-{version}-cloudimg-amd64.img"
