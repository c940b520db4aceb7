"""Template, ISO and validation orchestration for the Proxmox homelab."""

__version__ = "0.3.0"
