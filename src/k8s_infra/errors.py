"""Exceptions raised by the orchestration workflows."""

from typing import List, Optional


class K8sInfraError(Exception):
    """Base class for all workflow failures."""


class ConfigurationError(K8sInfraError):
    """Invalid option or configuration value."""


class PrerequisiteError(K8sInfraError):
    """A required tool, file or connection is missing.

    Args:
        message: Short description of what is missing
        hints: Follow-up instructions shown to the user
    """

    def __init__(self, message: str, hints: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.hints = hints or []


class RemoteCommandError(K8sInfraError):
    """A command executed on the Proxmox host exited non-zero."""

    def __init__(self, message: str, command: str = "", exit_status: int = -1, stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class TemplateIdExhaustedError(K8sInfraError):
    """No free VM id was found in the searched range."""


class TemplateExistsError(K8sInfraError):
    """The requested template id is already taken."""


class InstallTimeoutError(K8sInfraError):
    """The automated installer did not power off the VM in time."""

    def __init__(self, vmid: int, timeout: int) -> None:
        super().__init__(f"Automated installation timeout after {timeout}s - VM {vmid} may have failed")
        self.vmid = vmid
        self.timeout = timeout


class IsoGenerationError(K8sInfraError):
    """nixos-generate failed or produced no ISO file."""


class TerraformError(K8sInfraError):
    """A terraform subcommand failed."""
