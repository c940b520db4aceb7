"""Readiness checks run before the first Terraform deployment."""

import logging
import re
import shutil
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import requests
import urllib3

from k8s_infra.base_template import load_template_info
from k8s_infra.errors import K8sInfraError
from k8s_infra.nixos_configs import is_placeholder
from k8s_infra.paths import ProjectPaths
from k8s_infra.terraform import TerraformRunner

logger = logging.getLogger(__name__)

PROXMOX_URL_RE = re.compile(r'^proxmox_api_url\s*=\s*"([^"]+)"', re.MULTILINE)
DEFAULT_API_PORT = 8006

TERRAFORM_REQUIRED_FILES = (
    "main.tf",
    "variables.tf",
    "providers.tf",
    "versions.tf",
    "outputs.tf",
    "environments/dev.tfvars.example",
    "environments/prod.tfvars.example",
)


@dataclass
class CheckResult:
    """Outcome of one check; only critical failures count as errors."""

    name: str
    passed: bool
    critical: bool = False
    messages: List[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return sum(1 for c in self.checks if c.critical and not c.passed)

    @property
    def passed(self) -> bool:
        return self.errors == 0


def extract_proxmox_url(tfvars: Path) -> Optional[str]:
    match = PROXMOX_URL_RE.search(tfvars.read_text())
    return match.group(1) if match else None


def tcp_reachable(host: str, port: int, timeout: float = 5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class Phase2Validator:
    """Checks configs, ISOs, templates, Terraform and Proxmox reachability."""

    def __init__(self, paths: ProjectPaths, terraform_dir: Optional[Path] = None) -> None:
        self.paths = paths
        self.terraform_dir = Path(terraform_dir) if terraform_dir else paths.terraform_dir

    def check_tooling(self) -> CheckResult:
        result = CheckResult("Tooling", passed=True)
        for tool, hint in (
            ("nixos-generate", "Install with: nix-env -iA nixpkgs.nixos-generators"),
            ("nix", "Install from: https://nixos.org/download.html"),
        ):
            if shutil.which(tool):
                result.messages.append(f"{tool} is available")
            else:
                logger.warning(f"{tool} not found. {hint}")
                result.messages.append(f"{tool} not found")

        runner = TerraformRunner(self.terraform_dir)
        if runner.available():
            try:
                result.messages.append(f"Terraform is available: {runner.version()}")
            except (K8sInfraError, ValueError) as e:
                result.messages.append(f"Terraform is available (version unknown: {e})")
        else:
            logger.warning("Terraform not found. Install from: https://www.terraform.io/downloads")
            result.messages.append("terraform not found")
        return result

    def check_nixos_configs(self) -> CheckResult:
        logger.info("Checking NixOS configurations...")
        result = CheckResult("NixOS configurations", passed=True, critical=True)
        nixos = self.paths.nixos_dir
        configs = [
            nixos / "common" / "configuration.nix",
            nixos / "dev" / "control.nix",
            nixos / "dev" / "worker.nix",
            nixos / "prod" / "control.nix",
            nixos / "prod" / "worker.nix",
        ]
        for config in configs:
            if not config.is_file():
                logger.error(f"Configuration file missing: {config}")
                result.messages.append(f"missing: {config}")
                result.passed = False
                continue

            try:
                placeholder = is_placeholder(config)
            except ValueError:
                logger.error(f"Configuration file is not valid UTF-8: {config}")
                result.messages.append(f"unreadable: {config}")
                result.passed = False
                continue

            if placeholder:
                logger.warning(f"Configuration file is just a placeholder: {config}")
                result.messages.append(f"placeholder: {config}")
                result.passed = False
            else:
                result.messages.append(f"populated: {config}")
        return result

    def check_isos(self) -> CheckResult:
        logger.info("Checking generated ISOs...")
        result = CheckResult("ISOs", passed=False)
        iso_dir = self.paths.iso_dir
        if not iso_dir.is_dir():
            result.messages.append(f"ISO directory not found: {iso_dir}")
            return result

        isos = sorted(p.name for p in iso_dir.rglob("*.iso"))
        if not isos:
            result.messages.append(f"No ISOs found in {iso_dir}")
            return result

        result.passed = True
        result.messages.append(f"Found {len(isos)} ISO(s) in {iso_dir}")
        result.messages.extend(f"  - {name}" for name in isos)
        return result

    def check_templates(self) -> CheckResult:
        logger.info("Checking Proxmox templates...")
        result = CheckResult("Proxmox templates", passed=False)
        try:
            record = load_template_info(self.paths)
        except (ValueError, KeyError) as e:
            result.messages.append(f"Unreadable template info: {e}")
            return result

        if record is None:
            result.messages.append("Proxmox template mapping not found")
            return result

        result.passed = True
        result.messages.append(f"Base template: {record.name} (VM ID {record.vm_id})")
        return result

    def check_terraform(self) -> CheckResult:
        logger.info("Checking Terraform configuration...")
        result = CheckResult("Terraform", passed=True, critical=True)
        tf_dir = self.terraform_dir
        if not tf_dir.is_dir():
            logger.error(f"Terraform directory not found: {tf_dir}")
            result.passed = False
            result.messages.append(f"Terraform directory not found: {tf_dir}")
            return result

        for name in TERRAFORM_REQUIRED_FILES:
            if not (tf_dir / name).is_file():
                logger.error(f"Required Terraform file missing: {tf_dir / name}")
                result.messages.append(f"missing: {name}")
                result.passed = False

        if not (tf_dir / "terraform.tfvars").is_file():
            result.messages.append("terraform.tfvars not found; copy environments/dev.tfvars.example")

        runner = TerraformRunner(tf_dir)
        if runner.available():
            if runner.validate():
                result.messages.append("Terraform configuration is valid")
            else:
                result.messages.append("Terraform configuration validation failed")
                result.passed = False
            if not runner.fmt_check():
                result.messages.append("Some files need formatting, run `terraform fmt -recursive`")
        else:
            result.messages.append("Terraform not found, skipping syntax validation")
        return result

    def check_connectivity(self) -> CheckResult:
        logger.info("Testing connectivity...")
        result = CheckResult("Connectivity", passed=True)
        tfvars = self.terraform_dir / "terraform.tfvars"
        if not tfvars.is_file():
            result.messages.append("terraform.tfvars not found, skipping connectivity tests")
            return result

        url = extract_proxmox_url(tfvars)
        if not url:
            result.passed = False
            result.messages.append("Could not extract Proxmox URL from terraform.tfvars")
            return result

        parsed = urlparse(url)
        host = parsed.hostname or ""
        try:
            port = parsed.port or DEFAULT_API_PORT
        except ValueError:
            result.passed = False
            result.messages.append(f"Invalid Proxmox URL in terraform.tfvars: {url}")
            return result
        if tcp_reachable(host, port):
            result.messages.append(f"Proxmox host is reachable: {host}")
        else:
            result.passed = False
            result.messages.append(f"Proxmox host is not reachable: {host}")

        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        try:
            requests.get(f"{url.rstrip('/')}/version", verify=False, timeout=5)
            result.messages.append("Proxmox API is accessible")
        except requests.RequestException:
            result.passed = False
            result.messages.append("Proxmox API is not accessible")
        return result

    def run(self) -> ValidationReport:
        logger.info("Starting Phase 2 validation...")
        report = ValidationReport()
        for check in (
            self.check_tooling,
            self.check_nixos_configs,
            self.check_isos,
            self.check_templates,
            self.check_terraform,
            self.check_connectivity,
        ):
            report.checks.append(check())

        if report.passed:
            logger.info("✅ Phase 2 validation passed!")
        else:
            logger.error(f"❌ Phase 2 validation failed with {report.errors} error(s)")
        return report
