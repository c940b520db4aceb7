"""End-to-end flows chaining the individual workflows."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from k8s_infra.base_template import TemplateBuilder, TemplateRecord
from k8s_infra.config import Config
from k8s_infra.errors import ConfigurationError, K8sInfraError, PrerequisiteError
from k8s_infra.iso import IsoBuilder
from k8s_infra.paths import ProjectPaths
from k8s_infra.terraform import TerraformRunner
from k8s_infra.ubuntu import UbuntuTemplateBuilder

logger = logging.getLogger(__name__)

TERRAFORM_ACTIONS = ("plan", "apply", "destroy")
SUMMARY_OUTPUTS = ("ubuntu_servers", "ssh_connection_commands", "ansible_inventory_file")


class NixosTemplatePipeline:
    """Generate the base ISO, then turn it into a Proxmox template."""

    def __init__(self, iso_builder: IsoBuilder, template_builder: TemplateBuilder, clean: bool = False) -> None:
        self.iso_builder = iso_builder
        self.template_builder = template_builder
        self.clean = clean

    @property
    def dry_run(self) -> bool:
        return self.template_builder.dry_run

    def generate_iso(self) -> Optional[Path]:
        logger.info("=== STEP 1: Generating NixOS ISO ===")
        if self.dry_run:
            logger.info(f"[DRY RUN] Would generate {self.iso_builder.iso_name} (clean: {self.clean})")
            return None
        iso_path = self.iso_builder.build_base(clean=self.clean)
        logger.info("✅ ISO generation completed")
        return iso_path

    def deploy_template(self) -> TemplateRecord:
        logger.info("=== STEP 2: Deploying template to Proxmox ===")
        record = self.template_builder.run()
        logger.info("✅ Template deployment completed")
        return record

    def _step(self, name: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except K8sInfraError:
            logger.error(f"Pipeline failed at {name} step")
            raise

    def run(self) -> TemplateRecord:
        logger.info("Starting complete NixOS template build and deployment pipeline...")
        self._step("ISO generation", self.generate_iso)
        record = self._step("template deployment", self.deploy_template)
        logger.info("✅ Complete pipeline finished successfully!")
        return record


@dataclass
class DeploymentSummary:
    environment: str
    action: str
    template_created: bool
    outputs: Dict[str, Any] = field(default_factory=dict)


class UbuntuDeployment:
    """Ubuntu template plus the ubuntu-servers Terraform project."""

    def __init__(
        self,
        paths: ProjectPaths,
        template_builder: Optional[UbuntuTemplateBuilder] = None,
        environment: Optional[str] = None,
        action: Optional[str] = None,
        skip_template: bool = False,
        skip_terraform: bool = False,
        runner: Optional[TerraformRunner] = None,
    ) -> None:
        self.paths = paths
        self.template_builder = template_builder
        self.environment = environment or Config.ENVIRONMENT
        self.action = action or Config.TERRAFORM_ACTION
        self.skip_template = skip_template
        self.skip_terraform = skip_terraform
        self.runner = runner or TerraformRunner(self.project_dir)

    @property
    def project_dir(self) -> Path:
        return self.paths.terraform_dir / "projects" / "ubuntu-servers"

    @property
    def var_file(self) -> str:
        return f"environments/{self.environment}.tfvars"

    def validate_environment(self) -> None:
        """Raises PrerequisiteError or ConfigurationError before anything runs."""
        logger.info("Validating environment...")
        if self.action not in TERRAFORM_ACTIONS:
            raise ConfigurationError(f"Unknown Terraform action: {self.action}")
        if not self.runner.available():
            raise PrerequisiteError("Terraform is not installed or not in PATH")
        if not self.project_dir.is_dir():
            raise PrerequisiteError(f"Ubuntu servers directory not found: {self.project_dir}")
        tfvars = self.project_dir / self.var_file
        if not tfvars.is_file():
            raise PrerequisiteError(f"Environment file not found: {tfvars}")
        if not self.skip_template and self.template_builder is None:
            raise ConfigurationError("Template creation requested but no Proxmox host is configured")
        logger.info("✅ Environment validation passed")

    def create_template(self) -> bool:
        if self.skip_template:
            logger.warning("⚠️  Skipping template creation (SKIP_TEMPLATE=true)")
            return False
        logger.info("Creating Ubuntu template...")
        self.template_builder.create()
        return True

    def deploy(self) -> None:
        if self.skip_terraform:
            logger.warning("⚠️  Skipping Terraform deployment (SKIP_TERRAFORM=true)")
            return

        logger.info("Deploying Ubuntu infrastructure with Terraform...")
        self.runner.init()
        if not self.runner.validate():
            raise K8sInfraError("Terraform validation failed")

        if self.action == "plan":
            self.runner.plan(self.var_file)
        elif self.action == "apply":
            self.runner.apply(self.var_file)
        else:
            self.runner.destroy(self.var_file)

    def collect_outputs(self) -> Dict[str, Any]:
        if self.action != "apply" or self.skip_terraform:
            return {}
        outputs = {}
        for name in SUMMARY_OUTPUTS:
            value = self.runner.output(name)
            if value is not None:
                outputs[name] = value
        return outputs

    def run(self) -> DeploymentSummary:
        logger.info(f"🚀 Ubuntu infrastructure build and deploy ({self.environment}, {self.action})")
        self.validate_environment()
        created = self.create_template()
        self.deploy()
        summary = DeploymentSummary(
            environment=self.environment,
            action=self.action,
            template_created=created,
            outputs=self.collect_outputs(),
        )
        logger.info("✅ Ubuntu infrastructure deployment completed!")
        return summary
