"""
Command-line interface for the homelab infrastructure workflows.
Wraps ISO generation, Proxmox template creation, deployment and validation.
"""

from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from k8s_infra.base_template import TemplateBuilder
from k8s_infra.cleanup import InstallerCleanup
from k8s_infra.config import Config
from k8s_infra.errors import ConfigurationError, K8sInfraError, PrerequisiteError
from k8s_infra.iso import IsoBuilder
from k8s_infra.logs import configure_logging
from k8s_infra.nixos_configs import NixosConfigWriter
from k8s_infra.paths import ProjectPaths
from k8s_infra.pipeline import NixosTemplatePipeline, UbuntuDeployment
from k8s_infra.proxmox_api import ProxmoxClient
from k8s_infra.remote import ProxmoxShell
from k8s_infra.role_templates import RoleTemplateBuilder
from k8s_infra.ubuntu import UbuntuTemplateBuilder
from k8s_infra.validation import Phase2Validator

app = typer.Typer(
    name="k8s-infra",
    help="NixOS/Ubuntu template and ISO orchestration for Proxmox",
    add_completion=False,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    debug: bool = typer.Option(False, "--debug", help="Debug output, including remote commands"),
) -> None:
    configure_logging(verbose=verbose, debug=debug)


def _fail(error: K8sInfraError) -> NoReturn:
    console.print(f"❌ {error}")
    if isinstance(error, PrerequisiteError):
        for hint in error.hints:
            console.print(f"   • {hint}")
    raise typer.Exit(1)


def _shell(host: str, user: str, dry_run: bool) -> ProxmoxShell:
    if not host:
        raise ConfigurationError("Proxmox host is required. Use --proxmox-host or set PROXMOX_HOST")
    return ProxmoxShell(host, user=user, dry_run=dry_run)


HOST_OPTION = typer.Option(Config.PROXMOX_HOST, "--proxmox-host", help="Proxmox server hostname or IP")
USER_OPTION = typer.Option(Config.PROXMOX_USER, "--proxmox-user", help="Proxmox SSH user")
NODE_OPTION = typer.Option(Config.PROXMOX_NODE, "--proxmox-node", help="Proxmox node (auto-detected if empty)")
STORAGE_OPTION = typer.Option(Config.STORAGE_POOL, "--storage", help="Storage pool for VM disks")
ISO_STORAGE_OPTION = typer.Option(Config.ISO_STORAGE, "--iso-storage", help="Storage for ISO files")
DRY_RUN_OPTION = typer.Option(Config.DRY_RUN, "--dry-run", help="Show what would be done without executing")


@app.command("paths")
def show_paths() -> None:
    """Show the resolved project directories."""
    paths = ProjectPaths.discover()

    table = Table(title="Project Paths")
    table.add_column("Name", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Exists")
    for label, path in paths.as_dict().items():
        table.add_row(label, str(path), "✅" if path.exists() else "❌")
    console.print(table)

    for missing in paths.missing():
        console.print(f"⚠️  Required directory not found: {missing}")


# === ISO COMMANDS ===

iso_app = typer.Typer(help="NixOS ISO generation")
app.add_typer(iso_app, name="iso")


@iso_app.command("build")
def iso_build(
    clean: bool = typer.Option(False, "--clean", help="Clean build directory before generation"),
    iso_name: str = typer.Option(Config.ISO_NAME, "--iso-name", help="Output ISO file name"),
) -> None:
    """Generate the base template ISO with automated installation."""
    try:
        iso_path = IsoBuilder(ProjectPaths.discover(), iso_name=iso_name).build_base(clean=clean)
    except K8sInfraError as e:
        _fail(e)
    console.print(f"✅ ISO generated: {iso_path}")


@iso_app.command("build-roles")
def iso_build_roles(
    node_type: str = typer.Option("all", "--type", "-t", help="Node type: control, worker, all"),
    environment: str = typer.Option("all", "--environment", "-e", help="Environment: dev, prod, all"),
    clean: bool = typer.Option(False, "--clean", help="Clean build directory before generation"),
) -> None:
    """Generate one ISO per node type and environment."""
    try:
        result = IsoBuilder(ProjectPaths.discover()).build_roles(node_type, environment, clean=clean)
    except K8sInfraError as e:
        _fail(e)

    for iso in result.built:
        console.print(f"✅ {iso.name}")
    for label in result.skipped:
        console.print(f"⚠️  skipped {label} (no configuration)")
    for label in result.failed:
        console.print(f"❌ {label}")
    if not result.ok:
        raise typer.Exit(1)


# === TEMPLATE COMMANDS ===

template_app = typer.Typer(help="Proxmox template management")
app.add_typer(template_app, name="template")


@template_app.command("create")
def template_create(
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    proxmox_node: str = NODE_OPTION,
    storage: str = STORAGE_OPTION,
    iso_storage: str = ISO_STORAGE_OPTION,
    template_id: int = typer.Option(Config.TEMPLATE_ID_BASE, "--template-id", help="First VM id to try"),
    template_name: str = typer.Option(Config.TEMPLATE_NAME, "--template-name", help="Template name"),
    iso_name: str = typer.Option(Config.ISO_NAME, "--iso-name", help="ISO file in build/isos"),
    timeout: int = typer.Option(Config.INSTALL_TIMEOUT, "--timeout", help="Installation timeout in seconds"),
    keep_failed: bool = typer.Option(False, "--keep-failed", help="Keep the installer VM if installation fails"),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Create the base NixOS template from the auto-install ISO."""
    try:
        with _shell(proxmox_host, proxmox_user, dry_run) as shell:
            record = TemplateBuilder(
                shell,
                ProjectPaths.discover(),
                template_name=template_name,
                iso_name=iso_name,
                storage_pool=storage,
                iso_storage=iso_storage,
                template_id_base=template_id,
                proxmox_node=proxmox_node,
                install_timeout=timeout,
                cleanup_on_failure=not keep_failed,
            ).run()
    except K8sInfraError as e:
        _fail(e)

    console.print(f"✅ Template {record.name} created (VM ID {record.vm_id})")


@template_app.command("create-roles")
def template_create_roles(
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    proxmox_node: str = NODE_OPTION,
    storage: str = STORAGE_OPTION,
    iso_storage: str = ISO_STORAGE_OPTION,
    start_id: int = typer.Option(Config.TEMPLATE_START_ID, "--template-start-id", help="First VM id to try"),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Create one template per role ISO in build/isos."""
    try:
        with _shell(proxmox_host, proxmox_user, dry_run) as shell:
            summary = RoleTemplateBuilder(
                shell,
                ProjectPaths.discover(),
                storage_pool=storage,
                iso_storage=iso_storage,
                start_id=start_id,
                proxmox_node=proxmox_node,
            ).run()
    except K8sInfraError as e:
        _fail(e)

    table = Table(title="Role Templates")
    table.add_column("VM ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("ISO")
    for entry in summary.created:
        table.add_row(str(entry["vm_id"]), entry["name"], entry["iso"])
    console.print(table)

    if not summary.ok:
        console.print(f"❌ Failed: {', '.join(summary.failed)}")
        raise typer.Exit(1)


@template_app.command("ubuntu")
def template_ubuntu(
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    proxmox_node: str = NODE_OPTION,
    template_id: int = typer.Option(Config.UBUNTU_TEMPLATE_ID, "--template-id", help="Template VM id"),
    storage: str = typer.Option(Config.UBUNTU_STORAGE, "--storage", help="Storage pool for the disk"),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Create the Ubuntu cloud-init template."""
    try:
        with _shell(proxmox_host, proxmox_user, dry_run) as shell:
            details = UbuntuTemplateBuilder(
                shell,
                ProjectPaths.discover(),
                template_id=template_id,
                storage=storage,
                proxmox_node=proxmox_node,
            ).create()
    except K8sInfraError as e:
        _fail(e)

    table = Table(title="Template Details")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for key, value in details.items():
        table.add_row(key, value)
    console.print(table)


@template_app.command("list")
def template_list(
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    proxmox_node: str = NODE_OPTION,
) -> None:
    """List templates on a Proxmox node."""
    try:
        with _shell(proxmox_host, proxmox_user, dry_run=False) as shell:
            try:
                client = ProxmoxClient(proxmox_host, shell=shell)
            except ValueError as e:
                raise ConfigurationError(str(e))
            node = proxmox_node or shell.hostname()
            templates = client.list_templates(node)
    except K8sInfraError as e:
        _fail(e)

    table = Table(title=f"Templates on {node}")
    table.add_column("VM ID", style="cyan")
    table.add_column("Name", style="green")
    for vm in templates:
        table.add_row(str(vm["vmid"]), vm.get("name", ""))
    console.print(table)


# === DEPLOY COMMANDS ===

deploy_app = typer.Typer(help="End-to-end build and deployment")
app.add_typer(deploy_app, name="deploy")


@deploy_app.command("nixos")
def deploy_nixos(
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    proxmox_node: str = NODE_OPTION,
    storage: str = STORAGE_OPTION,
    iso_storage: str = ISO_STORAGE_OPTION,
    template_id: int = typer.Option(Config.TEMPLATE_ID_BASE, "--template-id", help="First VM id to try"),
    clean: bool = typer.Option(False, "--clean", help="Clean build directory before ISO generation"),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Generate the base ISO and deploy it as a Proxmox template."""
    paths = ProjectPaths.discover()
    try:
        with _shell(proxmox_host, proxmox_user, dry_run) as shell:
            record = NixosTemplatePipeline(
                IsoBuilder(paths),
                TemplateBuilder(
                    shell,
                    paths,
                    storage_pool=storage,
                    iso_storage=iso_storage,
                    template_id_base=template_id,
                    proxmox_node=proxmox_node,
                ),
                clean=clean,
            ).run()
    except K8sInfraError as e:
        _fail(e)

    console.print(f"✅ Template {record.name} is ready for use with Terraform (VM ID {record.vm_id})")


@deploy_app.command("ubuntu")
def deploy_ubuntu(
    environment: str = typer.Option(Config.ENVIRONMENT, "--environment", "-e", help="Environment to deploy"),
    action: str = typer.Option(Config.TERRAFORM_ACTION, "--action", "-a", help="plan, apply or destroy"),
    skip_template: bool = typer.Option(Config.SKIP_TEMPLATE, "--skip-template", "-s", help="Skip template creation"),
    skip_terraform: bool = typer.Option(Config.SKIP_TERRAFORM, "--skip-terraform", "-t", help="Skip Terraform"),
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    proxmox_node: str = NODE_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Create the Ubuntu template and run the ubuntu-servers Terraform project."""
    paths = ProjectPaths.discover()
    shell: Optional[ProxmoxShell] = None
    try:
        template_builder = None
        if not skip_template:
            shell = _shell(proxmox_host, proxmox_user, dry_run)
            template_builder = UbuntuTemplateBuilder(shell, paths, proxmox_node=proxmox_node)
        summary = UbuntuDeployment(
            paths,
            template_builder=template_builder,
            environment=environment,
            action=action,
            skip_template=skip_template,
            skip_terraform=skip_terraform,
        ).run()
    except K8sInfraError as e:
        _fail(e)
    finally:
        if shell is not None:
            shell.close()

    table = Table(title="Deployment Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Environment", summary.environment)
    table.add_row("Template Creation", "Completed" if summary.template_created else "Skipped")
    table.add_row("Terraform Action", summary.action)
    for name, value in summary.outputs.items():
        table.add_row(name, str(value))
    console.print(table)


# === NIXOS COMMANDS ===

nixos_app = typer.Typer(help="NixOS configuration files")
app.add_typer(nixos_app, name="nixos")


@nixos_app.command("populate")
def nixos_populate(
    environment: str = typer.Option("all", "--environment", "-e", help="dev, prod or all"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing configurations"),
) -> None:
    """Write the stock common, control plane and worker configurations."""
    try:
        result = NixosConfigWriter(ProjectPaths.discover(), force=force).populate(environment)
    except K8sInfraError as e:
        _fail(e)

    console.print(f"✅ {len(result.written)} written, {len(result.skipped)} skipped")


# === VALIDATION ===


@app.command("validate")
def validate(
    terraform_dir: Optional[Path] = typer.Option(None, "--terraform-dir", help="Terraform directory"),
) -> None:
    """Validate configs, ISOs, templates and Terraform; exit code is the error count."""
    report = Phase2Validator(ProjectPaths.discover(), terraform_dir=terraform_dir).run()

    table = Table(title="Validation Report")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Details")
    for check in report.checks:
        if check.passed:
            status = "✅"
        elif check.critical:
            status = "❌"
        else:
            status = "⚠️"
        table.add_row(check.name, status, "\n".join(check.messages))
    console.print(table)

    raise typer.Exit(report.errors)


# === CLEANUP ===

cleanup_app = typer.Typer(help="Cleanup of leftover resources")
app.add_typer(cleanup_app, name="cleanup")


@cleanup_app.command("installers")
def cleanup_installers(
    vmids: Optional[List[int]] = typer.Option(None, "--vmid", help="VM id to remove (repeatable)"),
    proxmox_host: str = HOST_OPTION,
    proxmox_user: str = USER_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Destroy orphaned installer VMs."""
    try:
        with _shell(proxmox_host, proxmox_user, dry_run) as shell:
            outcomes = InstallerCleanup(shell).cleanup(vmids)
    except K8sInfraError as e:
        _fail(e)

    table = Table(title="Installer VMs")
    table.add_column("VM ID", style="cyan")
    table.add_column("Outcome")
    for vmid, outcome in outcomes.items():
        table.add_row(str(vmid), outcome)
    console.print(table)


if __name__ == "__main__":
    app()
