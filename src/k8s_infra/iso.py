"""NixOS ISO generation with nixos-generators and upload to Proxmox."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from k8s_infra.config import Config
from k8s_infra.errors import ConfigurationError, IsoGenerationError, PrerequisiteError
from k8s_infra.logs import attach_log_file, detach_log_file
from k8s_infra.nixos_configs import ENVIRONMENTS, NODE_ROLES, render_template
from k8s_infra.paths import ProjectPaths
from k8s_infra.remote import ProxmoxShell

logger = logging.getLogger(__name__)

NODE_TYPES = NODE_ROLES

NIXOS_GENERATORS_FLAKE = "github:nix-community/nixos-generators"


def expand_choice(value: Optional[str], choices: tuple, label: str) -> List[str]:
    """Turn an option that may be empty or "all" into the list it selects."""
    if not value or value == "all":
        return list(choices)
    if value not in choices:
        allowed = ", ".join(f"'{c}'" for c in choices)
        raise ConfigurationError(f"Invalid {label}: {value}. Must be {allowed}, or 'all'")
    return [value]


def format_size(num_bytes: int) -> str:
    """Human readable size in the style of `du -h`."""
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def resolve_iso_file(path: Path) -> Optional[Path]:
    """Find the real ISO behind a path.

    nixos-generate leaves a symlink into the nix store, which may point at a
    directory containing the image somewhere below it.
    """
    real = Path(os.path.realpath(path))
    if real.is_dir():
        candidates = sorted(p for p in real.rglob("*.iso") if p.is_file())
        return candidates[0] if candidates else None
    if real.is_file():
        return real
    return None


@dataclass
class IsoMatrixResult:
    """Outcome of a role/environment ISO build."""

    built: List[Path] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class IsoBuilder:
    """Builds NixOS installer ISOs from the configurations in the repository."""

    def __init__(
        self,
        paths: ProjectPaths,
        iso_name: Optional[str] = None,
        nixos_version: Optional[str] = None,
    ) -> None:
        self.paths = paths
        self.iso_name = iso_name or Config.ISO_NAME
        self.nixos_version = nixos_version or Config.NIXOS_VERSION

    @property
    def base_config(self) -> Path:
        return self.paths.nixos_dir / "base-template.nix"

    @property
    def log_file(self) -> Path:
        return self.paths.log_dir / "iso-generation.log"

    def check_prerequisites(self, require_generator: bool = True) -> None:
        """Make sure Nix, nixos-generate and the base configuration are present.

        Raises:
            PrerequisiteError: With installation hints
        """
        logger.info("Checking prerequisites...")

        if shutil.which("nix") is None:
            raise PrerequisiteError(
                "Nix package manager is not installed",
                ["curl -L https://nixos.org/nix/install | sh", "source ~/.nix-profile/etc/profile.d/nix.sh"],
            )

        if require_generator:
            if shutil.which("nixos-generate") is None:
                raise PrerequisiteError(
                    "nixos-generators is not installed",
                    ["nix-env -iA nixos.nixos-generators"],
                )
            if not self.base_config.is_file():
                raise PrerequisiteError(
                    f"NixOS configuration not found: {self.base_config}",
                    ["This file should contain the base template configuration with automated installation"],
                )
        elif not self.paths.nixos_dir.is_dir():
            raise PrerequisiteError(
                f"NixOS configuration directory not found: {self.paths.nixos_dir}",
                ["Run `k8s-infra nixos populate` first"],
            )

        logger.info("✅ Prerequisites check passed")

    def prepare_build_dir(self, clean: bool = False, output_dir: Optional[Path] = None) -> Path:
        """Create the build and output directories, wiping build/ first if asked."""
        logger.info("Setting up build environment...")

        if clean and self.paths.build_dir.exists():
            logger.info("Cleaning build directory...")
            shutil.rmtree(self.paths.build_dir)

        target = output_dir or self.paths.iso_dir
        target.mkdir(parents=True, exist_ok=True)
        self.paths.ensure_build_dirs()
        return target

    def commit_sha(self) -> str:
        """HEAD commit of the project, or "unknown" outside a git checkout."""
        if shutil.which("git") is None:
            logger.warning("git not found, commit SHA will be 'unknown'")
            return "unknown"

        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=self.paths.root,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            logger.warning("Not in a git repository, commit SHA will be 'unknown'")
            return "unknown"

        sha = result.stdout.strip()
        logger.info(f"Building ISO from commit: {sha}")
        return sha

    def _stream(self, command: List[str], env: Dict[str, str]) -> int:
        """Run a build command, copying its output into the log as it arrives."""
        logger.debug(f"$ {' '.join(command)}")
        process = subprocess.Popen(
            command,
            cwd=self.paths.root,
            env={**os.environ, **env},
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        assert process.stdout is not None
        for line in process.stdout:
            line = line.rstrip()
            if line:
                logger.info(line)
        return process.wait()

    def _materialize(self, iso_path: Path) -> None:
        """Replace a nix store symlink with a plain copy of the ISO."""
        if not iso_path.is_symlink():
            return

        logger.info(f"Resolving symlink: {iso_path} -> {os.path.realpath(iso_path)}")
        actual = resolve_iso_file(iso_path)
        if actual is None:
            raise IsoGenerationError(f"Could not find actual ISO file in: {os.path.realpath(iso_path)}")

        logger.info(f"Found actual ISO: {actual}")
        tmp_path = iso_path.with_name(iso_path.name + ".tmp")
        shutil.copyfile(actual, tmp_path)
        iso_path.unlink()
        tmp_path.rename(iso_path)

    def generate_base_iso(self, output_dir: Optional[Path] = None) -> Path:
        """Build the base template ISO, overwriting any previous one.

        Raises:
            IsoGenerationError: If nixos-generate fails or yields no ISO
        """
        target_dir = output_dir or self.paths.iso_dir
        iso_path = target_dir / self.iso_name

        logger.info(f"Generating base template ISO: {self.iso_name}")
        if iso_path.exists() or iso_path.is_symlink():
            logger.info(f"Removing existing ISO: {self.iso_name}")
            iso_path.unlink()

        commit_sha = self.commit_sha()

        logger.info("Running nixos-generate with base-template.nix...")
        returncode = self._stream(
            ["nixos-generate", "-f", "iso", "-c", str(self.base_config), "-o", str(iso_path)],
            {"NIX_BUILD_COMMIT_SHA": commit_sha},
        )
        if returncode != 0:
            raise IsoGenerationError("Failed to generate base template ISO")

        self._materialize(iso_path)
        if not iso_path.is_file():
            raise IsoGenerationError(f"nixos-generate produced no ISO at {iso_path}")

        logger.info(f"✅ Generated ISO: {iso_path}")
        logger.info(f"ISO size: {format_size(iso_path.stat().st_size)}")
        return iso_path

    def write_iso_config(self, node_type: str, environment: str) -> Path:
        """Render the installer wrapper configuration for one role."""
        logger.info(f"Creating ISO configuration for {environment} {node_type}...")
        config_file = self.paths.build_dir / f"iso-config-{environment}-{node_type}.nix"
        config_file.parent.mkdir(parents=True, exist_ok=True)
        config_file.write_text(
            render_template(
                "iso-config.nix.j2",
                node_type=node_type,
                environment=environment,
                role_config=self.paths.nixos_dir / environment / f"{node_type}.nix",
                nixos_version=self.nixos_version,
            )
        )
        return config_file

    def generate_role_iso(self, node_type: str, environment: str, output_dir: Optional[Path] = None) -> Path:
        target_dir = output_dir or self.paths.iso_dir
        iso_path = target_dir / f"nixos-k8s-{node_type}-{environment}.iso"
        logger.info(f"Generating ISO: {iso_path.name}")

        config_file = self.write_iso_config(node_type, environment)

        logger.info("Running nixos-generators via nix run...")
        returncode = self._stream(
            [
                "nix",
                "--extra-experimental-features",
                "nix-command flakes",
                "run",
                NIXOS_GENERATORS_FLAKE,
                "--",
                "-f",
                "iso",
                "-o",
                str(iso_path),
            ],
            {"NIX_PATH": f"nixos-config={config_file}:nixpkgs=channel:nixos-unstable"},
        )
        if returncode != 0:
            raise IsoGenerationError(f"Failed to generate ISO: {iso_path.name}")

        logger.info(f"✅ Generated ISO: {iso_path}")
        if iso_path.exists():
            logger.info(f"ISO size: {format_size(iso_path.stat().st_size)}")
        return iso_path

    def generate_role_isos(
        self,
        node_type: Optional[str] = None,
        environment: Optional[str] = None,
        output_dir: Optional[Path] = None,
    ) -> IsoMatrixResult:
        """Build one ISO per (environment, node type) that has a configuration."""
        types = expand_choice(node_type, NODE_TYPES, "node type")
        envs = expand_choice(environment, ENVIRONMENTS, "environment")
        logger.info(f"Building ISOs for types: {' '.join(types)}, environments: {' '.join(envs)}")

        result = IsoMatrixResult()
        for env in envs:
            for role in types:
                label = f"{env}/{role}"
                role_config = self.paths.nixos_dir / env / f"{role}.nix"
                if not role_config.is_file():
                    logger.warning(f"Configuration not found: {role_config}, skipping...")
                    result.skipped.append(label)
                    continue

                try:
                    result.built.append(self.generate_role_iso(role, env, output_dir))
                except IsoGenerationError as e:
                    logger.error(str(e))
                    result.failed.append(label)

        logger.info("ISO generation summary:")
        logger.info(f"  Successful: {len(result.built)}")
        logger.info(f"  Failed: {len(result.failed)}")
        return result

    def build_base(self, clean: bool = False) -> Path:
        """Prerequisites, log setup and base ISO generation in one call."""
        self.check_prerequisites()
        output_dir = self.prepare_build_dir(clean)
        handler = attach_log_file(self.log_file, "NixOS ISO Generation")
        try:
            logger.info("Starting NixOS ISO generation...")
            return self.generate_base_iso(output_dir)
        finally:
            detach_log_file(handler)

    def build_roles(
        self,
        node_type: Optional[str] = None,
        environment: Optional[str] = None,
        clean: bool = False,
    ) -> IsoMatrixResult:
        expand_choice(node_type, NODE_TYPES, "node type")
        expand_choice(environment, ENVIRONMENTS, "environment")
        self.check_prerequisites(require_generator=False)
        output_dir = self.prepare_build_dir(clean)
        handler = attach_log_file(self.log_file, "NixOS ISO Generation")
        try:
            return self.generate_role_isos(node_type, environment, output_dir)
        finally:
            detach_log_file(handler)


class IsoUploader:
    """Uploads ISOs to the Proxmox ISO directory and prunes old ones."""

    def __init__(
        self,
        shell: ProxmoxShell,
        iso_storage: Optional[str] = None,
        remote_dir: Optional[str] = None,
        keep: Optional[int] = None,
    ) -> None:
        self.shell = shell
        self.iso_storage = iso_storage or Config.ISO_STORAGE
        self.remote_dir = remote_dir or Config.REMOTE_ISO_DIR
        self.keep = keep if keep is not None else Config.ISO_KEEP_COUNT

    def cleanup_old_isos(self, pattern: str) -> None:
        """Keep the most recent ISOs matching pattern and delete the rest.

        Never raises; a failed cleanup only produces a warning.
        """
        logger.info(f"Cleaning up old ISOs (keeping {self.keep} most recent)...")

        if self.shell.dry_run:
            logger.info(f"[DRY RUN] Would clean up old ISOs matching: {pattern}")
            return

        cleanup_cmd = (
            f"cd {self.remote_dir} && ls -t {pattern} 2>/dev/null"
            f" | tail -n +{self.keep + 1} | xargs -r rm -f"
        )
        if self.shell.run(cleanup_cmd).ok:
            kept = self.shell.run(f"cd {self.remote_dir} && ls -t {pattern} 2>/dev/null | head -{self.keep}")
            logger.info(f"Kept most recent ISOs: {' '.join(kept.stdout.split()) or 'None'}")
            logger.info("✅ Old ISO cleanup completed")
        else:
            logger.warning("ISO cleanup completed (no old ISOs to remove)")

    def upload(self, iso_file: Path, skip_existing: bool = False) -> str:
        """Upload an ISO under its own name.

        Args:
            iso_file: Local ISO, possibly a nix store symlink
            skip_existing: Leave an ISO that is already on the host alone

        Returns:
            The ISO name on the host

        Raises:
            IsoGenerationError: If no real ISO file can be found
        """
        iso_name = iso_file.name
        remote_path = f"{self.remote_dir}/{iso_name}"
        logger.info(f"Uploading ISO: {iso_name}")

        if self.shell.dry_run:
            logger.info(f"[DRY RUN] Would upload: {iso_file} to {self.shell.host}:{self.iso_storage}")
            return iso_name

        if skip_existing and self.shell.path_exists(remote_path):
            logger.warning(f"ISO already exists on Proxmox: {iso_name}")
            return iso_name

        self.cleanup_old_isos(f"{iso_file.stem}*.iso")

        real_iso = resolve_iso_file(iso_file)
        if real_iso is None:
            raise IsoGenerationError(f"Could not find actual ISO file for: {iso_name}")

        self.shell.upload(real_iso, remote_path)
        logger.info(f"✅ Uploaded ISO: {iso_name}")
        return iso_name
