"""Project path discovery.

Every workflow resolves its inputs (NixOS configs, Terraform projects) and
outputs (ISOs, logs, template info) relative to the project root, so the
tool behaves the same no matter which directory it is started from.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

ROOT_ENV_VAR = "K8S_INFRA_ROOT"


def find_project_root(start: Optional[Path] = None) -> Path:
    """Walk up from start until a directory looks like the project root.

    The root holds `.git/config`, `root-modules/` and `shared/`. When no such
    directory exists above start, the current working directory is returned.
    """
    current = Path(start or Path.cwd()).resolve()

    while current != current.parent:
        if (
            (current / ".git" / "config").is_file()
            and (current / "root-modules").is_dir()
            and (current / "shared").is_dir()
        ):
            return current
        current = current.parent

    return Path.cwd()


@dataclass(frozen=True)
class ProjectPaths:
    """Standard directories of the infrastructure repository."""

    root: Path

    @classmethod
    def discover(cls, start: Optional[Path] = None) -> "ProjectPaths":
        """Use K8S_INFRA_ROOT when set, otherwise search for the root."""
        override = os.getenv(ROOT_ENV_VAR)
        if override:
            return cls(Path(override).expanduser().resolve())
        return cls(find_project_root(start))

    @property
    def shared_dir(self) -> Path:
        return self.root / "shared"

    @property
    def scripts_dir(self) -> Path:
        return self.root / "scripts"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def docs_dir(self) -> Path:
        return self.root / "docs"

    @property
    def nixos_dir(self) -> Path:
        return self.root / "nixos"

    @property
    def ubuntu_dir(self) -> Path:
        return self.root / "ubuntu"

    @property
    def terraform_dir(self) -> Path:
        return self.root / "terraform"

    @property
    def root_modules_dir(self) -> Path:
        return self.root / "root-modules"

    @property
    def shared_modules_dir(self) -> Path:
        return self.root / "shared-modules"

    @property
    def iso_dir(self) -> Path:
        return self.build_dir / "isos"

    @property
    def log_dir(self) -> Path:
        return self.build_dir / "logs"

    @property
    def templates_dir(self) -> Path:
        return self.build_dir / "templates"

    @property
    def shared_config_file(self) -> Path:
        return self.shared_dir / "config" / "defaults.env"

    def ensure_build_dirs(self) -> None:
        """Create build, ISO, log and template directories."""
        for directory in (self.build_dir, self.iso_dir, self.log_dir, self.templates_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def missing(self) -> List[Path]:
        """Return required directories that do not exist."""
        required = [self.root, self.shared_dir, self.build_dir]
        missing = [d for d in required if not d.is_dir()]
        for directory in missing:
            logger.error(f"Required directory not found: {directory}")
        return missing

    def as_dict(self) -> Dict[str, Path]:
        """All paths keyed by a display label."""
        return {
            "Project Root": self.root,
            "Shared Dir": self.shared_dir,
            "Scripts Dir": self.scripts_dir,
            "Build Dir": self.build_dir,
            "Docs Dir": self.docs_dir,
            "NixOS Dir": self.nixos_dir,
            "Ubuntu Dir": self.ubuntu_dir,
            "Terraform": self.terraform_dir,
            "Root Modules": self.root_modules_dir,
            "Shared Modules": self.shared_modules_dir,
            "ISO Dir": self.iso_dir,
            "Log Dir": self.log_dir,
            "Templates Dir": self.templates_dir,
        }
