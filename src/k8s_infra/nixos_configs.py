"""Stock NixOS configurations for the Kubernetes nodes."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from jinja2 import Environment, PackageLoader, StrictUndefined

from k8s_infra.errors import ConfigurationError
from k8s_infra.paths import ProjectPaths

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"^# .*config$")
NODE_ROLES = ("control", "worker")
ENVIRONMENTS = ("dev", "prod")

_jinja_env = Environment(
    loader=PackageLoader("k8s_infra", "templates"),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)


def render_template(name: str, **context: Any) -> str:
    """Render one of the bundled Nix templates."""
    return _jinja_env.get_template(name).render(**context)


def is_placeholder(path: Path) -> bool:
    """True if the file is a single `# ... config` comment line."""
    lines = path.read_text().splitlines()
    return len(lines) == 1 and bool(PLACEHOLDER_RE.match(lines[0]))


def should_overwrite(path: Path, force: bool = False) -> bool:
    if not path.exists():
        return True
    if force:
        return True
    try:
        return is_placeholder(path)
    except ValueError:
        logger.warning(f"Not UTF-8, leaving as is: {path}")
        return False


@dataclass
class PopulateResult:
    written: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)


class NixosConfigWriter:
    """Writes the common, control plane and worker node configurations."""

    def __init__(self, paths: ProjectPaths, force: bool = False) -> None:
        self.paths = paths
        self.force = force

    def _write(self, path: Path, template: str, result: PopulateResult, **context: Any) -> None:
        if not should_overwrite(path, self.force):
            logger.warning(f"Skipping {path} (already exists, use --force to overwrite)")
            result.skipped.append(path)
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_template(template, **context))
        logger.info(f"✅ Created {path}")
        result.written.append(path)

    def populate(self, environment: Optional[str] = None) -> PopulateResult:
        """Write configurations for one environment, or all when None/"all"."""
        if environment and environment != "all" and environment not in ENVIRONMENTS:
            raise ConfigurationError(f"Invalid environment: {environment}. Must be 'dev', 'prod', or 'all'")
        envs = list(ENVIRONMENTS) if not environment or environment == "all" else [environment]

        logger.info("Starting NixOS configuration population...")
        for directory in ["common", *ENVIRONMENTS]:
            (self.paths.nixos_dir / directory).mkdir(parents=True, exist_ok=True)

        result = PopulateResult()
        self._write(self.paths.nixos_dir / "common" / "configuration.nix", "common.nix.j2", result)
        for env in envs:
            for role in NODE_ROLES:
                self._write(self.paths.nixos_dir / env / f"{role}.nix", f"{role}.nix.j2", result, environment=env)
        return result
