"""Runs the terraform CLI inside a root module directory."""

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, List, Optional

from k8s_infra.errors import TerraformError

logger = logging.getLogger(__name__)


class TerraformRunner:
    """Terraform subcommands executed in workdir.

    Long running commands (init, plan, apply, destroy) write straight to the
    terminal; the rest are captured.
    """

    def __init__(self, workdir: Path, binary: str = "terraform") -> None:
        self.workdir = Path(workdir)
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run(self, args: List[str], capture: bool = True, timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        logger.debug(f"[{self.workdir}]$ {' '.join(command)}")
        try:
            return subprocess.run(
                command,
                cwd=self.workdir,
                capture_output=capture,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise TerraformError(f"{self.binary} is not installed or not in PATH")
        except subprocess.TimeoutExpired:
            raise TerraformError(f"terraform {args[0]} timed out after {timeout}s")

    def _check(self, args: List[str], what: str, capture: bool = False) -> subprocess.CompletedProcess:
        result = self._run(args, capture=capture)
        if result.returncode != 0:
            detail = f": {result.stderr.strip()}" if capture and result.stderr else ""
            raise TerraformError(f"Terraform {what} failed{detail}")
        return result

    def version(self) -> str:
        result = self._run(["version", "-json"], timeout=30)
        if result.returncode != 0:
            raise TerraformError(f"terraform version failed: {result.stderr.strip()}")
        return json.loads(result.stdout).get("terraform_version", "unknown")

    def init(self, backend: bool = True) -> None:
        logger.info("Initializing Terraform...")
        args = ["init", "-input=false"]
        if not backend:
            args.append("-backend=false")
        self._check(args, "initialization")

    def validate(self) -> bool:
        """True if `terraform validate` accepts the configuration."""
        logger.info("Validating Terraform configuration...")
        result = self._run(["validate", "-no-color"], timeout=120)
        if result.returncode != 0:
            logger.error(f"Terraform validation failed: {result.stderr.strip() or result.stdout.strip()}")
            return False
        return True

    def fmt_check(self) -> bool:
        result = self._run(["fmt", "-check", "-recursive"], timeout=60)
        if result.returncode != 0:
            logger.warning(f"Files need formatting: {' '.join(result.stdout.split())}")
            return False
        return True

    def plan(self, var_file: Optional[str] = None) -> None:
        logger.info("Creating Terraform plan...")
        self._check(["plan", *self._var_file_args(var_file)], "plan")

    def apply(self, var_file: Optional[str] = None) -> None:
        logger.info("Applying Terraform configuration...")
        self._check(["apply", *self._var_file_args(var_file), "-auto-approve"], "apply")
        logger.info("✅ Infrastructure deployed successfully")

    def destroy(self, var_file: Optional[str] = None) -> None:
        logger.info("Destroying infrastructure...")
        self._check(["destroy", *self._var_file_args(var_file), "-auto-approve"], "destroy")
        logger.info("✅ Infrastructure destroyed successfully")

    def output(self, name: str) -> Optional[Any]:
        """Decoded value of a root module output, None if it is not defined."""
        result = self._run(["output", "-json", name], timeout=60)
        if result.returncode != 0:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning(f"Could not decode terraform output {name}")
            return None

    @staticmethod
    def _var_file_args(var_file: Optional[str]) -> List[str]:
        return [f"-var-file={var_file}"] if var_file else []
