"""SSH access to the Proxmox host."""

import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import paramiko

from k8s_infra.config import Config
from k8s_infra.errors import RemoteCommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    command: str
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class ProxmoxShell:
    """Runs commands on a Proxmox host over a single paramiko connection.

    The connection is opened on first use and kept until close(); use the
    shell as a context manager to make sure it is released.
    """

    def __init__(
        self,
        host: str,
        user: Optional[str] = None,
        key_path: Optional[str] = None,
        connect_timeout: Optional[int] = None,
        dry_run: bool = False,
    ) -> None:
        self.host = host
        self.user = user or Config.PROXMOX_USER
        self.key_path = key_path or Config.SSH_KEY_PATH
        self.connect_timeout = connect_timeout or Config.SSH_CONNECT_TIMEOUT
        self.dry_run = dry_run
        self._client: Optional[paramiko.SSHClient] = None

    def __enter__(self) -> "ProxmoxShell":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def connect(self) -> paramiko.SSHClient:
        if self._client is None:
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            connect_args = {
                "hostname": self.host,
                "username": self.user,
                "timeout": self.connect_timeout,
            }
            if self.key_path and os.path.isfile(self.key_path):
                connect_args["key_filename"] = self.key_path
            client.connect(**connect_args)
            self._client = client
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def run(self, command: str, check: bool = False) -> CommandResult:
        """Execute a command and wait for it to finish.

        Args:
            command: Shell command line run by the remote login shell
            check: Raise RemoteCommandError on a non-zero exit status

        Returns:
            CommandResult with decoded, stripped output

        Raises:
            RemoteCommandError: If the SSH transport fails; the connection is
                dropped so the next call reconnects
        """
        logger.debug(f"[{self.host}]$ {command}")

        try:
            client = self.connect()
            _, stdout, stderr = client.exec_command(command)
            out = stdout.read().decode().strip()
            err = stderr.read().decode().strip()
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.error, EOFError) as e:
            self.close()
            raise RemoteCommandError(
                f"SSH connection to {self.target} failed: {e}",
                command=command,
                stderr=str(e),
            ) from e

        result = CommandResult(command=command, exit_status=exit_status, stdout=out, stderr=err)
        if check and not result.ok:
            raise RemoteCommandError(
                f"Command failed on {self.host} (exit {exit_status}): {err or command}",
                command=command,
                exit_status=exit_status,
                stderr=err,
            )
        return result

    def execute(self, command: str, description: str) -> Optional[CommandResult]:
        """Run a state-changing command, honouring dry run.

        Command output is logged so it ends up in the workflow log file.

        Raises:
            RemoteCommandError: If the command exits non-zero
        """
        logger.info(description)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would execute: {command}")
            return None

        result = self.run(command)
        for line in (result.stdout + "\n" + result.stderr).splitlines():
            if line.strip():
                logger.info(line)

        if not result.ok:
            logger.error(f"{description} failed")
            raise RemoteCommandError(
                f"{description} failed",
                command=command,
                exit_status=result.exit_status,
                stderr=result.stderr,
            )

        logger.info(f"✅ {description} completed")
        return result

    def test_connection(self) -> bool:
        """Return True if a trivial command can be run on the host."""
        try:
            return self.run("echo 'SSH connection test'").ok
        except RemoteCommandError as e:
            logger.debug(str(e))
            return False

    def hostname(self) -> str:
        return self.run("hostname", check=True).stdout

    def path_exists(self, remote_path: str) -> bool:
        return self.run(f"test -f {remote_path}").ok

    def upload(self, local_path: Union[str, Path], remote_path: str) -> None:
        """Copy a local file to the host over SFTP."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would upload: {local_path} to {self.host}:{remote_path}")
            return

        logger.info(f"📤 Uploading {local_path} → {self.host}:{remote_path}")
        try:
            client = self.connect()
            with client.open_sftp() as sftp:
                sftp.put(str(local_path), remote_path)
        except paramiko.SSHException as e:
            self.close()
            raise RemoteCommandError(f"Upload of {local_path} to {self.host} failed: {e}", stderr=str(e)) from e
        except (IOError, EOFError) as e:
            raise RemoteCommandError(f"Upload of {local_path} to {self.host} failed: {e}", stderr=str(e)) from e
