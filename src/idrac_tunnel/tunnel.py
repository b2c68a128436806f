"""SSH tunnel launching for accessing iDRAC through a jumphost."""

import logging
import os
import subprocess
import time
from typing import List, Optional

import paramiko
import psutil

from .exceptions import LaunchFailedError
from .ports import is_ssh_process, port_owner


logger = logging.getLogger(__name__)


def jump_host_spec(jumphost: str, username: Optional[str] = None) -> str:
    """Build the ``user@jumphost`` destination string."""
    return f"{username}@{jumphost}" if username else jumphost


class SSHTunnel:
    """Launches a backgrounded ``ssh -L`` forward to an iDRAC through a jumphost."""

    def __init__(
        self,
        jumphost: str,
        idrac_host: str,
        local_port: int,
        idrac_port: int = 443,
        jumphost_username: Optional[str] = None,
        ssh_binary: str = "ssh",
        settle_delay: float = 1.0,
    ) -> None:
        """
        Initialize SSH tunnel configuration.

        Args:
            jumphost: Jumphost hostname or ~/.ssh/config alias
            idrac_host: Target iDRAC IP or hostname
            local_port: Port to listen on at localhost
            idrac_port: Target iDRAC port (default: 443)
            jumphost_username: SSH username for jumphost
            ssh_binary: SSH client executable
            settle_delay: Seconds to wait before looking up the tunnel process
        """
        self.jumphost = jumphost
        self.idrac_host = idrac_host
        self.local_port = local_port
        self.idrac_port = idrac_port
        self.jumphost_username = jumphost_username
        self.ssh_binary = ssh_binary
        self.settle_delay = settle_delay
        self.pid: Optional[int] = None

    @property
    def destination(self) -> str:
        return jump_host_spec(self.jumphost, self.jumphost_username)

    @property
    def forward_spec(self) -> str:
        return f"{self.local_port}:{self.idrac_host}:{self.idrac_port}"

    @property
    def command(self) -> List[str]:
        """SSH invocation: fork after auth, no remote command, one local forward."""
        return [
            self.ssh_binary,
            "-f",
            "-N",
            "-o", "ExitOnForwardFailure=yes",
            "-L", self.forward_spec,
            self.destination,
        ]

    def start(self, dry_run: bool = False) -> Optional[int]:
        """
        Start the SSH tunnel.

        Blocks until the SSH client has authenticated and forked into the
        background, then locates the backgrounded process.

        Args:
            dry_run: Only log the command that would run

        Returns:
            Process id of the tunnel, or None for a dry run

        Raises:
            LaunchFailedError: If ssh exits non-zero or its process cannot be found
        """
        command_line = " ".join(self.command)
        if dry_run:
            logger.info(f"DRY RUN: Would execute: {command_line}")
            return None

        logger.info(
            f"Creating SSH tunnel: localhost:{self.local_port} -> "
            f"{self.jumphost} -> {self.idrac_host}:{self.idrac_port}"
        )
        logger.debug(f"SSH command: {command_line}")

        # stdio is inherited so password prompts reach the terminal; a pipe
        # would stay open in the forked child and block us forever
        try:
            result = subprocess.run(self.command, check=False)
        except OSError as e:
            raise LaunchFailedError(f"Failed to run {self.ssh_binary}: {e}") from e

        if result.returncode != 0:
            raise LaunchFailedError(
                f"Failed to create SSH tunnel for {self.idrac_host} "
                f"(ssh exit status {result.returncode})"
            )

        time.sleep(self.settle_delay)

        pid = self._find_pid()
        if pid is None:
            raise LaunchFailedError(
                f"Tunnel created but couldn't find PID for {self.idrac_host}"
            )

        self.pid = pid
        logger.info(
            f"SSH tunnel established: localhost:{self.local_port} -> "
            f"{self.jumphost} -> {self.idrac_host}:{self.idrac_port} (PID: {pid})"
        )
        return pid

    def _find_pid(self) -> Optional[int]:
        # ssh -f forks after auth, so the pid of the process we spawned is
        # not the tunnel. The listener on our local port is the direct handle.
        owner = port_owner(self.local_port)
        if owner is not None and is_ssh_process(owner, self.ssh_binary):
            return owner

        logger.debug(
            f"No ssh listener on port {self.local_port}, scanning process table"
        )
        return self._scan_process_table()

    def _scan_process_table(self) -> Optional[int]:
        binary = os.path.basename(self.ssh_binary)
        matches = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                if proc.info["name"] != binary:
                    continue
                cmdline = proc.info["cmdline"] or []
                if self._matches_forward(cmdline):
                    matches.append(proc.info["pid"])
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        if len(matches) > 1:
            logger.warning(
                f"Several ssh processes forward {self.forward_spec}: {matches}"
            )
        return min(matches) if matches else None

    def _matches_forward(self, cmdline: List[str]) -> bool:
        for index, arg in enumerate(cmdline):
            if arg == "-L" and index + 1 < len(cmdline):
                if cmdline[index + 1] == self.forward_spec:
                    return True
            elif arg == f"-L{self.forward_spec}":
                return True
        return False


def check_jumphost(
    jumphost: str,
    username: Optional[str] = None,
    timeout: float = 10.0,
    ssh_config_path: str = "~/.ssh/config",
) -> bool:
    """
    Test a non-interactive SSH login to the jumphost.

    Only the SSH agent and default/configured keys are tried, so a host
    that needs a password or passphrase reports False.

    Args:
        jumphost: Jumphost hostname or ~/.ssh/config alias
        username: SSH username (falls back to ssh config, then current user)
        timeout: Connect timeout in seconds
        ssh_config_path: OpenSSH client config used to resolve aliases

    Returns:
        True if login succeeded
    """
    host_config = {}
    config_file = os.path.expanduser(ssh_config_path)
    if os.path.exists(config_file):
        ssh_config = paramiko.SSHConfig.from_path(config_file)
        host_config = ssh_config.lookup(jumphost)

    connect_kwargs = {
        "hostname": host_config.get("hostname", jumphost),
        "port": int(host_config.get("port", 22)),
        "username": username or host_config.get("user"),
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
        "allow_agent": True,
        "look_for_keys": True,
    }
    if host_config.get("identityfile"):
        connect_kwargs["key_filename"] = [
            os.path.expanduser(path) for path in host_config["identityfile"]
        ]

    client = paramiko.SSHClient()
    client.load_system_host_keys()
    try:
        client.connect(**connect_kwargs)
        logger.info(f"SSH connection test to {jump_host_spec(jumphost, username)} succeeded")
        return True
    except (paramiko.SSHException, OSError) as e:
        logger.warning(f"SSH connection test to {jumphost} failed: {e}")
        return False
    finally:
        client.close()
