"""Remote shell access to the job VM over the ssh client."""

import logging
import subprocess
from pathlib import Path

from libvirt_executor.config import ExecutorSettings


logger = logging.getLogger(__name__)

# ssh reports its own failures (refused, auth, unreachable) with 255.
SSH_CONNECTION_FAILURE_STATUS = 255


class SSHRemoteShell:
    def __init__(self, settings: ExecutorSettings):
        self.settings = settings

    def host_key_options(self) -> list[str]:
        if self.settings.ssh_verify_host_key:
            return [
                "-o",
                "StrictHostKeyChecking=yes",
                "-o",
                f"UserKnownHostsFile={self.settings.ssh_known_hosts_file}",
            ]
        # Unpinned: every job VM has a fresh host key on a recycled address.
        return [
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]

    def base_command(self, address: str) -> list[str]:
        return [
            self.settings.ssh_binary,
            "-i",
            self.settings.ssh_private_key_path,
            "-p",
            str(self.settings.ssh_port),
            "-o",
            "BatchMode=yes",
            "-o",
            "PasswordAuthentication=no",
            "-o",
            f"ConnectTimeout={self.settings.ssh_connect_timeout_sec}",
            "-o",
            "LogLevel=ERROR",
            *self.host_key_options(),
            f"{self.settings.ssh_user}@{address}",
        ]

    def probe(self, address: str) -> bool:
        cmd = [*self.base_command(address), "true"]
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
                timeout=self.settings.ssh_connect_timeout_sec + 5,
            )
        except subprocess.TimeoutExpired:
            logger.debug("ssh probe timed out address=%s", address)
            return False
        return completed.returncode == 0

    def run_script(self, address: str, script_path: Path) -> int:
        """Stream ``script_path`` into the remote shell and return its exit status.

        Output is inherited so it lands in the job log as it is produced.
        """
        cmd = [*self.base_command(address), self.settings.remote_shell]
        logger.debug("running remote script address=%s script=%s", address, script_path)
        with open(script_path, "rb") as script:
            completed = subprocess.run(cmd, stdin=script, check=False)
        return completed.returncode
