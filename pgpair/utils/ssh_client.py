"""
Remote command execution over SSH (Paramiko).
"""

import shlex
import time
import uuid
from pathlib import Path
from typing import Optional

import paramiko

from ..exceptions import ConnectionFailed
from .shell import CommandOutput, CommandRunner


class SSHClient(CommandRunner):
    """Runs provisioning and restart commands on a remote host."""

    def __init__(
        self,
        hostname: str,
        username: str = "root",
        password: Optional[str] = None,
        key_file: Optional[Path] = None,
        port: int = 22,
        timeout: int = 30
    ):
        """
        Args:
            hostname: Remote hostname or IP
            username: SSH username; anything but root goes through sudo
            password: SSH password, also fed to sudo -S
            key_file: Private key file, preferred over password
            port: SSH port
            timeout: Connection timeout in seconds
        """
        self.hostname = hostname
        self.username = username
        self.password = password
        self.key_file = key_file
        self.port = port
        self.timeout = timeout
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self, retries: int = 3, delay: int = 5) -> None:
        """
        Open the connection, retrying transient failures.

        Raises:
            ConnectionFailed: If every attempt fails
        """
        credentials = {'key_filename': str(self.key_file)} if self.key_file else {'password': self.password}
        last_error = None

        for attempt in range(1, retries + 1):
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    hostname=self.hostname,
                    port=self.port,
                    username=self.username,
                    timeout=self.timeout,
                    **credentials
                )
            except (paramiko.SSHException, OSError) as e:
                client.close()
                last_error = e
                if attempt < retries:
                    time.sleep(delay)
                continue
            self._client = client
            return

        raise ConnectionFailed(
            f"SSH to {self.username}@{self.hostname}:{self.port} failed after {retries} attempts: {last_error}"
        )

    def disconnect(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> paramiko.SSHClient:
        if not self._client:
            self.connect()
        return self._client

    def run(self, command: str, timeout: Optional[int] = None) -> CommandOutput:
        _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        exit_code = stdout.channel.recv_exit_status()
        return exit_code, stdout.read().decode('utf-8'), stderr.read().decode('utf-8')

    def privileged(self, command: str) -> str:
        if self.username == "root":
            return command
        if self.password:
            return f"echo {shlex.quote(self.password)} | sudo -S -p '' sh -c {shlex.quote(command)}"
        return f"sudo -n sh -c {shlex.quote(command)}"

    def write_file(
        self,
        path: str,
        content: str,
        mode: int = 0o644,
        owner: Optional[str] = None
    ) -> None:
        """
        Upload content to path on the remote host.

        The file is staged in /tmp over SFTP and moved into place with root
        privileges, so destinations like /etc/systemd/system work for
        non-root SSH users.
        """
        staged = f"/tmp/pgpair-{uuid.uuid4().hex}"
        sftp = self.client.open_sftp()
        try:
            with sftp.open(staged, 'w') as remote_file:
                remote_file.write(content)
        finally:
            sftp.close()

        target = shlex.quote(path)
        commands = [f"mv {staged} {target}", f"chmod {mode:o} {target}"]
        if owner:
            commands.append(f"chown {owner} {target}")
        self.execute_sudo(" && ".join(commands), check=True)

    def __enter__(self):
        self.connect()
        return self
