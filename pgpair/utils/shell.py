"""
Command execution on the provisioned host.
CommandRunner holds the behaviour shared by LocalShell and SSHClient, so
provisioning steps run the same way locally or over SSH.
"""

import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from ..exceptions import CommandError

CommandOutput = Tuple[int, str, str]


class CommandRunner:
    """Base class for executors; subclasses implement run()."""

    hostname = "localhost"

    def run(self, command: str, timeout: Optional[int] = None) -> CommandOutput:
        raise NotImplementedError

    def execute(
        self,
        command: str,
        timeout: Optional[int] = None,
        check: bool = True
    ) -> CommandOutput:
        """
        Execute command through the host's shell.

        Args:
            command: Command to execute
            timeout: Command timeout in seconds
            check: If True, raise CommandError on non-zero exit code

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        exit_code, stdout, stderr = self.run(command, timeout)
        if check and exit_code != 0:
            raise CommandError(
                f"Command failed on {self.hostname} (exit {exit_code}): {command}\n{stderr}".rstrip(),
                command=command,
                exit_code=exit_code,
                stderr=stderr
            )
        return exit_code, stdout, stderr

    def privileged(self, command: str) -> str:
        """Wrap command so it runs as root."""
        return command

    def execute_sudo(
        self,
        command: str,
        timeout: Optional[int] = None,
        check: bool = True
    ) -> CommandOutput:
        return self.execute(self.privileged(command), timeout=timeout, check=check)

    def execute_as(
        self,
        user: str,
        command: str,
        timeout: Optional[int] = None,
        check: bool = True
    ) -> CommandOutput:
        """Execute command as another OS user through a login shell."""
        return self.execute_sudo(
            f"su - {user} -c {shlex.quote(command)}",
            timeout=timeout,
            check=check
        )

    def file_exists(self, path: str) -> bool:
        exit_code, _, _ = self.execute(f"test -e {shlex.quote(path)}", check=False)
        return exit_code == 0

    def which(self, program: str) -> Optional[str]:
        exit_code, stdout, _ = self.execute(f"command -v {shlex.quote(program)}", check=False)
        if exit_code != 0:
            return None
        return stdout.strip() or None

    def disconnect(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class LocalShell(CommandRunner):
    """
    Runs commands on this host.

    Local runs are expected to be root already (PostgresSetup.check_privileges
    enforces it), so privileged commands are not prefixed with sudo.
    """

    def run(self, command: str, timeout: Optional[int] = None) -> CommandOutput:
        try:
            result = subprocess.run(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(
                f"Command timed out after {timeout}s: {command}",
                command=command
            ) from e
        return result.returncode, result.stdout, result.stderr

    def write_file(
        self,
        path: str,
        content: str,
        mode: int = 0o644,
        owner: Optional[str] = None
    ) -> None:
        """Write content to path, then apply mode and owner ('user:group')."""
        target = Path(path)
        target.write_text(content)
        target.chmod(mode)
        if owner:
            user, _, group = owner.partition(":")
            shutil.chown(target, user=user, group=group or None)

    def file_exists(self, path: str) -> bool:
        return Path(path).exists()

    def which(self, program: str) -> Optional[str]:
        return shutil.which(program)
