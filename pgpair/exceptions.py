"""
Error types raised by the provisioner and the replication tester.
"""

from typing import Optional


class PgPairError(RuntimeError):
    """Base class for every fatal pgpair error."""


class PrivilegeError(PgPairError):
    """The run needs superuser privileges it does not have."""


class UnsupportedOSError(PgPairError):
    """The target host is neither Debian-family nor macOS."""


class CommandError(PgPairError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = ""
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ConvergenceTimeout(PgPairError):
    """A bounded wait expired before the condition held."""


class ConnectionFailed(PgPairError):
    """An instance could not be reached."""


class ReplicationError(PgPairError):
    """Replication setup or verification failed."""
