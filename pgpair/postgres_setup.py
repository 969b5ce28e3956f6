"""
PostgreSQL installation and two-instance provisioning module.
Handles installation, directory layout, systemd units, configuration and
service start-up for the main (5432) and second (5433) instances.
"""

import shlex
from typing import Dict, List, Optional, Tuple

from .exceptions import CommandError, PrivilegeError, UnsupportedOSError
from .instance import Instance
from .result import StepResult, summarize
from .templates import (
    LOG_DIR,
    SOCKET_DIR,
    render_pg_hba,
    render_postgresql_conf,
    render_systemd_unit,
    validate_subnet,
)
from .utils.logger import setup_logger
from .utils.polling import wait_until
from .utils.shell import CommandRunner

PGDG_LIST = "/etc/apt/sources.list.d/pgdg.list"
PGDG_KEY_URL = "https://www.postgresql.org/media/keys/ACCC4CF8.asc"
POSTGRES_HOME = "/var/lib/postgresql"
OS_RELEASE = "/etc/os-release"
SERVICE_START_TIMEOUT = 330


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release KEY=value lines into a dict."""
    info = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        info[key] = value.strip().strip('"').strip("'")
    return info


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresSetup:
    """Provisions a pair of PostgreSQL instances on one host."""

    def __init__(
        self,
        shell: CommandRunner,
        instances: Tuple[Instance, Instance],
        subnet: str,
        password: str = "postgres",
        default_password: str = "postgres",
        pg_version: str = "15",
        settings: Optional[Dict[str, object]] = None,
        start_timeout: int = 30,
        poll_interval: float = 1,
        logger=None
    ):
        """
        Initialize PostgreSQL setup.

        Args:
            shell: LocalShell or SSHClient used to run commands
            instances: (main, second) instances to provision
            subnet: Trusted subnet in CIDR form
            password: Password for the postgres role
            default_password: Password value that means "leave unset"
            pg_version: PostgreSQL major version
            settings: postgresql.conf tuning overrides
            start_timeout: Seconds to wait for a unit to become active
            poll_interval: Seconds between polls
            logger: Logger instance (optional)
        """
        self.shell = shell
        self.instances = instances
        self.subnet = validate_subnet(subnet)
        self.password = password
        self.default_password = default_password
        self.pg_version = pg_version
        self.settings = settings or {}
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.logger = logger or setup_logger(__name__)
        self.os_type: Optional[str] = None
        self.os_name: str = ""
        self.os_version: str = ""

    @property
    def bin_dir(self) -> str:
        if self.os_type == 'macos':
            _, stdout, _ = self.shell.execute(
                f"brew --prefix postgresql@{self.pg_version}", check=True
            )
            return f"{stdout.strip()}/bin"
        return f"/usr/lib/postgresql/{self.pg_version}/bin"

    def check_privileges(self) -> StepResult:
        """Abort unless commands run with superuser privileges."""
        exit_code, stdout, _ = self.shell.execute_sudo("id -u", check=False)
        if exit_code != 0 or stdout.strip() != "0":
            raise PrivilegeError("Please run as root or with sudo")
        return StepResult.unchanged("check_privileges", "running as root")

    def detect_os(self) -> str:
        """
        Detect operating system type.

        Returns:
            OS type ('debian' or 'macos')

        Raises:
            UnsupportedOSError: For any other operating system
        """
        if self.os_type:
            return self.os_type

        exit_code, stdout, _ = self.shell.execute(f"cat {OS_RELEASE}", check=False)
        if exit_code == 0:
            info = parse_os_release(stdout)
            family = f"{info.get('ID', '')} {info.get('ID_LIKE', '')}".lower().split()
            self.os_name = info.get('NAME', info.get('ID', 'unknown'))
            self.os_version = info.get('VERSION_ID', '')
            if 'debian' in family or 'ubuntu' in family:
                self.os_type = 'debian'
        else:
            _, uname, _ = self.shell.execute("uname", check=False)
            if uname.strip() == "Darwin":
                _, version, _ = self.shell.execute("sw_vers -productVersion", check=False)
                self.os_type = 'macos'
                self.os_name = "macOS"
                self.os_version = version.strip()
            else:
                self.os_name = uname.strip() or "unknown"

        if not self.os_type:
            raise UnsupportedOSError(f"Unsupported operating system: {self.os_name}")

        self.logger.info(f"Detected OS: {self.os_name} {self.os_version}".rstrip())
        return self.os_type

    def install_postgresql(self) -> StepResult:
        """Install PostgreSQL from the official repository or Homebrew."""
        os_type = self.detect_os()
        self.logger.info(f"Installing PostgreSQL {self.pg_version}...")

        if os_type == 'debian':
            self._install_postgresql_debian()
        else:
            self._install_postgresql_macos()

        initdb = f"{self.bin_dir}/initdb"
        if not self.shell.file_exists(initdb):
            raise CommandError(
                f"PostgreSQL installation failed. initdb not found at {initdb}"
            )

        self.logger.info("PostgreSQL installed successfully")
        return StepResult.changed("install_postgresql", f"postgresql-{self.pg_version}")

    def _install_postgresql_debian(self) -> None:
        """Install PostgreSQL on Debian/Ubuntu."""
        if not self.shell.file_exists(PGDG_LIST):
            self.logger.info("Registering PostgreSQL apt repository")
            self.shell.execute_sudo(
                f"sh -c 'echo \"deb http://apt.postgresql.org/pub/repos/apt "
                f"$(lsb_release -cs)-pgdg main\" > {PGDG_LIST}'",
                check=True
            )
            self.shell.execute_sudo(
                f"sh -c 'wget --quiet -O - {PGDG_KEY_URL} | apt-key add -'",
                check=True
            )
        else:
            self.logger.debug(f"{PGDG_LIST} already present")

        self.shell.execute_sudo(
            "apt-get update",
            timeout=300,
            check=True
        )

        self.shell.execute_sudo(
            f"apt-get install -y postgresql-{self.pg_version} postgresql-contrib-{self.pg_version}",
            timeout=600,
            check=True
        )

    def _install_postgresql_macos(self) -> None:
        """Install PostgreSQL with Homebrew."""
        if not self.shell.which("brew"):
            raise CommandError(
                "Homebrew is required for macOS installation. Please install it first."
            )

        self.shell.execute(
            f"brew install postgresql@{self.pg_version}",
            timeout=600,
            check=True
        )

    def require_systemd(self) -> None:
        if not self.shell.which("systemctl"):
            raise UnsupportedOSError(
                f"systemd is required to run the instances on {self.os_name}; "
                f"PostgreSQL {self.pg_version} was installed but not provisioned"
            )

    def setup_postgres_user(self) -> StepResult:
        """Ensure the postgres OS account and its home directory exist."""
        self.logger.info("Setting up postgres user...")
        changed = False

        exit_code, _, _ = self.shell.execute("id -u postgres", check=False)
        if exit_code != 0:
            exit_code, _, _ = self.shell.execute("getent group postgres", check=False)
            if exit_code != 0:
                self.shell.execute_sudo("groupadd postgres", check=True)
            self.shell.execute_sudo(
                f"useradd -r -g postgres -d {POSTGRES_HOME} -s /bin/bash postgres",
                check=True
            )
            changed = True

        self.shell.execute_sudo(
            f"install -d -m 755 -o postgres -g postgres {POSTGRES_HOME}",
            check=True
        )

        self.logger.info("Postgres user setup completed")
        if changed:
            return StepResult.changed("setup_postgres_user", "created postgres user")
        return StepResult.unchanged("setup_postgres_user", "postgres user exists")

    def stop_instances(self) -> None:
        """Stop every postgresql unit and kill stray server processes."""
        self.shell.execute_sudo("systemctl stop 'postgresql*'", check=False)
        self.shell.execute_sudo("pkill postgres", check=False)
        wait_until(
            lambda: self.shell.execute("pgrep -x postgres", check=False)[0] != 0,
            timeout=self.start_timeout,
            interval=self.poll_interval,
            description="postgres processes to exit"
        )

    def setup_directories(self) -> StepResult:
        """
        Reset data, log and socket directories.

        This deletes both data directories. Interrupting it can leave the
        host with no data directory and no running service.
        """
        self.logger.info("Setting up PostgreSQL directories...")
        self.logger.warning("Resetting data directories; do not interrupt")

        self.stop_instances()

        for instance in self.instances:
            self.shell.execute_sudo(f"rm -rf {instance.data_dir}", check=True)
        self.shell.execute_sudo(f"rm -rf {SOCKET_DIR}/* {LOG_DIR}/*", check=True)

        for instance in self.instances:
            self._install_dir(instance.data_dir, 0o700)
        self._install_dir(LOG_DIR, 0o755)
        self._install_dir(SOCKET_DIR, 0o775)

        self.logger.info("Directories created successfully")
        return StepResult.changed("setup_directories", "data directories recreated")

    def _install_dir(self, path: str, mode: int) -> None:
        self.shell.execute_sudo(
            f"install -d -m {mode:o} -o postgres -g postgres {path}",
            check=True
        )

    def create_systemd_services(self) -> StepResult:
        """Write one systemd unit per instance and reload systemd."""
        self.logger.info("Creating systemd service files...")
        bin_dir = self.bin_dir

        for instance in self.instances:
            self.shell.write_file(
                instance.unit_file,
                render_systemd_unit(instance, bin_dir, self.pg_version),
                mode=0o644
            )
            self.logger.debug(f"Wrote {instance.unit_file}")

        self.shell.execute_sudo("systemctl daemon-reload", check=True)

        self.logger.info("Systemd service files created successfully")
        return StepResult.changed("create_systemd_services")

    def initialize_postgresql(self) -> StepResult:
        """Run initdb for both instances with trust authentication."""
        self.logger.info("Initializing PostgreSQL databases...")
        bin_dir = self.bin_dir

        for instance in self.instances:
            exit_code, _, stderr = self.shell.execute_as(
                "postgres",
                f"{bin_dir}/initdb -D {instance.data_dir} --auth=trust",
                timeout=300,
                check=False
            )
            if exit_code != 0:
                raise CommandError(
                    f"Failed to initialize {instance.role} instance",
                    exit_code=exit_code,
                    stderr=stderr
                )

        self.logger.info("PostgreSQL databases initialized successfully")
        return StepResult.changed("initialize_postgresql")

    def configure_postgresql(self) -> StepResult:
        """Write postgresql.conf and pg_hba.conf for both instances."""
        self.logger.info("Configuring PostgreSQL...")
        hba = render_pg_hba(self.subnet)

        for instance in self.instances:
            self.logger.info(f"Configuring PostgreSQL {instance.role} instance...")
            self.shell.write_file(
                f"{instance.data_dir}/postgresql.conf",
                render_postgresql_conf(instance, self.settings),
                mode=0o600,
                owner="postgres:postgres"
            )
            self.shell.write_file(
                f"{instance.data_dir}/pg_hba.conf",
                hba,
                mode=0o600,
                owner="postgres:postgres"
            )

        self.logger.info("PostgreSQL configuration completed")
        return StepResult.changed("configure_postgresql", f"trusted subnet {self.subnet}")

    def start_postgresql(self) -> StepResult:
        """Start both units and wait until systemd reports them active."""
        self.logger.info("Starting PostgreSQL instances...")

        self.stop_instances()
        self.shell.execute_sudo(f"rm -f {SOCKET_DIR}/.s.PGSQL.*", check=False)

        for instance in self.instances:
            self.logger.info(f"Starting {instance.role} instance...")
            exit_code, _, _ = self.shell.execute_sudo(
                f"systemctl start {instance.unit_name}",
                timeout=SERVICE_START_TIMEOUT,
                check=False
            )
            if exit_code != 0:
                self.dump_journal(instance)
                raise CommandError(
                    f"Failed to start {instance.role} instance",
                    command=f"systemctl start {instance.unit_name}",
                    exit_code=exit_code
                )
            self.wait_for_active(instance)

        for instance in self.instances:
            if not self.is_active(instance):
                raise CommandError("One or both PostgreSQL instances failed to start")

        self.logger.info("PostgreSQL instances started successfully")
        return StepResult.changed("start_postgresql")

    def is_active(self, instance: Instance) -> bool:
        exit_code, _, _ = self.shell.execute(
            f"systemctl is-active --quiet {instance.unit_name}", check=False
        )
        return exit_code == 0

    def wait_for_active(self, instance: Instance) -> None:
        wait_until(
            lambda: self.is_active(instance),
            timeout=self.start_timeout,
            interval=self.poll_interval,
            description=f"{instance.unit_name} to become active"
        )

    def dump_journal(self, instance: Instance, lines: int = 20) -> None:
        """Log the last journal lines of an instance's unit."""
        self.logger.info(f"Checking {instance.role} instance logs:")
        _, stdout, _ = self.shell.execute_sudo(
            f"journalctl -u {instance.unit_name} -n {lines} --no-pager",
            check=False
        )
        for line in stdout.splitlines():
            self.logger.info(line)

    def set_postgres_password(self) -> StepResult:
        """
        Set the postgres role password on both instances.

        Tries TCP on localhost first and falls back to the local socket.
        Failure is reported but does not abort provisioning.
        """
        self.logger.info("Setting PostgreSQL password...")
        sql = f"ALTER USER postgres WITH PASSWORD {sql_literal(self.password)};"
        failed = []

        for instance in self.instances:
            attempts = [
                f"psql -h localhost -p {instance.port} -c {shlex.quote(sql)}",
                f"psql -p {instance.port} -c {shlex.quote(sql)}",
            ]
            for command in attempts:
                exit_code, _, _ = self.shell.execute_as("postgres", command, check=False)
                if exit_code == 0:
                    break
            else:
                self.logger.warning(
                    f"Could not set password for {instance.role} (port {instance.port})"
                )
                failed.append(instance.role)

        if failed:
            return StepResult.failed("set_postgres_password", ", ".join(failed))
        return StepResult.changed("set_postgres_password")

    def provision(self) -> List[StepResult]:
        """
        Run the complete provisioning sequence.

        Returns:
            Results of every step that ran, in order
        """
        results = [self.check_privileges()]
        self.detect_os()
        results.append(self.install_postgresql())
        self.require_systemd()
        results.append(self.setup_postgres_user())
        results.append(self.setup_directories())
        results.append(self.create_systemd_services())
        results.append(self.initialize_postgresql())
        results.append(self.configure_postgresql())
        results.append(self.start_postgresql())

        if self.password != self.default_password:
            results.append(self.set_postgres_password())

        self.logger.info("Installation completed successfully!")
        for instance in self.instances:
            self.logger.info(f"{instance.role.capitalize()} instance running on port {instance.port}")
        self.logger.info(f"Steps: {summarize(results)}")
        return results

