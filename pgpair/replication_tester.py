"""
Bidirectional logical replication smoke test.
Sets up a publication/subscription pair in each direction between two
instances and checks that a throwaway table converges on both sides.
"""

import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psycopg2

from .exceptions import (
    ConnectionFailed,
    ConvergenceTimeout,
    ReplicationError,
)
from .instance import MAIN, Instance, ReplicationPair, bidirectional_pairs, redact_dsn
from .result import StepResult, summarize
from .utils.logger import setup_logger
from .utils.polling import wait_until
from .utils.ssh_client import SSHClient

TEST_TABLE = "test_table"

CREATE_TABLE_SQL = f"""
    CREATE TABLE {TEST_TABLE} (
        id SERIAL PRIMARY KEY,
        data TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
"""

SNAPSHOT_SQL = f"SELECT COUNT(*), MAX(data) FROM {TEST_TABLE};"

# Subscription option "origin" exists from PostgreSQL 16 on
ORIGIN_FILTER_MIN_VERSION = 160000

IDENTIFIER = re.compile(r'^[a-z_][a-z0-9_]*$')


def ident(name: str) -> str:
    """Return name unchanged if it is a plain lower-case SQL identifier."""
    if not IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


class ReplicationTester:
    """Sets up and verifies bidirectional logical replication between two instances."""

    def __init__(
        self,
        instance_a: Instance,
        instance_b: Instance,
        db_name: str = "replication_test",
        db_user: str = "postgres",
        password: Optional[str] = None,
        passfile: Optional[str] = None,
        ssh_factory: Optional[Callable[[str], SSHClient]] = None,
        restart_timeout: float = 30,
        sync_timeout: float = 30,
        poll_interval: float = 1,
        connect: Optional[Callable[..., Any]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        logger=None
    ):
        """
        Initialize the tester.

        Args:
            instance_a: Instance that receives the seed rows
            instance_b: Peer instance
            db_name: Throwaway database name
            db_user: Database user
            password: Password used by this process to connect (never
                embedded in subscription connection strings)
            passfile: pgpass file path for subscription connection strings
            ssh_factory: Builds an SSH client for a host, used for restarts
            restart_timeout: Seconds to wait for an instance to come back
            sync_timeout: Seconds to wait for both sides to converge
            poll_interval: Seconds between polls
            connect: DB-API connect function (defaults to psycopg2.connect)
            sleep: Sleep function used while polling
            logger: Logger instance (optional)
        """
        self.a = instance_a
        self.b = instance_b
        self.db_name = ident(db_name)
        self.db_user = db_user
        self.password = password
        self.passfile = passfile
        self.ssh_factory = ssh_factory
        self.restart_timeout = restart_timeout
        self.sync_timeout = sync_timeout
        self.poll_interval = poll_interval
        self._connect = connect or psycopg2.connect
        self._sleep = sleep
        self.logger = logger or setup_logger(__name__)
        self.forward, self.reverse = bidirectional_pairs(instance_a, instance_b)

    # ------------------------------------------------------------------
    # Database access
    # ------------------------------------------------------------------

    def _open(self, instance: Instance, db_name: str):
        kwargs = {
            'host': instance.host,
            'port': instance.port,
            'user': self.db_user,
            'dbname': db_name,
            'connect_timeout': 5,
        }
        if self.password:
            kwargs['password'] = self.password
        conn = self._connect(**kwargs)
        # CREATE DATABASE, ALTER SYSTEM and CREATE SUBSCRIPTION refuse to run in a transaction
        conn.autocommit = True
        return conn

    def execute(
        self,
        instance: Instance,
        statement: str,
        params: Optional[Sequence[Any]] = None,
        db_name: str = "postgres"
    ) -> List[Tuple]:
        """
        Run one statement and return its rows (empty for non-queries).

        Raises:
            ReplicationError: If the statement fails
        """
        try:
            conn = self._open(instance, db_name)
        except psycopg2.Error as e:
            raise ReplicationError(f"Cannot connect to {instance.address}/{db_name}: {e}") from e

        try:
            with conn.cursor() as cur:
                cur.execute(statement, params)
                return cur.fetchall() if cur.description else []
        except psycopg2.Error as e:
            raise ReplicationError(
                f"Statement failed on {instance.address}/{db_name}: {e}"
            ) from e
        finally:
            conn.close()

    def scalar(self, instance: Instance, statement: str, db_name: str = "postgres") -> Any:
        rows = self.execute(instance, statement, db_name=db_name)
        return rows[0][0] if rows else None

    def database_exists(self, instance: Instance) -> bool:
        rows = self.execute(
            instance,
            "SELECT 1 FROM pg_database WHERE datname = %s;",
            (self.db_name,)
        )
        return bool(rows)

    def ping(self, instance: Instance) -> bool:
        try:
            return self.scalar(instance, "SELECT 1;") == 1
        except ReplicationError:
            return False

    def _wait(self, probe, timeout: float, description: str):
        kwargs = {'sleep': self._sleep} if self._sleep else {}
        return wait_until(
            probe,
            timeout=timeout,
            interval=self.poll_interval,
            description=description,
            **kwargs
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def test_connection(self, instance: Instance) -> StepResult:
        """Fail fast when an instance is unreachable."""
        self.logger.info(f"Testing connection to PostgreSQL at {instance.address}...")
        try:
            version = self.scalar(instance, "SELECT version();")
        except ReplicationError as e:
            raise ConnectionFailed(f"Failed to connect to PostgreSQL at {instance.address}") from e

        self.logger.debug(f"{instance.address}: {version}")
        self.logger.info(f"Successfully connected to PostgreSQL at {instance.address}")
        return StepResult.unchanged("test_connection", instance.address)

    def configure_wal_level(self, instance: Instance) -> StepResult:
        """
        Make sure wal_level is logical, restarting the instance only if needed.

        Raises:
            ConvergenceTimeout: If the instance does not answer after restart
            ReplicationError: If wal_level is still not logical afterwards
        """
        self.logger.info(f"Configuring PostgreSQL at {instance.address}...")
        self.execute(instance, "ALTER SYSTEM SET wal_level = logical;")

        if self.wal_level(instance) == "logical":
            self.logger.info(f"WAL level already set to logical on {instance.address}")
            return StepResult.unchanged("configure_wal_level", instance.address)

        self.restart_instance(instance)

        self.logger.info("Waiting for PostgreSQL to restart...")
        try:
            self._wait(
                lambda: self.ping(instance),
                timeout=self.restart_timeout,
                description=f"PostgreSQL to restart on {instance.address}"
            )
        except ConvergenceTimeout as e:
            raise ConvergenceTimeout(
                f"Timeout waiting for PostgreSQL to restart on {instance.address}"
            ) from e

        if self.wal_level(instance) != "logical":
            raise ReplicationError(f"Failed to set wal_level to logical on {instance.address}")

        self.logger.info(f"Successfully configured PostgreSQL on {instance.address}")
        return StepResult.changed("configure_wal_level", f"{instance.address} restarted")

    def wal_level(self, instance: Instance) -> str:
        return str(self.scalar(instance, "SHOW wal_level;")).strip()

    def restart_instance(self, instance: Instance) -> None:
        """Restart the instance's systemd unit over SSH."""
        if not self.ssh_factory:
            raise ReplicationError(
                f"wal_level on {instance.address} needs a restart but no SSH access is configured"
            )

        self.logger.info(f"Restarting PostgreSQL on {instance.role} instance...")
        with self.ssh_factory(instance.host) as ssh:
            ssh.execute_sudo(f"systemctl restart {instance.unit_name}", timeout=330, check=True)

    def teardown(self) -> StepResult:
        """
        Remove what a previous run left behind.

        Subscriptions go first so their replication slots on the peer are
        dropped, then the test database on both sides.
        """
        removed = []
        for pair in (self.forward, self.reverse):
            if self.database_exists(pair.target):
                self.execute(
                    pair.target,
                    f"DROP SUBSCRIPTION IF EXISTS {ident(pair.subscription)};",
                    db_name=self.db_name
                )

        for instance in (self.a, self.b):
            if self.database_exists(instance):
                self.execute(instance, f"DROP DATABASE IF EXISTS {self.db_name} WITH (FORCE);")
                removed.append(instance.address)

        if removed:
            self.logger.info(f"Removed previous test databases on {', '.join(removed)}")
            return StepResult.changed("teardown", ", ".join(removed))
        return StepResult.unchanged("teardown")

    def create_test_schema(self, instance: Instance) -> None:
        """
        Recreate the test database and table on an instance.

        The id sequence steps by 2 from an offset per role so rows inserted
        on both sides never share a key.
        """
        self.execute(instance, f"DROP DATABASE IF EXISTS {self.db_name};")
        self.execute(instance, f"CREATE DATABASE {self.db_name};")
        self.execute(instance, CREATE_TABLE_SQL, db_name=self.db_name)

        start = 1 if instance.role == MAIN else 2
        self.execute(
            instance,
            f"ALTER SEQUENCE {TEST_TABLE}_id_seq INCREMENT BY 2 RESTART WITH {start};",
            db_name=self.db_name
        )

    def setup_test_data(self, instance: Instance) -> StepResult:
        """Create the test schema on instance and insert three seed rows."""
        self.logger.info(f"Creating test data on {instance.address}...")
        self.create_test_schema(instance)

        rows = [(f"Test data {i} from {instance.address}",) for i in range(1, 4)]
        for row in rows:
            self.execute(
                instance,
                f"INSERT INTO {TEST_TABLE} (data) VALUES (%s);",
                row,
                db_name=self.db_name
            )

        self.logger.info(f"Test data created successfully on {instance.address}")
        return StepResult.changed("setup_test_data", f"{len(rows)} rows on {instance.address}")

    def supports_origin_filter(self, instance: Instance) -> bool:
        version = self.scalar(instance, "SHOW server_version_num;")
        return int(version) >= ORIGIN_FILTER_MIN_VERSION

    def check_origin_filter(self) -> bool:
        """
        Warn up front when either instance cannot filter changes by origin.

        Without origin = none every applied row is sent back to its origin,
        where it collides with the existing primary key and stalls the apply
        worker, so the convergence checks are expected to time out.
        """
        old = [i.address for i in (self.a, self.b) if not self.supports_origin_filter(i)]
        if not old:
            return True
        self.logger.warning(
            f"PostgreSQL older than 16 on {', '.join(old)}: bidirectional "
            f"replication will loop changes back to their origin and this test "
            f"is expected to fail with a data mismatch"
        )
        return False

    def subscription_conninfo(self, pair: ReplicationPair) -> str:
        """Connection string the target uses to reach the source; carries no password."""
        return pair.source.dsn(
            db_name=self.db_name,
            user=self.db_user,
            passfile=self.passfile
        )

    def setup_replication(
        self,
        pair: ReplicationPair,
        recreate_target: bool = True,
        copy_data: bool = True
    ) -> StepResult:
        """
        Establish one direction of logical replication.

        Args:
            pair: Source/target and object names
            recreate_target: Drop and recreate the target database and table
            copy_data: Copy existing source rows when the subscription starts
        """
        self.logger.info(f"Setting up replication between {pair.source.address} and {pair.target.address}...")
        publication = ident(pair.publication)
        subscription = ident(pair.subscription)

        self.execute(pair.source, f"DROP PUBLICATION IF EXISTS {publication};", db_name=self.db_name)
        self.execute(pair.source, f"CREATE PUBLICATION {publication} FOR ALL TABLES;", db_name=self.db_name)

        if recreate_target:
            self.create_test_schema(pair.target)

        options = [f"copy_data = {'true' if copy_data else 'false'}"]
        if self.supports_origin_filter(pair.target):
            options.append("origin = none")
        else:
            self.logger.warning(
                f"{pair.target.address} predates PostgreSQL 16; "
                f"subscription {subscription} is created without origin = none "
                f"and applied changes will be replicated back to their origin"
            )

        conninfo = self.subscription_conninfo(pair)
        self.logger.debug(f"Subscription {subscription} connects with: {redact_dsn(conninfo)}")

        self.execute(pair.target, f"DROP SUBSCRIPTION IF EXISTS {subscription};", db_name=self.db_name)
        self.execute(
            pair.target,
            f"CREATE SUBSCRIPTION {subscription} CONNECTION %s "
            f"PUBLICATION {publication} WITH ({', '.join(options)});",
            (conninfo,),
            db_name=self.db_name
        )

        self.logger.info("Replication setup completed")
        return StepResult.changed("setup_replication", str(pair))

    def setup_bidirectional_replication(self) -> List[StepResult]:
        self.logger.info("Setting up bi-directional replication...")
        results = [
            self.setup_replication(self.forward),
            # The target already holds the copied seed rows
            self.setup_replication(self.reverse, recreate_target=False, copy_data=False),
        ]
        self.logger.info("Bi-directional replication setup completed")
        return results

    def snapshot(self, instance: Instance) -> Tuple[int, Optional[str]]:
        """Return (row count, max payload) of the test table."""
        rows = self.execute(instance, SNAPSHOT_SQL, db_name=self.db_name)
        count, max_data = rows[0]
        return int(count), max_data

    def verify_replication(self, source: Instance, target: Instance) -> StepResult:
        """
        Poll until row count and max(data) match on both sides.

        Raises:
            ReplicationError: If they still differ when sync_timeout expires
        """
        self.logger.info(f"Verifying replication from {source.address} to {target.address}...")
        state = {}

        def converged():
            state['source'] = self.snapshot(source)
            state['target'] = self.snapshot(target)
            return state['source'] if state['source'] == state['target'] else None

        try:
            count, _ = self._wait(
                converged,
                timeout=self.sync_timeout,
                description=f"{target.address} to match {source.address}"
            )
        except ConvergenceTimeout as e:
            raise ReplicationError(
                f"Data mismatch between {source.address} and {target.address}: "
                f"{state.get('source')} vs {state.get('target')}"
            ) from e

        self.logger.info(f"Data successfully replicated from {source.address} to {target.address}")
        return StepResult.unchanged("verify_replication", f"{count} rows on both sides")

    def test_bidirectional_replication(self) -> StepResult:
        """
        Insert one row on each side and wait until both sides hold both rows.

        Raises:
            ReplicationError: If counts still differ when sync_timeout expires
        """
        self.logger.info(f"Testing bi-directional replication between {self.a.address} and {self.b.address}...")
        baseline, _ = self.snapshot(self.a)

        for instance in (self.a, self.b):
            self.execute(
                instance,
                f"INSERT INTO {TEST_TABLE} (data) VALUES (%s);",
                (f"Bi-directional test from {instance.address}",),
                db_name=self.db_name
            )

        expected = baseline + 2
        counts = {}

        def converged():
            counts['a'] = self.snapshot(self.a)[0]
            counts['b'] = self.snapshot(self.b)[0]
            return counts['a'] == counts['b'] == expected

        try:
            self._wait(
                converged,
                timeout=self.sync_timeout,
                description="both inserts to reach both instances"
            )
        except ConvergenceTimeout as e:
            raise ReplicationError(
                f"Bi-directional replication failed. Data count mismatch: "
                f"{counts.get('a')} vs {counts.get('b')} (expected {expected})"
            ) from e

        self.logger.info("Bi-directional replication test successful")
        return StepResult.changed("test_bidirectional_replication", f"{expected} rows on both sides")

    def run(self) -> List[StepResult]:
        """
        Run the full test sequence.

        Returns:
            Results of every step, in order
        """
        self.logger.info("Starting replication tests...")

        results = [
            self.test_connection(self.a),
            self.test_connection(self.b),
            self.configure_wal_level(self.a),
            self.configure_wal_level(self.b),
        ]
        self.check_origin_filter()
        results += [
            self.teardown(),
            self.setup_test_data(self.a),
        ]
        results.extend(self.setup_bidirectional_replication())
        results.append(self.verify_replication(self.a, self.b))
        results.append(self.test_bidirectional_replication())

        self.logger.info("All replication tests completed successfully!")
        self.logger.info("You can manually verify the data with:")
        for instance in (self.a, self.b):
            self.logger.info(
                f"psql -h {instance.host} -p {instance.port} -U {self.db_user} "
                f"-d {self.db_name} -c 'SELECT * FROM {TEST_TABLE};'"
            )
        self.logger.info(f"Steps: {summarize(results)}")
        return results

    def status(self) -> Dict[str, Dict[str, Any]]:
        """
        Report reachability, wal_level and subscription state of both instances.

        Returns:
            Mapping of instance address to status details
        """
        report = {}
        for instance in (self.a, self.b):
            info: Dict[str, Any] = {'role': instance.role, 'reachable': self.ping(instance)}
            if info['reachable']:
                info['wal_level'] = self.wal_level(instance)
                info['subscriptions'] = []
                if self.database_exists(instance):
                    rows = self.execute(
                        instance,
                        "SELECT s.subname, s.subenabled, st.pid IS NOT NULL "
                        "FROM pg_subscription s "
                        "LEFT JOIN pg_stat_subscription st ON st.subid = s.oid AND st.relid IS NULL "
                        "JOIN pg_database d ON d.oid = s.subdbid AND d.datname = current_database();",
                        db_name=self.db_name
                    )
                    info['subscriptions'] = [
                        {'name': name, 'enabled': enabled, 'streaming': streaming}
                        for name, enabled, streaming in rows
                    ]
            report[instance.address] = info
        return report


def default_ssh_factory(
    username: str = "root",
    password: Optional[str] = None,
    key_file: Optional[Path] = None,
    port: int = 22
) -> Callable[[str], SSHClient]:
    """Return a factory that builds SSHClient instances with shared credentials."""
    def factory(hostname: str) -> SSHClient:
        return SSHClient(
            hostname=hostname,
            username=username,
            password=password,
            key_file=key_file,
            port=port
        )
    return factory
