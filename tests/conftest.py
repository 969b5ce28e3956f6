import re

import psycopg2
import pytest

from pgpair.exceptions import CommandError
from pgpair.instance import build_pair


class FakeShell:
    """Records commands and answers them from substring rules."""

    hostname = "fakehost"

    def __init__(self):
        self.commands = []
        self.rules = []
        self.files = {}
        self.existing = set()
        self.programs = {"systemctl": "/usr/bin/systemctl"}

    def on(self, fragment, exit_code=0, stdout="", stderr=""):
        self.rules.insert(0, (fragment, (exit_code, stdout, stderr)))
        return self

    def _run(self, command, check):
        self.commands.append(command)
        result = (0, "", "")
        for fragment, response in self.rules:
            if fragment in command:
                result = response
                break
        if check and result[0] != 0:
            raise CommandError(f"Command failed: {command}", command=command,
                               exit_code=result[0], stderr=result[2])
        return result

    def execute(self, command, timeout=None, check=True):
        return self._run(command, check)

    def execute_sudo(self, command, timeout=None, check=True):
        return self._run(command, check)

    def execute_as(self, user, command, timeout=None, check=True):
        return self._run(f"[{user}] {command}", check)

    def write_file(self, path, content, mode=0o644, owner=None):
        self.files[path] = content
        self.commands.append(f"write {path}")

    def file_exists(self, path):
        return path in self.existing

    def which(self, program):
        return self.programs.get(program)

    def disconnect(self):
        pass

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]


UBUNTU_OS_RELEASE = """\
PRETTY_NAME="Ubuntu 22.04.4 LTS"
NAME="Ubuntu"
VERSION_ID="22.04"
ID=ubuntu
ID_LIKE=debian
"""


@pytest.fixture
def fake_shell():
    shell = FakeShell()
    shell.on("id -u", stdout="0\n")
    shell.on("cat /etc/os-release", stdout=UBUNTU_OS_RELEASE)
    shell.on("pgrep -x postgres", exit_code=1)
    shell.existing.add("/usr/lib/postgresql/15/bin/initdb")
    return shell


@pytest.fixture
def instances():
    return build_pair("192.168.90.6", "192.168.90.7")


class FakeServer:
    """Minimal stand-in for one PostgreSQL instance."""

    def __init__(self, cluster, wal_level="logical", version=160004, reachable=True):
        self.cluster = cluster
        self.wal_level = wal_level
        self.pending_wal_level = wal_level
        self.version = version
        self.reachable = reachable
        self.restarts = 0
        self.databases = {"postgres"}
        self.rows = []
        self.subscribers = []
        self.statements = []

    def restart(self):
        self.restarts += 1
        self.wal_level = self.pending_wal_level

    def handle(self, dbname, sql, params):
        sql = " ".join(sql.split())
        self.statements.append((dbname, sql, params))

        if sql.startswith("SELECT version()"):
            return [("PostgreSQL 16.4",)]
        if sql == "SELECT 1;":
            return [(1,)]
        if sql.startswith("SHOW wal_level"):
            return [(self.wal_level,)]
        if sql.startswith("SHOW server_version_num"):
            return [(str(self.version),)]
        if sql.startswith("ALTER SYSTEM SET wal_level"):
            self.pending_wal_level = "logical"
            return None
        if sql.startswith("SELECT 1 FROM pg_database"):
            return [(1,)] if params[0] in self.databases else []
        if sql.startswith("DROP DATABASE"):
            name = sql.split()[4].rstrip(";")
            self.databases.discard(name)
            self.rows = []
            self.subscribers = []
            return None
        if sql.startswith("CREATE DATABASE"):
            self.databases.add(sql.split()[2].rstrip(";"))
            return None
        if sql.startswith("INSERT INTO test_table"):
            self.rows.append(params[0])
            for subscriber in self.subscribers:
                if self.cluster.replicate:
                    subscriber.rows.append(params[0])
            return None
        if sql.startswith("SELECT COUNT(*), MAX(data)"):
            return [(len(self.rows), max(self.rows) if self.rows else None)]
        if sql.startswith("CREATE SUBSCRIPTION"):
            host = re.search(r"host=(\S+)", params[0]).group(1)
            port = int(re.search(r"port=(\d+)", params[0]).group(1))
            source = self.cluster.servers[(host, port)]
            source.subscribers.append(self)
            if "copy_data = true" in sql and self.cluster.replicate:
                self.rows.extend(source.rows)
            return None
        if sql.startswith("SELECT s.subname"):
            return [("sub_test", True, True)]
        return None


class FakeCursor:
    def __init__(self, server, dbname):
        self.server = server
        self.dbname = dbname
        self.description = None
        self._rows = []

    def execute(self, sql, params=None):
        result = self.server.handle(self.dbname, sql, params)
        self.description = [("column",)] if result is not None else None
        self._rows = result or []

    def fetchall(self):
        return self._rows

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeConnection:
    def __init__(self, server, dbname):
        self.server = server
        self.dbname = dbname
        self.autocommit = False
        self.closed = False

    def cursor(self):
        return FakeCursor(self.server, self.dbname)

    def close(self):
        self.closed = True


class FakeCluster:
    def __init__(self):
        self.servers = {}
        self.replicate = True
        self.connections = []

    def add(self, instance, **kwargs):
        server = FakeServer(self, **kwargs)
        self.servers[(instance.host, instance.port)] = server
        return server

    def connect(self, host, port, user, dbname, connect_timeout=None, password=None):
        server = self.servers[(host, port)]
        if not server.reachable:
            raise psycopg2.OperationalError(f"could not connect to server at {host}:{port}")
        conn = FakeConnection(server, dbname)
        self.connections.append(conn)
        return conn


class FakeSSH:
    def __init__(self, cluster, hostname):
        self.cluster = cluster
        self.hostname = hostname
        self.commands = []

    def execute_sudo(self, command, timeout=None, check=True):
        self.commands.append(command)
        for (host, _), server in self.cluster.servers.items():
            if host == self.hostname:
                server.restart()
        return 0, "", ""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def ssh_factory(cluster):
    clients = []

    def factory(hostname):
        ssh = FakeSSH(cluster, hostname)
        clients.append(ssh)
        return ssh

    factory.clients = clients
    return factory
