"""
Instance topology shared by the provisioner and the replication tester.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

MAIN = "main"
SECOND = "second"


@dataclass(frozen=True)
class Instance:
    """One PostgreSQL instance of the pair."""
    role: str
    host: str
    port: int
    data_dir: str
    unit_name: str

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def unit_file(self) -> str:
        return f"/etc/systemd/system/{self.unit_name}.service"

    @property
    def log_filename(self) -> str:
        return f"postgresql-{self.role}-%Y-%m-%d.log"

    def dsn(self, db_name: str = "postgres", user: str = "postgres",
            passfile: Optional[str] = None) -> str:
        """
        Build a libpq connection string for this instance.

        The string never carries a password; credentials come from the
        passfile or from the trust rules in pg_hba.conf.

        Args:
            db_name: Database name
            user: Database user
            passfile: Path of a pgpass file readable by the connecting side

        Returns:
            Connection string (DSN format)
        """
        parts = [
            f"host={self.host}",
            f"port={self.port}",
            f"user={user}",
            f"dbname={db_name}",
        ]
        if passfile:
            parts.append(f"passfile={passfile}")
        return " ".join(parts)


@dataclass(frozen=True)
class ReplicationPair:
    """One direction of logical replication."""
    publication: str
    subscription: str
    source: Instance
    target: Instance

    def __str__(self) -> str:
        return f"{self.source.address} -> {self.target.address}"


def build_instance(role: str, host: str, port: int, pg_version: str = "15") -> Instance:
    return Instance(
        role=role,
        host=host,
        port=port,
        data_dir=f"/var/lib/postgresql/{pg_version}/{role}",
        unit_name=f"postgresql@{pg_version}-{role}",
    )


def build_pair(
    site1_ip1: str,
    site1_ip2: str,
    pg_version: str = "15",
    main_port: int = 5432,
    second_port: int = 5433
) -> Tuple[Instance, Instance]:
    """Return the (main, second) instances of the two-instance topology."""
    return (
        build_instance(MAIN, site1_ip1, main_port, pg_version),
        build_instance(SECOND, site1_ip2, second_port, pg_version),
    )


def bidirectional_pairs(a: Instance, b: Instance) -> Tuple[ReplicationPair, ReplicationPair]:
    """Forward (a to b) and reverse (b to a) pairs with distinct object names."""
    return (
        ReplicationPair("pub_test", "sub_test", source=a, target=b),
        ReplicationPair("pub_test_reverse", "sub_test_reverse", source=b, target=a),
    )


def redact_dsn(dsn: str) -> str:
    """Mask any password=... token in a DSN before it is logged."""
    return " ".join(
        "password=***" if part.startswith("password=") else part
        for part in dsn.split()
    )
