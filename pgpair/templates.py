"""
Renders the files the provisioner writes: systemd units, postgresql.conf
and pg_hba.conf.
"""

import ipaddress
from typing import Dict, List, Optional, Tuple

from .instance import Instance

SYSTEMD_UNIT_TEMPLATE = """\
[Unit]
Description=PostgreSQL Cluster {version}-{role}
AssertPathExists={data_dir}
RequiresMountsFor={data_dir}
After=network.target

[Service]
Type=forking
User=postgres
Group=postgres
Environment=PGDATA={data_dir}

ExecStart={bin_dir}/pg_ctl start -D {data_dir} -s -w -t {timeout}
ExecStop={bin_dir}/pg_ctl stop -D {data_dir} -s -m fast
ExecReload={bin_dir}/pg_ctl reload -D {data_dir} -s

TimeoutSec={timeout}

[Install]
WantedBy=multi-user.target
"""

SERVICE_TIMEOUT = 300

SOCKET_DIR = "/var/run/postgresql"
LOG_DIR = "/var/log/postgresql"

# (section, [(key, value)]); values are written verbatim
BASE_SETTINGS: List[Tuple[str, List[Tuple[str, str]]]] = [
    ("Connection settings", [
        ("listen_addresses", "'*'"),
        ("port", "{port}"),
        ("max_connections", "100"),
        ("unix_socket_directories", f"'{SOCKET_DIR}'"),
    ]),
    ("Replication settings", [
        ("wal_level", "logical"),
        ("max_wal_senders", "10"),
        ("max_replication_slots", "10"),
        ("wal_keep_size", "'1GB'"),
    ]),
    ("Resource usage", [
        ("shared_buffers", "'128MB'"),
        ("work_mem", "'32MB'"),
        ("maintenance_work_mem", "'64MB'"),
        ("effective_cache_size", "'512MB'"),
    ]),
    ("Write ahead log", [
        ("wal_sync_method", "fsync"),
        ("wal_compression", "on"),
        ("min_wal_size", "'80MB'"),
        ("max_wal_size", "'1GB'"),
    ]),
    ("Logging", [
        ("log_destination", "'stderr'"),
        ("logging_collector", "on"),
        ("log_directory", f"'{LOG_DIR}'"),
        ("log_filename", "'{log_filename}'"),
        ("log_rotation_age", "1d"),
        ("log_line_prefix", "'%m [%p] '"),
        ("log_timezone", "'UTC'"),
    ]),
]

# Settings that must stay per-instance and cannot be overridden
INSTANCE_KEYS = {"port", "log_filename"}


def render_systemd_unit(instance: Instance, bin_dir: str, pg_version: str) -> str:
    return SYSTEMD_UNIT_TEMPLATE.format(
        version=pg_version,
        role=instance.role,
        data_dir=instance.data_dir,
        bin_dir=bin_dir,
        timeout=SERVICE_TIMEOUT,
    )


def postgresql_settings(
    instance: Instance,
    overrides: Optional[Dict[str, object]] = None
) -> Dict[str, str]:
    """
    Effective postgresql.conf settings for an instance.

    Args:
        instance: Instance being configured
        overrides: Tuning overrides from configuration (written verbatim)

    Returns:
        Ordered mapping of setting name to rendered value
    """
    settings: Dict[str, str] = {}
    for _, entries in BASE_SETTINGS:
        for key, value in entries:
            settings[key] = value.replace("{port}", str(instance.port)).replace(
                "{log_filename}", instance.log_filename
            )

    for key, value in (overrides or {}).items():
        if key in INSTANCE_KEYS:
            raise ValueError(f"Setting '{key}' is per-instance and cannot be overridden")
        if isinstance(value, bool):
            value = "on" if value else "off"
        settings[key] = str(value)
    return settings


def render_postgresql_conf(
    instance: Instance,
    overrides: Optional[Dict[str, object]] = None
) -> str:
    settings = postgresql_settings(instance, overrides)
    lines: List[str] = []
    written = set()
    for section, entries in BASE_SETTINGS:
        lines.append(f"# {section}")
        for key, _ in entries:
            lines.append(f"{key} = {settings[key]}")
            written.add(key)
        lines.append("")

    extra = [key for key in settings if key not in written]
    if extra:
        lines.append("# Overrides")
        lines.extend(f"{key} = {settings[key]}" for key in extra)
        lines.append("")

    return "\n".join(lines)


def validate_subnet(subnet: str) -> str:
    """Return the subnet in canonical CIDR form, or raise ValueError."""
    try:
        network = ipaddress.ip_network(subnet, strict=False)
    except ValueError as e:
        raise ValueError(f"Invalid subnet '{subnet}': {e}") from e
    if "/" not in subnet:
        raise ValueError(f"Subnet '{subnet}' must be in CIDR form (e.g. 192.168.90.0/24)")
    return str(network)


def render_pg_hba(subnet: str) -> str:
    subnet = validate_subnet(subnet)
    rows = [
        "# Local connections",
        f"{'local':<8}{'all':<16}{'postgres':<39} peer",
        f"{'local':<8}{'all':<16}{'all':<39} peer",
        "",
        "# IPv4 connections",
        f"{'host':<8}{'all':<16}{'all':<16}{'127.0.0.1/32':<22} trust",
        f"{'host':<8}{'all':<16}{'all':<16}{subnet:<22} trust",
        f"{'host':<8}{'replication':<16}{'all':<16}{subnet:<22} trust",
        "",
    ]
    return "\n".join(rows)
