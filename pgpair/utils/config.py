"""
Configuration management for pgpair.
Supports YAML and JSON configuration files layered over built-in defaults,
with environment variable overrides (optionally loaded from a .env file).
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import find_dotenv, load_dotenv

DEFAULTS: Dict[str, Any] = {
    'postgres': {
        'version': '15',
        'user': 'postgres',
        'database': 'replication_test',
        'default_password': 'postgres',
        'settings': {},
    },
    'network': {
        'site1_ip1': '192.168.90.6',
        'site1_ip2': '192.168.90.7',
        'subnet': '192.168.90.0/24',
        'main_port': 5432,
        'second_port': 5433,
    },
    'ssh': {
        'user': 'root',
        'key_file': None,
        'port': 22,
    },
    'timeouts': {
        'start': 30,
        'restart': 30,
        'sync': 30,
        'poll_interval': 1,
    },
    'replication': {
        'password_env': 'PGPAIR_DB_PASSWORD',
        'passfile': None,
    },
}

# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    'PGPAIR_PG_VERSION': ('postgres.version', str),
    'PGPAIR_SSH_USER': ('ssh.user', str),
    'PGPAIR_SSH_KEY': ('ssh.key_file', str),
    'PGPAIR_SSH_PORT': ('ssh.port', int),
    'PGPAIR_PASSFILE': ('replication.passfile', str),
}


def _merge(base: Dict[str, Any], updates: Dict[str, Any]) -> None:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


class Config:
    """Configuration manager with file and environment variable support."""

    def __init__(
        self,
        config_file: Optional[Path] = None,
        env_file: Optional[Path] = None,
        environ: Optional[Dict[str, str]] = None
    ):
        """
        Initialize configuration.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            env_file: Path to a .env file to load before reading overrides
            environ: Environment mapping (defaults to os.environ)
        """
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULTS)
        if config_file:
            if not config_file.exists():
                raise FileNotFoundError(f"Config file not found: {config_file}")
            self.load_from_file(config_file)

        if environ is None:
            load_dotenv(env_file or find_dotenv(usecwd=True))
            environ = dict(os.environ)
        self._environ = environ
        self.apply_env_overrides(environ)

    def load_from_file(self, config_file: Path) -> None:
        """
        Load configuration from file and merge it over the defaults.

        Args:
            config_file: Path to configuration file
        """
        suffix = config_file.suffix.lower()
        with open(config_file, 'r') as f:
            if suffix in ['.yaml', '.yml']:
                loaded = yaml.safe_load(f) or {}
            elif suffix == '.json':
                loaded = json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {suffix}")

        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")
        _merge(self._config, loaded)

    def apply_env_overrides(self, environ: Dict[str, str]) -> None:
        for env_name, (key, cast) in ENV_OVERRIDES.items():
            if environ.get(env_name):
                self.set(key, cast(environ[env_name]))

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation, e.g., 'network.subnet')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self._config
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split('.')
        config = self._config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def db_password(self) -> Optional[str]:
        """Resolve the database password from the configured environment variable."""
        env_name = self.get('replication.password_env')
        if not env_name:
            return None
        return self._environ.get(env_name) or None

    def to_dict(self) -> Dict[str, Any]:
        """Return configuration as dictionary."""
        return copy.deepcopy(self._config)
