"""Provision and smoke-test a bidirectional PostgreSQL logical replication pair."""

__version__ = "0.1.0"
