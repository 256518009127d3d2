"""Relational store access: table definitions and connection helpers."""

from statmigrate.relational._connection import dialect_name, execute_with_connection
from statmigrate.relational.schema import ANALYTICS_TABLES, metadata, stat_event

__all__ = [
    "ANALYTICS_TABLES",
    "dialect_name",
    "execute_with_connection",
    "metadata",
    "stat_event",
]
