"""
Runtime configuration for statmigrate.

Settings come from environment variables, optionally loaded from a dotenv
file by the command line entry point, and may then be overridden by
command line flags.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from statmigrate.exceptions import ConfigurationError

DEFAULT_BACKFILL_BATCH_SIZE = 1000
DEFAULT_EXPORT_BATCH_SIZE = 5000
DEFAULT_SCROLL_KEEP_ALIVE = "5m"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class CursorBackend(str, Enum):
    """Where job cursors are persisted."""

    TABLE = "table"
    FILE = "file"


def async_database_url(url: str) -> str:
    """
    Rewrite a plain PostgreSQL URL to use the asyncpg driver.

    URLs that already name a driver (or another dialect) are returned as is.

    Example:
        >>> async_database_url("postgresql://localhost/core")
        'postgresql+asyncpg://localhost/core'
    """
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix) :]
    return url


@dataclass(frozen=True)
class Settings:
    """
    Configuration of a statmigrate process.

    Attributes:
        es_endpoint: Elasticsearch URL
        stats_index: Index holding the activity events
        database_url_core: Relational store for stat_event and cursors
        database_url_analytics: Relational store for the analytics tables
        cursor_backend: Cursor persistence backend
        cursor_file: Path of the JSON cursor file (file backend)
        backfill_batch_size: Batch size of the general backfill
        export_batch_size: Batch size of partner exports
        scroll_keep_alive: Scroll context keep-alive, renewed on every page
        enable_tracing: Whether OpenTelemetry spans are emitted
        log_level: Root logging level
    """

    es_endpoint: str = "http://localhost:9200"
    stats_index: str = "stats"
    database_url_core: str = "postgresql+asyncpg://localhost:5432/core"
    database_url_analytics: str | None = None
    cursor_backend: CursorBackend = CursorBackend.TABLE
    cursor_file: Path = Path("backfill-state.json")
    backfill_batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE
    export_batch_size: int = DEFAULT_EXPORT_BATCH_SIZE
    scroll_keep_alive: str = DEFAULT_SCROLL_KEEP_ALIVE
    enable_tracing: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.es_endpoint:
            raise ConfigurationError("ES_ENDPOINT", "must not be empty")
        if not self.stats_index:
            raise ConfigurationError("STATS_INDEX", "must not be empty")
        if not self.database_url_core:
            raise ConfigurationError("DATABASE_URL_CORE", "must not be empty")
        if self.backfill_batch_size < 1:
            raise ConfigurationError(
                "BACKFILL_BATCH_SIZE", f"must be >= 1, got {self.backfill_batch_size}"
            )
        if self.export_batch_size < 1:
            raise ConfigurationError(
                "EXPORT_BATCH_SIZE", f"must be >= 1, got {self.export_batch_size}"
            )
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError("LOG_LEVEL", f"unknown level {self.log_level!r}")

    @property
    def analytics_url(self) -> str:
        """Analytics store URL, falling back to the core store."""
        return self.database_url_analytics or self.database_url_core

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        env_file: str | Path | None = None,
    ) -> Settings:
        """
        Build settings from environment variables.

        Args:
            environ: Variables to read (defaults to ``os.environ``)
            env_file: Optional dotenv file loaded into ``os.environ`` first;
                variables already set take precedence

        Returns:
            Validated Settings

        Raises:
            ConfigurationError: If a value is missing or malformed
        """
        if env_file is not None:
            if not Path(env_file).is_file():
                raise ConfigurationError("--env", f"file {env_file} does not exist")
            load_dotenv(env_file, override=False)
        env = os.environ if environ is None else environ

        analytics = env.get("DATABASE_URL_ANALYTICS")
        return cls(
            es_endpoint=env.get("ES_ENDPOINT", cls.es_endpoint),
            stats_index=env.get("STATS_INDEX", cls.stats_index),
            database_url_core=async_database_url(
                env.get("DATABASE_URL_CORE", "postgresql://localhost:5432/core")
            ),
            database_url_analytics=async_database_url(analytics) if analytics else None,
            cursor_backend=_parse_backend(env.get("CURSOR_BACKEND", CursorBackend.TABLE.value)),
            cursor_file=Path(env.get("CURSOR_FILE", str(cls.cursor_file))),
            backfill_batch_size=_parse_int(
                env, "BACKFILL_BATCH_SIZE", DEFAULT_BACKFILL_BATCH_SIZE
            ),
            export_batch_size=_parse_int(env, "EXPORT_BATCH_SIZE", DEFAULT_EXPORT_BATCH_SIZE),
            scroll_keep_alive=env.get("SCROLL_KEEP_ALIVE", DEFAULT_SCROLL_KEEP_ALIVE),
            enable_tracing=env.get("ENABLE_TRACING", "false").strip().lower() in _TRUE_VALUES,
            log_level=env.get("LOG_LEVEL", "INFO").strip().upper(),
        )

    def with_overrides(self, **overrides: Any) -> Settings:
        """
        Return a copy with the given non-None values replaced.

        Database URLs are rewritten for the async driver.
        """
        values = {key: value for key, value in overrides.items() if value is not None}
        for key in ("database_url_core", "database_url_analytics"):
            if key in values:
                values[key] = async_database_url(values[key])
        if "cursor_backend" in values:
            values["cursor_backend"] = _parse_backend(values["cursor_backend"])
        if "cursor_file" in values:
            values["cursor_file"] = Path(values["cursor_file"])
        return replace(self, **values)


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(name, f"expected an integer, got {raw!r}") from None


def _parse_backend(value: str | CursorBackend) -> CursorBackend:
    try:
        return CursorBackend(value.lower() if isinstance(value, str) else value)
    except ValueError:
        allowed = ", ".join(b.value for b in CursorBackend)
        raise ConfigurationError(
            "CURSOR_BACKEND", f"expected one of {allowed}, got {value!r}"
        ) from None


__all__ = [
    "CursorBackend",
    "Settings",
    "async_database_url",
    "DEFAULT_BACKFILL_BATCH_SIZE",
    "DEFAULT_EXPORT_BATCH_SIZE",
    "DEFAULT_SCROLL_KEEP_ALIVE",
]
