"""
statmigrate - Activity event migration and consistency engine.

Moves activity events (print, click, apply, account) from the Elasticsearch
event index to PostgreSQL while the application dual-writes, and verifies
that both stores agree.

This package provides:
- Resumable, idempotent backfill of every event into ``stat_event``
- Per-type exports into the analytics tables with partner resolution and
  export status write-back
- Per-day, per-type count reconciliation and sampled id spot checks
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("statmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from statmigrate.annotator import StatusAnnotator
from statmigrate.config import CursorBackend, Settings
from statmigrate.cursor_store import (
    CursorStore,
    FileCursorStore,
    InMemoryCursorStore,
    SQLCursorStore,
    create_cursor_store,
)
from statmigrate.exceptions import (
    BatchWriteError,
    CheckpointError,
    ConfigurationError,
    ErrorRecoverability,
    MigrationRunError,
    SourceStoreError,
    StatMigrateError,
)
from statmigrate.exporter import ScrollExporter
from statmigrate.jobs import BotFlagSync, JobProgress, PartnerEventExport, StatEventBackfill
from statmigrate.models import (
    BatchOutcome,
    CursorState,
    EventSource,
    EventStatus,
    EventType,
    ExportFailure,
    ExportOutcome,
    ExportStatus,
    ExportSuccess,
    SourceEvent,
    StatEventRow,
    Unresolvable,
)
from statmigrate.reconciliation import (
    CountReport,
    ReconciliationReporter,
    ReconciliationTarget,
    SpotCheckReport,
    default_window,
)
from statmigrate.references import ReferenceResolver
from statmigrate.retry import RetryConfig, RetryError
from statmigrate.sources import ElasticsearchSourceStore, InMemorySourceStore, SourceStore
from statmigrate.transformer import DocumentTransformer, PartnerEventTransformer
from statmigrate.writer import IdempotentBatchWriter

__all__ = [
    "__version__",
    # Configuration
    "CursorBackend",
    "Settings",
    # Exceptions
    "BatchWriteError",
    "CheckpointError",
    "ConfigurationError",
    "ErrorRecoverability",
    "MigrationRunError",
    "RetryError",
    "SourceStoreError",
    "StatMigrateError",
    # Models
    "BatchOutcome",
    "CursorState",
    "EventSource",
    "EventStatus",
    "EventType",
    "ExportFailure",
    "ExportOutcome",
    "ExportStatus",
    "ExportSuccess",
    "SourceEvent",
    "StatEventRow",
    "Unresolvable",
    # Components
    "CursorStore",
    "SQLCursorStore",
    "FileCursorStore",
    "InMemoryCursorStore",
    "create_cursor_store",
    "ReferenceResolver",
    "RetryConfig",
    "DocumentTransformer",
    "PartnerEventTransformer",
    "ScrollExporter",
    "IdempotentBatchWriter",
    "StatusAnnotator",
    "ReconciliationReporter",
    "ReconciliationTarget",
    "CountReport",
    "SpotCheckReport",
    "default_window",
    # Sources
    "SourceStore",
    "ElasticsearchSourceStore",
    "InMemorySourceStore",
    # Jobs
    "JobProgress",
    "StatEventBackfill",
    "PartnerEventExport",
    "BotFlagSync",
]
