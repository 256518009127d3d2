"""
Exceptions for the statmigrate package.

Exception Hierarchy:
    StatMigrateError (base)
    +-- ConfigurationError
    +-- SourceStoreError
    +-- BatchWriteError
    +-- CheckpointError
    +-- MigrationRunError

Each exception class carries an ErrorRecoverability telling the caller how
the run should react: retry, attribute the failure and continue, or abort.
Dirty data and missing references never raise; transformers substitute
defaults and resolution misses are routed to the failure set.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The run can continue after attributing the failure.
            Examples: a partner export batch rejected by the target store.

        TRANSIENT: Temporary error that may resolve on retry.
            Examples: network timeout, temporary store unavailability.

        FATAL: The run must stop without advancing its cursor.
            Examples: checkpoint persistence failure, invalid configuration.
    """

    RECOVERABLE = "recoverable"
    """The run can continue after attributing the failure."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error requiring the run to stop."""


class StatMigrateError(Exception):
    """Base exception for the statmigrate package."""

    recoverability: ErrorRecoverability = ErrorRecoverability.FATAL


class ConfigurationError(StatMigrateError):
    """Raised at start-up when settings are missing or invalid."""

    def __init__(self, setting: str, message: str) -> None:
        self.setting = setting
        super().__init__(f"Invalid configuration for {setting}: {message}")


class SourceStoreError(StatMigrateError):
    """
    Raised when the document store cannot be read or updated.

    Attributes:
        operation: Store operation that failed (e.g. "scroll", "bulk")
        index: Index or collection the operation targeted
    """

    recoverability = ErrorRecoverability.TRANSIENT

    def __init__(self, operation: str, index: str, message: str) -> None:
        self.operation = operation
        self.index = index
        super().__init__(f"Source store {operation} on {index} failed: {message}")


class BatchWriteError(StatMigrateError):
    """
    Raised when a bulk insert is rejected by the relational store.

    The whole batch is considered unwritten. The general backfill lets this
    stop the run; partner exports attribute every id of the batch to the
    failure set and continue with the next batch.

    Attributes:
        table: Target table name
        source_ids: Source ids of every record in the rejected batch
    """

    recoverability = ErrorRecoverability.RECOVERABLE

    def __init__(self, table: str, source_ids: Sequence[str], message: str) -> None:
        self.table = table
        self.source_ids = list(source_ids)
        super().__init__(
            f"Bulk insert of {len(self.source_ids)} rows into {table} failed: {message}"
        )


class CheckpointError(StatMigrateError):
    """
    Raised when a cursor state cannot be read back or persisted.

    Always fatal: continuing without a durable checkpoint would make a later
    restart re-read an unknown amount of data.
    """

    def __init__(self, job_name: str, message: str) -> None:
        self.job_name = job_name
        super().__init__(f"Checkpoint for {job_name} failed: {message}")


class MigrationRunError(StatMigrateError):
    """
    Raised when a job run aborts.

    Attributes:
        job_name: Name of the aborted job
        last_checkpoint: ISO-8601 watermark of the last committed batch, if any
        batches_completed: Number of batches committed before the abort
        context: Diagnostics about the batch in flight
    """

    def __init__(
        self,
        job_name: str,
        message: str,
        last_checkpoint: str | None = None,
        batches_completed: int = 0,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.job_name = job_name
        self.last_checkpoint = last_checkpoint
        self.batches_completed = batches_completed
        self.context = context or {}
        super().__init__(
            f"Job {job_name} aborted after {batches_completed} batches "
            f"(last checkpoint: {last_checkpoint or 'none'}): {message}"
        )


__all__ = [
    "ErrorRecoverability",
    "StatMigrateError",
    "ConfigurationError",
    "SourceStoreError",
    "BatchWriteError",
    "CheckpointError",
    "MigrationRunError",
]
