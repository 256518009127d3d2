"""
Shared run loop of the migration jobs.

A job reads ordered batches from the document store, processes each one
and checkpoints its cursor after the batch is acknowledged. Runs are
sequential; a run that fails stops without advancing the cursor past the
failed batch, and a restart resumes from the last checkpoint.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from statmigrate.cursor_store import CursorStore
from statmigrate.exceptions import (
    BatchWriteError,
    CheckpointError,
    MigrationRunError,
    SourceStoreError,
)
from statmigrate.exporter import ScrollExporter
from statmigrate.models import (
    BatchOutcome,
    CursorState,
    EventType,
    ExportStatus,
    SourceEvent,
    parse_timestamp,
)
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_JOB_NAME,
    ATTR_ROWS_CREATED,
)
from statmigrate.retry import RetryError
from statmigrate.sources import SourceStore

logger = logging.getLogger(__name__)

ABORTING_ERRORS = (
    SourceStoreError,
    BatchWriteError,
    CheckpointError,
    RetryError,
    SQLAlchemyError,
)


@dataclass(frozen=True)
class JobProgress:
    """
    Progress of a job run, reported after every committed batch.

    Attributes:
        job_name: Job name (cursor key)
        batches: Batches committed in this run
        processed: Source events read in this run
        created: Rows inserted (or updated, for the flag sync) in this run
        failed: Source events attributed to the failure set
        events_total: Matching events reported by the document store
        watermark: Cursor watermark after the last committed batch
        events_per_second: Processing rate of this run
        is_complete: Whether the run has finished
    """

    job_name: str
    batches: int
    processed: int
    created: int
    failed: int
    events_total: int | None
    watermark: datetime | None
    events_per_second: float
    is_complete: bool

    @property
    def progress_percent(self) -> float:
        """Progress as a percentage (0-100), 0.0 when the total is unknown."""
        if not self.events_total:
            return 0.0
        return min(100.0, (self.processed / self.events_total) * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "batches": self.batches,
            "processed": self.processed,
            "created": self.created,
            "failed": self.failed,
            "events_total": self.events_total,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "events_per_second": self.events_per_second,
            "is_complete": self.is_complete,
        }


def advance_watermark(batch: Sequence[SourceEvent], previous: datetime | None) -> datetime | None:
    """
    Watermark after a batch: the creation time of its last parsable event.

    An unparsable or earlier value never moves the watermark backwards.
    """
    for event in reversed(batch):
        created_at = parse_timestamp(event.created_at)
        if created_at is not None:
            if previous is None or created_at > previous:
                return created_at
            return previous
    return previous


def batch_context(job_name: str, batch: Sequence[SourceEvent] | None) -> dict[str, Any]:
    """Diagnostics describing the batch in flight, for error logs."""
    context: dict[str, Any] = {"job_name": job_name}
    if batch:
        context.update(
            {
                "batch_size": len(batch),
                "first_id": batch[0].source_key,
                "last_id": batch[-1].source_key,
                "first_created_at": str(batch[0].created_at),
            }
        )
    return context


class BatchJob(ABC):
    """
    Base class of the scroll, process, checkpoint loop.

    Subclasses implement ``process_batch`` and may override the ``prepare``
    and ``finish`` hooks and the scan filters.
    """

    resume_scan = True
    """Whether the cursor bounds the scan (otherwise it is only recorded)."""

    def __init__(
        self,
        job_name: str,
        source: SourceStore,
        cursor_store: CursorStore,
        batch_size: int,
        keep_alive: str,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.job_name = job_name
        self._source = source
        self._cursor_store = cursor_store
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._exporter = ScrollExporter(
            source,
            batch_size=batch_size,
            keep_alive=keep_alive,
            tracer=self._tracer,
        )

    @property
    def event_type(self) -> EventType | None:
        return None

    @property
    def exclude_status(self) -> ExportStatus | None:
        return None

    @property
    def flagged_only(self) -> bool:
        return False

    async def prepare(self) -> None:
        """Hook run once before the first batch."""

    async def finish(self) -> None:
        """Hook run once after the last batch of a scan that ran to its end."""

    @abstractmethod
    async def process_batch(self, batch: list[SourceEvent]) -> BatchOutcome:
        """Process one batch; raising aborts the run before checkpointing."""

    async def run(
        self,
        progress_callback: Callable[[JobProgress], None] | None = None,
    ) -> AsyncIterator[JobProgress]:
        """
        Run the job.

        Yields:
            JobProgress after each committed batch, then a final one with
            ``is_complete`` set

        Raises:
            MigrationRunError: If a read, write or checkpoint fails
        """
        batches = processed = created = failed = 0
        watermark: datetime | None = None
        batch: list[SourceEvent] | None = None
        started = time.monotonic()

        def progress(is_complete: bool) -> JobProgress:
            elapsed = time.monotonic() - started
            return JobProgress(
                job_name=self.job_name,
                batches=batches,
                processed=processed,
                created=created,
                failed=failed,
                events_total=self._exporter.total,
                watermark=watermark,
                events_per_second=processed / elapsed if elapsed > 0 else 0.0,
                is_complete=is_complete,
            )

        with self._tracer.span("statmigrate.job.run", {ATTR_JOB_NAME: self.job_name}):
            try:
                state = await self._cursor_store.get(self.job_name)
                watermark = state.last_created_at if state else None
                await self.prepare()

                scan = self._exporter.batches(
                    self.job_name,
                    state if self.resume_scan else None,
                    event_type=self.event_type,
                    exclude_status=self.exclude_status,
                    flagged_only=self.flagged_only,
                )
                async with aclosing(scan) as pages:
                    async for batch in pages:
                        with self._tracer.span(
                            "statmigrate.job.batch",
                            {ATTR_JOB_NAME: self.job_name, ATTR_BATCH_SIZE: len(batch)},
                        ) as span:
                            outcome = await self.process_batch(batch)
                            next_watermark = advance_watermark(batch, watermark)
                            await self._cursor_store.save(
                                self.job_name, CursorState(last_created_at=next_watermark)
                            )
                            watermark = next_watermark
                            if span is not None and self._enable_tracing:
                                span.set_attribute(ATTR_ROWS_CREATED, outcome.created)

                        batches += 1
                        processed += len(batch)
                        created += outcome.created
                        failed += len(outcome.failed)
                        logger.info(
                            "%s: batch %d committed, %d created, %d failed, %d processed so far",
                            self.job_name,
                            batches,
                            outcome.created,
                            len(outcome.failed),
                            processed,
                            extra={
                                **batch_context(self.job_name, batch),
                                "watermark": watermark.isoformat() if watermark else None,
                            },
                        )
                        current = progress(is_complete=False)
                        if progress_callback:
                            progress_callback(current)
                        yield current
                        batch = None
                await self.finish()
            except ABORTING_ERRORS as e:
                context = batch_context(self.job_name, batch)
                logger.error(
                    "%s: aborted after %d batches: %s",
                    self.job_name,
                    batches,
                    e,
                    extra=context,
                )
                raise MigrationRunError(
                    self.job_name,
                    str(e),
                    last_checkpoint=watermark.isoformat() if watermark else None,
                    batches_completed=batches,
                    context=context,
                ) from e

        final = progress(is_complete=True)
        logger.info(
            "%s: completed, %d batches, %d processed, %d created, %d failed",
            self.job_name,
            batches,
            processed,
            created,
            failed,
            extra={"job_name": self.job_name, "progress": final.to_dict()},
        )
        if progress_callback:
            progress_callback(final)
        yield final

    async def execute(
        self,
        progress_callback: Callable[[JobProgress], None] | None = None,
    ) -> JobProgress:
        """Run the job to completion and return the final progress."""
        async with aclosing(self.run(progress_callback)) as run:
            async for progress in run:
                if progress.is_complete:
                    return progress
        raise MigrationRunError(self.job_name, "run ended without a final progress report")


__all__ = [
    "ABORTING_ERRORS",
    "BatchJob",
    "JobProgress",
    "advance_watermark",
    "batch_context",
]
