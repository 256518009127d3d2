"""
General backfill of every activity event into ``stat_event``.

Resumes from its cursor with an inclusive bound, so the last record of the
previous run is read again and skipped by the conflict-skipping insert.
Any write error stops the run before the cursor moves.
"""

from __future__ import annotations

from statmigrate.config import DEFAULT_BACKFILL_BATCH_SIZE, DEFAULT_SCROLL_KEEP_ALIVE
from statmigrate.cursor_store import CursorStore
from statmigrate.jobs.base import BatchJob
from statmigrate.models import BatchOutcome, SourceEvent
from statmigrate.observability import Tracer
from statmigrate.sources import SourceStore
from statmigrate.transformer import DocumentTransformer
from statmigrate.writer import IdempotentBatchWriter

STAT_EVENT_JOB = "stat_event_es_to_pg"


class StatEventBackfill(BatchJob):
    """
    Copies the whole event index into the ``stat_event`` table.

    Example:
        >>> job = StatEventBackfill(source, cursor_store, writer)
        >>> async for progress in job.run():
        ...     print(f"{progress.processed} events, {progress.created} created")
    """

    def __init__(
        self,
        source: SourceStore,
        cursor_store: CursorStore,
        writer: IdempotentBatchWriter,
        transformer: DocumentTransformer | None = None,
        *,
        job_name: str = STAT_EVENT_JOB,
        batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE,
        keep_alive: str = DEFAULT_SCROLL_KEEP_ALIVE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(
            job_name,
            source,
            cursor_store,
            batch_size=batch_size,
            keep_alive=keep_alive,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        self._writer = writer
        self._transformer = transformer or DocumentTransformer()

    async def process_batch(self, batch: list[SourceEvent]) -> BatchOutcome:
        rows = self._transformer.transform_many(batch)
        return await self._writer.write(rows)


__all__ = ["STAT_EVENT_JOB", "StatEventBackfill"]
