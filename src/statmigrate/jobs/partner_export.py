"""
Per-type export of activity events into the analytics tables.

One job per event type:

    print   -> impression
    click   -> click
    apply   -> apply
    account -> account

Each event needs both its sending and receiving publisher to resolve to a
partner row; events that do not resolve are not written and are marked
FAILURE. A batch rejected by the relational store is attributed to the
failure set as a whole and the run continues. The scan excludes events
already marked SUCCESS, which is what makes reruns resume, so the cursor
is recorded (for reconciliation windows) but does not bound the scan.
"""

from __future__ import annotations

import logging

from statmigrate.annotator import StatusAnnotator, outcomes_from_batch
from statmigrate.config import DEFAULT_EXPORT_BATCH_SIZE, DEFAULT_SCROLL_KEEP_ALIVE
from statmigrate.cursor_store import CursorStore
from statmigrate.exceptions import BatchWriteError
from statmigrate.jobs.base import BatchJob
from statmigrate.models import (
    BatchOutcome,
    EventType,
    ExportStatus,
    FailedRecord,
    PartnerRow,
    SourceEvent,
    Unresolvable,
)
from statmigrate.observability import Tracer
from statmigrate.references import ReferenceResolver
from statmigrate.sources import SourceStore
from statmigrate.transformer import PartnerEventTransformer
from statmigrate.writer import IdempotentBatchWriter

logger = logging.getLogger(__name__)


def export_job_name(event_type: EventType) -> str:
    """Cursor key of the export job for an event type."""
    return f"{event_type.value}_es_to_pg"


class PartnerEventExport(BatchJob):
    """
    Exports the events of one type into its analytics table.

    Example:
        >>> job = PartnerEventExport(
        ...     source, cursor_store, resolver, writer, annotator, EventType.PRINT
        ... )
        >>> final = await job.execute()
        >>> final.failed
        3
    """

    resume_scan = False

    def __init__(
        self,
        source: SourceStore,
        cursor_store: CursorStore,
        resolver: ReferenceResolver,
        writer: IdempotentBatchWriter,
        annotator: StatusAnnotator,
        event_type: EventType,
        *,
        batch_size: int = DEFAULT_EXPORT_BATCH_SIZE,
        keep_alive: str = DEFAULT_SCROLL_KEEP_ALIVE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(
            export_job_name(event_type),
            source,
            cursor_store,
            batch_size=batch_size,
            keep_alive=keep_alive,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        self._event_type = event_type
        self._resolver = resolver
        self._writer = writer
        self._annotator = annotator
        self._transformer = PartnerEventTransformer(resolver, event_type)

    @property
    def event_type(self) -> EventType:
        return self._event_type

    @property
    def exclude_status(self) -> ExportStatus:
        return ExportStatus.SUCCESS

    async def prepare(self) -> None:
        await self._resolver.preload()

    async def process_batch(self, batch: list[SourceEvent]) -> BatchOutcome:
        await self._transformer.prepare(batch)

        rows: list[PartnerRow] = []
        unresolved: list[FailedRecord] = []
        for doc in batch:
            result = await self._transformer.transform(doc)
            if isinstance(result, Unresolvable):
                unresolved.append(FailedRecord(result.source_id, result.reason))
            else:
                rows.append(result)

        try:
            written = await self._writer.write(rows)
        except BatchWriteError as e:
            logger.error(
                "%s: batch of %d rows rejected, marking it as failed",
                self.job_name,
                len(e.source_ids),
                extra={"job_name": self.job_name, "table": e.table, "error": str(e)},
            )
            written = BatchOutcome(
                failed=tuple(FailedRecord(source_id, str(e)) for source_id in e.source_ids)
            )

        outcome = written.merge(BatchOutcome(failed=tuple(unresolved)))
        await self._annotator.record(outcomes_from_batch(outcome))
        return outcome


__all__ = ["PartnerEventExport", "export_job_name"]
