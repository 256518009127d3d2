"""
Export status write-back.

After a partner export batch, every source document is marked SUCCESS or
FAILURE in the document store. Marked SUCCESS documents are excluded from
later scans; FAILURE documents stay eligible and are retried by the next
run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from statmigrate.models import (
    BatchOutcome,
    ExportFailure,
    ExportOutcome,
    ExportStatus,
    ExportSuccess,
)
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import ATTR_BATCH_SIZE, ATTR_EXPORT_STATUS
from statmigrate.sources import SourceStore

logger = logging.getLogger(__name__)


def outcomes_from_batch(batch: BatchOutcome) -> list[ExportOutcome]:
    """Expand a batch outcome into one export outcome per source record."""
    outcomes: list[ExportOutcome] = [ExportSuccess(source_id) for source_id in batch.succeeded]
    outcomes.extend(ExportFailure(record.source_id, record.reason) for record in batch.failed)
    return outcomes


class StatusAnnotator:
    """
    Writes export markers back to the source documents.

    Example:
        >>> annotator = StatusAnnotator(source)
        >>> await annotator.record([ExportSuccess("a"), ExportFailure("b", "partner missing")])
    """

    def __init__(
        self,
        source: SourceStore,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def _mark(self, source_ids: Sequence[str], status: ExportStatus) -> int:
        ids = [source_id for source_id in source_ids if source_id]
        if not ids:
            return 0
        with self._tracer.span(
            "statmigrate.annotator.mark",
            {ATTR_EXPORT_STATUS: status.value, ATTR_BATCH_SIZE: len(ids)},
        ):
            updated = await self._source.update_export_status(ids, status)
        logger.info(
            "Marked %d docs as %s in %s",
            updated,
            status.value,
            self._source.index,
            extra={"status": status.value, "count": updated, "index": self._source.index},
        )
        return updated

    async def mark_success(self, source_ids: Sequence[str]) -> int:
        return await self._mark(source_ids, ExportStatus.SUCCESS)

    async def mark_failure(self, source_ids: Sequence[str]) -> int:
        return await self._mark(source_ids, ExportStatus.FAILURE)

    async def record(self, outcomes: Iterable[ExportOutcome]) -> tuple[int, int]:
        """
        Write the marker matching each outcome.

        Returns:
            (documents marked SUCCESS, documents marked FAILURE)
        """
        succeeded: list[str] = []
        failed: list[str] = []
        for outcome in outcomes:
            if isinstance(outcome, ExportSuccess):
                succeeded.append(outcome.source_id)
            else:
                failed.append(outcome.source_id)
        return await self.mark_success(succeeded), await self.mark_failure(failed)


__all__ = ["StatusAnnotator", "outcomes_from_batch"]
