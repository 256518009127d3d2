"""
Ordered batch reader over the document store.

ScrollExporter turns a scroll into a lazy, finite async iterator of
batches sorted by ascending ``createdAt``. The scroll keep-alive is renewed
on every page and the scroll context is released when iteration stops,
whether it ran to the end, failed or was abandoned by the caller.

Callers that may stop early should wrap the iterator in
``contextlib.aclosing`` so the context is released promptly.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from statmigrate.config import DEFAULT_BACKFILL_BATCH_SIZE, DEFAULT_SCROLL_KEEP_ALIVE
from statmigrate.exceptions import SourceStoreError
from statmigrate.models import CursorState, EventType, ExportStatus, SourceEvent
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import ATTR_BATCH_SIZE, ATTR_JOB_NAME
from statmigrate.sources import ScrollQuery, SourceStore

logger = logging.getLogger(__name__)


class ScrollExporter:
    """
    Reads the event index in ascending creation order, one batch at a time.

    Example:
        >>> exporter = ScrollExporter(source, batch_size=1000)
        >>> async with aclosing(exporter.batches("stat_event_es_to_pg", state)) as batches:
        ...     async for batch in batches:
        ...         await write(batch)
    """

    def __init__(
        self,
        source: SourceStore,
        batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE,
        keep_alive: str = DEFAULT_SCROLL_KEEP_ALIVE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._source = source
        self._batch_size = batch_size
        self._keep_alive = keep_alive
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.total: int | None = None

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def batches(
        self,
        job_name: str,
        start_after: CursorState | None = None,
        *,
        event_type: EventType | None = None,
        exclude_status: ExportStatus | None = None,
        flagged_only: bool = False,
    ) -> AsyncIterator[list[SourceEvent]]:
        """
        Yield batches of events in ascending ``createdAt`` order.

        Without a prior state the scan is unconstrained. With one, it starts
        at ``createdAt >= last_created_at``: the bound is inclusive, so the
        boundary record is read again and absorbed by the idempotent writer.

        Args:
            job_name: Job name, for logs and spans
            start_after: Cursor state to resume from
            event_type: Only events of this type
            exclude_status: Skip events already carrying this export marker
            flagged_only: Only events flagged as bot or human

        Yields:
            Non-empty lists of events, at most ``batch_size`` long

        Raises:
            SourceStoreError: If a page cannot be read
        """
        query = ScrollQuery(
            event_type=event_type,
            created_from=start_after.last_created_at if start_after else None,
            exclude_status=exclude_status,
            flagged_only=flagged_only,
        )
        if query.created_from is not None:
            logger.info(
                "%s: resuming from %s",
                job_name,
                query.created_from.isoformat(),
                extra={"job_name": job_name, "created_from": query.created_from.isoformat()},
            )
        else:
            logger.info("%s: starting from the beginning", job_name, extra={"job_name": job_name})

        with self._tracer.span(
            "statmigrate.exporter.open",
            {ATTR_JOB_NAME: job_name, ATTR_BATCH_SIZE: self._batch_size},
        ):
            page = await self._source.open_scroll(query, self._batch_size, self._keep_alive)

        scroll_id = page.scroll_id
        self.total = page.total
        logger.info(
            "%s: %s matching events",
            job_name,
            page.total if page.total is not None else "unknown number of",
            extra={"job_name": job_name, "total": page.total},
        )

        try:
            while page.events:
                yield page.events
                if scroll_id is None:
                    break
                with self._tracer.span(
                    "statmigrate.exporter.next_page",
                    {ATTR_JOB_NAME: job_name, ATTR_BATCH_SIZE: self._batch_size},
                ):
                    page = await self._source.continue_scroll(scroll_id, self._keep_alive)
                scroll_id = page.scroll_id or scroll_id
        finally:
            if scroll_id is not None:
                await self._release(job_name, scroll_id)

    async def _release(self, job_name: str, scroll_id: str) -> None:
        try:
            await self._source.close_scroll(scroll_id)
        except SourceStoreError as e:
            # The context expires on its own once the keep-alive lapses
            logger.warning(
                "%s: could not release scroll context: %s",
                job_name,
                e,
                extra={"job_name": job_name},
            )


__all__ = ["ScrollExporter"]
