"""
Bot and human flag sync for exported clicks.

Clicks are classified after the fact: ``isBot`` and ``isHuman`` can be set
on an event long after it was exported to the ``click`` table. This job
scans every click flagged in the event index, writes both flags onto the
matching row (by ``old_id``) and stamps it with the start of the run. Once
the whole scan has gone through, flagged rows that were not stamped by this
run lost their flag in the index and are reset.

The scan is not bounded by the cursor: a partial run leaves the flags it
already wrote and skips the reset, and the next run starts over.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from statmigrate.config import DEFAULT_EXPORT_BATCH_SIZE, DEFAULT_SCROLL_KEEP_ALIVE
from statmigrate.cursor_store import CursorStore
from statmigrate.jobs.base import BatchJob
from statmigrate.models import BatchOutcome, EventType, SourceEvent
from statmigrate.observability import Tracer
from statmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
)
from statmigrate.relational import dialect_name, execute_with_connection
from statmigrate.relational.schema import click
from statmigrate.sources import SourceStore
from statmigrate.transformer import safe_bool

logger = logging.getLogger(__name__)

BOT_FLAGS_JOB = "click_bot_flags_es_to_pg"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class BotFlagSync(BatchJob):
    """
    Copies the bot and human flags of clicks onto the ``click`` table.

    Progress reports count updated rows as ``created``. Flagged events
    without an exported row are skipped; they get their flags when the
    click export reaches them.

    Example:
        >>> job = BotFlagSync(source, cursor_store, analytics_engine)
        >>> final = await job.execute()
        >>> job.reset_count
        12
    """

    resume_scan = False

    def __init__(
        self,
        source: SourceStore,
        cursor_store: CursorStore,
        conn: AsyncConnection | AsyncEngine,
        *,
        batch_size: int = DEFAULT_EXPORT_BATCH_SIZE,
        keep_alive: str = DEFAULT_SCROLL_KEEP_ALIVE,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(
            BOT_FLAGS_JOB,
            source,
            cursor_store,
            batch_size=batch_size,
            keep_alive=keep_alive,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        self.conn = conn
        self._dialect = dialect_name(conn)
        self._clock = clock or _utc_now
        self._started: datetime | None = None
        self.reset_count = 0

    @property
    def event_type(self) -> EventType:
        return EventType.CLICK

    @property
    def flagged_only(self) -> bool:
        return True

    @property
    def started(self) -> datetime:
        """Start of the current run, the stamp written on synced rows."""
        if self._started is None:
            self._started = self._clock()
        return self._started

    def _span_attributes(self, operation: str, size: int) -> dict[str, object]:
        return {
            ATTR_DB_SYSTEM: self._dialect,
            ATTR_DB_NAME: click.name,
            ATTR_DB_OPERATION: operation,
            ATTR_BATCH_SIZE: size,
        }

    async def prepare(self) -> None:
        self._started = self._clock()
        self.reset_count = 0
        logger.info(
            "%s: syncing flags, rows not refreshed since %s will be reset",
            self.job_name,
            self.started.isoformat(),
            extra={"job_name": self.job_name, "started": self.started.isoformat()},
        )

    async def process_batch(self, batch: list[SourceEvent]) -> BatchOutcome:
        groups: dict[tuple[bool, bool], list[str]] = {}
        for doc in batch:
            if not doc.source_key:
                continue
            flags = (safe_bool(doc.is_bot), safe_bool(doc.is_human))
            groups.setdefault(flags, []).append(doc.source_key)

        updated = 0
        with self._tracer.span(
            "statmigrate.bot_flags.update", self._span_attributes("UPDATE", len(batch))
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                for (is_bot, is_human), ids in groups.items():
                    result = await conn.execute(
                        update(click)
                        .where(click.c.old_id.in_(ids))
                        .values(is_bot=is_bot, is_human=is_human, updated_at=self.started)
                    )
                    updated += result.rowcount

        logger.debug(
            "%s: %d of %d flagged clicks found in the click table",
            self.job_name,
            updated,
            len(batch),
            extra={"job_name": self.job_name, "rows_updated": updated},
        )
        return BatchOutcome(created=updated)

    async def finish(self) -> None:
        stale = or_(click.c.updated_at.is_(None), click.c.updated_at < self.started)
        flagged = or_(click.c.is_bot.is_(True), click.c.is_human.is_(True))
        with self._tracer.span(
            "statmigrate.bot_flags.reset", self._span_attributes("UPDATE", 0)
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    update(click)
                    .where(flagged, stale)
                    .values(is_bot=False, is_human=False, updated_at=self.started)
                )
        self.reset_count = result.rowcount
        logger.info(
            "%s: reset %d clicks no longer flagged",
            self.job_name,
            self.reset_count,
            extra={"job_name": self.job_name, "rows_reset": self.reset_count},
        )


__all__ = ["BOT_FLAGS_JOB", "BotFlagSync"]
