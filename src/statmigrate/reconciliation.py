"""
ReconciliationReporter - compares the document store with the relational store.

Read-only verification run independently of the jobs:

- Count comparison: events per (day, type) in both stores over a window,
  over the union of buckets seen on either side. A bucket present on one
  side only is reported with a count of 0 on the other.
- Spot check: a random sample of source ids, each looked up by exact id in
  the relational store.

The relational side is either the general ``stat_event`` table (grouped by
its ``type`` column, looked up by ``id``) or the analytics tables (one
table per type, looked up by ``old_id``).

Usage:
    >>> reporter = ReconciliationReporter(source, engine)
    >>> start, end = await default_window(cursor_store, "stat_event_es_to_pg")
    >>> report = await reporter.compare_counts(start, end)
    >>> if not report.is_consistent:
    ...     for bucket in report.discrepancies:
    ...         print(bucket)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import ColumnElement, Table, func, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from statmigrate.cursor_store import CursorStore
from statmigrate.models import EventType
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import (
    ATTR_EVENT_TYPE,
    ATTR_SAMPLE_SIZE,
    ATTR_WINDOW_END,
    ATTR_WINDOW_START,
)
from statmigrate.relational import dialect_name, execute_with_connection
from statmigrate.relational.schema import ANALYTICS_TABLES, stat_event
from statmigrate.sources import BucketKey, SourceStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
DEFAULT_SAMPLE_SIZE = 5


class ReconciliationTarget(Enum):
    """Which relational tables a reconciliation reads."""

    STAT_EVENT = "stat_event"
    """The general table, one row per event of any type."""

    ANALYTICS = "analytics"
    """The per-type analytics tables (impression, click, apply, account)."""


@dataclass(frozen=True)
class BucketCount:
    """
    Event counts of one (day, type) bucket.

    Attributes:
        day: Day as YYYY-MM-DD (UTC)
        event_type: Event type
        source_count: Events in the document store
        target_count: Rows in the relational store
    """

    day: str
    event_type: str
    source_count: int
    target_count: int

    @property
    def difference(self) -> int:
        """Source minus target count."""
        return self.source_count - self.target_count

    @property
    def is_consistent(self) -> bool:
        return self.source_count == self.target_count

    def __str__(self) -> str:
        return f"{self.day} {self.event_type} ES:{self.source_count} PG:{self.target_count}"


@dataclass(frozen=True)
class CountReport:
    """
    Result of a per-day, per-type count comparison.

    Attributes:
        start: Inclusive window start
        end: Exclusive window end
        buckets: One entry per bucket seen on either side, sorted by day then type
        duration_seconds: Time taken
        verified_at: When the comparison ran
    """

    start: datetime
    end: datetime
    buckets: list[BucketCount]
    duration_seconds: float
    verified_at: datetime

    @property
    def is_consistent(self) -> bool:
        return all(bucket.is_consistent for bucket in self.buckets)

    @property
    def discrepancies(self) -> list[BucketCount]:
        return [bucket for bucket in self.buckets if not bucket.is_consistent]

    @property
    def source_total(self) -> int:
        return sum(bucket.source_count for bucket in self.buckets)

    @property
    def target_total(self) -> int:
        return sum(bucket.target_count for bucket in self.buckets)

    def bucket(self, day: str, event_type: str) -> BucketCount | None:
        for entry in self.buckets:
            if entry.day == day and entry.event_type == event_type:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "is_consistent": self.is_consistent,
            "source_total": self.source_total,
            "target_total": self.target_total,
            "buckets": [
                {
                    "day": b.day,
                    "type": b.event_type,
                    "source": b.source_count,
                    "target": b.target_count,
                }
                for b in self.buckets
            ],
            "duration_seconds": self.duration_seconds,
            "verified_at": self.verified_at.isoformat(),
        }


@dataclass(frozen=True)
class SpotCheckResult:
    """
    Outcome of looking up one sampled id.

    Attributes:
        source_id: Sampled document id
        event_type: Type of the source document, if it could be read
        found: Whether the relational store holds the record
    """

    source_id: str
    event_type: str | None
    found: bool

    def __str__(self) -> str:
        return f"{self.source_id} {'found' if self.found else 'missing'}"


@dataclass(frozen=True)
class SpotCheckReport:
    """Result of a sampled id spot check."""

    results: list[SpotCheckResult]
    duration_seconds: float
    verified_at: datetime

    @property
    def found_count(self) -> int:
        return sum(1 for result in self.results if result.found)

    @property
    def missing_ids(self) -> list[str]:
        return [result.source_id for result in self.results if not result.found]

    @property
    def is_consistent(self) -> bool:
        return not self.missing_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": len(self.results),
            "found": self.found_count,
            "missing_ids": self.missing_ids,
            "duration_seconds": self.duration_seconds,
            "verified_at": self.verified_at.isoformat(),
        }


def _day(value: Any) -> str:
    if isinstance(value, datetime | date):
        return value.isoformat()[:10]
    return str(value)[:10]


async def default_window(
    cursor_store: CursorStore,
    job_name: str,
    days: int = DEFAULT_WINDOW_DAYS,
    clock: Callable[[], datetime] | None = None,
) -> tuple[datetime, datetime]:
    """
    Window ending at a job's watermark (or now) and starting ``days`` earlier.

    Returns:
        (inclusive start, exclusive end)
    """
    state = await cursor_store.get(job_name)
    if state is not None and state.last_created_at is not None:
        end = state.last_created_at
    else:
        end = (clock or (lambda: datetime.now(UTC)))()
    return end - timedelta(days=days), end


class ReconciliationReporter:
    """
    Compares event counts and sampled ids between the two stores.

    Args:
        source: Document store
        conn: Relational store engine or connection
        target: Which relational tables to read
        event_type: Restrict the comparison to one event type
    """

    def __init__(
        self,
        source: SourceStore,
        conn: AsyncConnection | AsyncEngine,
        *,
        target: ReconciliationTarget = ReconciliationTarget.STAT_EVENT,
        event_type: EventType | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self.conn = conn
        self._target = target
        self._event_type = event_type
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    def _day_expression(self, table: Table) -> ColumnElement[Any]:
        column = table.c.created_at
        if dialect_name(self.conn) == "postgresql":
            # Bucket by UTC day like the document store histogram
            return func.date(func.timezone("UTC", column))
        return func.date(column)

    def _analytics_types(self) -> list[EventType]:
        if self._event_type is not None:
            return [self._event_type]
        return list(ANALYTICS_TABLES)

    async def _target_counts(self, start: datetime, end: datetime) -> dict[BucketKey, int]:
        counts: dict[BucketKey, int] = {}
        async with execute_with_connection(self.conn, transactional=False) as conn:
            if self._target is ReconciliationTarget.STAT_EVENT:
                day = self._day_expression(stat_event).label("day")
                query = (
                    select(day, stat_event.c.type, func.count().label("count"))
                    .where(stat_event.c.created_at >= start)
                    .where(stat_event.c.created_at < end)
                    .group_by(day, stat_event.c.type)
                )
                if self._event_type is not None:
                    query = query.where(stat_event.c.type == self._event_type.value)
                result = await conn.execute(query)
                for row_day, row_type, count in result.fetchall():
                    counts[(_day(row_day), str(row_type))] = int(count)
                return counts

            for event_type in self._analytics_types():
                table = ANALYTICS_TABLES[event_type]
                day = self._day_expression(table).label("day")
                query = (
                    select(day, func.count().label("count"))
                    .where(table.c.created_at >= start)
                    .where(table.c.created_at < end)
                    .group_by(day)
                )
                result = await conn.execute(query)
                for row_day, count in result.fetchall():
                    counts[(_day(row_day), event_type.value)] = int(count)
        return counts

    async def compare_counts(self, start: datetime, end: datetime) -> CountReport:
        """
        Compare per-day, per-type counts over ``start <= createdAt < end``.

        Every bucket is logged as ``"{day} {type} ES:{n} PG:{m}"``.

        Returns:
            CountReport over the union of buckets of both stores
        """
        started = time.perf_counter()
        with self._tracer.span(
            "statmigrate.reconciliation.compare_counts",
            {
                ATTR_WINDOW_START: start.isoformat(),
                ATTR_WINDOW_END: end.isoformat(),
                ATTR_EVENT_TYPE: self._event_type.value if self._event_type else "all",
            },
        ):
            source_counts = await self._source.count_by_day_and_type(start, end, self._event_type)
            target_counts = await self._target_counts(start, end)

        buckets = [
            BucketCount(
                day=day,
                event_type=event_type,
                source_count=source_counts.get((day, event_type), 0),
                target_count=target_counts.get((day, event_type), 0),
            )
            for day, event_type in sorted(set(source_counts) | set(target_counts))
        ]
        for bucket in buckets:
            log = logger.info if bucket.is_consistent else logger.warning
            log(
                "%s",
                bucket,
                extra={
                    "day": bucket.day,
                    "event_type": bucket.event_type,
                    "source_count": bucket.source_count,
                    "target_count": bucket.target_count,
                },
            )

        report = CountReport(
            start=start,
            end=end,
            buckets=buckets,
            duration_seconds=time.perf_counter() - started,
            verified_at=datetime.now(UTC),
        )
        logger.info(
            "Compared %d buckets from %s to %s: %d discrepancies",
            len(buckets),
            start.isoformat(),
            end.isoformat(),
            len(report.discrepancies),
            extra={"source_total": report.source_total, "target_total": report.target_total},
        )
        return report

    async def _exists(self, source_id: str, event_type: str | None) -> bool:
        if self._target is ReconciliationTarget.STAT_EVENT:
            query = select(stat_event.c.id).where(stat_event.c.id == source_id).limit(1)
        else:
            try:
                table = ANALYTICS_TABLES[EventType(event_type)]
            except ValueError:
                return False
            query = select(table.c.old_id).where(table.c.old_id == source_id).limit(1)

        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            return result.first() is not None

    async def check_ids(self, source_ids: Sequence[str]) -> SpotCheckReport:
        """
        Look up the given source ids in the relational store.

        Each id is read from the document store first to learn its type,
        which selects the analytics table to look in.
        """
        started = time.perf_counter()
        results: list[SpotCheckResult] = []
        for source_id in source_ids:
            doc = await self._source.get(source_id)
            event_type = None
            if doc is not None and isinstance(doc.type, str):
                event_type = doc.type
            elif self._event_type is not None:
                event_type = self._event_type.value
            found = await self._exists(source_id, event_type)
            result = SpotCheckResult(source_id=source_id, event_type=event_type, found=found)
            (logger.info if found else logger.warning)(
                "%s",
                result,
                extra={"source_id": source_id, "event_type": event_type, "found": found},
            )
            results.append(result)

        return SpotCheckReport(
            results=results,
            duration_seconds=time.perf_counter() - started,
            verified_at=datetime.now(UTC),
        )

    async def spot_check(
        self,
        start: datetime,
        end: datetime,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> SpotCheckReport:
        """
        Sample source ids created in the window and look each one up.

        Returns:
            SpotCheckReport with one result per sampled id
        """
        with self._tracer.span(
            "statmigrate.reconciliation.spot_check",
            {
                ATTR_WINDOW_START: start.isoformat(),
                ATTR_WINDOW_END: end.isoformat(),
                ATTR_SAMPLE_SIZE: sample_size,
            },
        ):
            source_ids = await self._source.sample_ids(start, end, sample_size, self._event_type)
            return await self.check_ids(source_ids)


__all__ = [
    "DEFAULT_SAMPLE_SIZE",
    "DEFAULT_WINDOW_DAYS",
    "ReconciliationTarget",
    "BucketCount",
    "CountReport",
    "SpotCheckResult",
    "SpotCheckReport",
    "ReconciliationReporter",
    "default_window",
]
