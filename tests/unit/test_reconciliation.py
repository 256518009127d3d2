"""
Tests for the reconciliation reporter.

Tests for:
- Per-day, per-type count comparison over the union of buckets
- Symmetric handling of buckets seen on one side only
- Analytics table counts
- Sampled and explicit id spot checks
- Default window computation from a job cursor
"""

import logging
from datetime import timedelta

import pytest

from statmigrate.models import CursorState, EventType, SourceEvent
from statmigrate.reconciliation import (
    BucketCount,
    ReconciliationReporter,
    ReconciliationTarget,
    default_window,
)
from statmigrate.relational.schema import click, impression, stat_event
from statmigrate.transformer import DocumentTransformer
from statmigrate.writer import IdempotentBatchWriter
from tests.fixtures import BASE_TIME, at, make_document

START = BASE_TIME - timedelta(days=1)
END = BASE_TIME + timedelta(days=2)


async def copy_to_stat_event(engine, source_store, ids) -> None:
    events = [await source_store.get(source_id) for source_id in ids]
    writer = IdempotentBatchWriter(engine, stat_event, "id", enable_tracing=False)
    await writer.write(DocumentTransformer().transform_many(events))


def analytics_row(old_id: str, created_at) -> dict:
    return {
        "id": f"pk-{old_id}",
        "old_id": old_id,
        "created_at": created_at,
        "source": "api",
        "to_partner_id": "partner-to",
        "from_partner_id": "partner-from",
    }


@pytest.fixture
def three_events(source_store):
    """Two clicks on the first day and one print on the next."""
    source_store.add("c1", make_document(type="click", createdAt=at(0)))
    source_store.add("c2", make_document(type="click", createdAt=at(30)))
    source_store.add("p1", make_document(type="print", createdAt=at(0, days=1)))
    return source_store


class TestBucketCount:
    """Tests for BucketCount."""

    def test_format(self):
        """Buckets render as day, type and both counts."""
        bucket = BucketCount("2024-03-01", "click", 2, 1)
        assert str(bucket) == "2024-03-01 click ES:2 PG:1"
        assert bucket.difference == 1
        assert not bucket.is_consistent


class TestCompareCounts:
    """Tests for ReconciliationReporter.compare_counts."""

    @pytest.mark.asyncio
    async def test_consistent_stores(self, sqlite_engine, three_events):
        """Identical stores report no discrepancy."""
        await copy_to_stat_event(sqlite_engine, three_events, ["c1", "c2", "p1"])
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.compare_counts(START, END)

        assert report.is_consistent
        assert [str(b) for b in report.buckets] == [
            "2024-03-01 click ES:2 PG:2",
            "2024-03-02 print ES:1 PG:1",
        ]
        assert report.source_total == report.target_total == 3

    @pytest.mark.asyncio
    async def test_same_day_mixed_types(self, sqlite_engine, source_store):
        """Two clicks and an apply on one day give two consistent buckets."""
        source_store.add("c1", make_document(type="click", createdAt=at(0)))
        source_store.add("c2", make_document(type="click", createdAt=at(5)))
        source_store.add("a1", make_document(type="apply", createdAt=at(10)))
        await copy_to_stat_event(sqlite_engine, source_store, ["c1", "c2", "a1"])
        reporter = ReconciliationReporter(source_store, sqlite_engine, enable_tracing=False)

        report = await reporter.compare_counts(START, END)

        assert report.is_consistent
        assert [str(b) for b in report.buckets] == [
            "2024-03-01 apply ES:1 PG:1",
            "2024-03-01 click ES:2 PG:2",
        ]

    @pytest.mark.asyncio
    async def test_missing_row_is_a_discrepancy(self, sqlite_engine, three_events, caplog):
        """A click missing from the relational store shows up in its bucket."""
        caplog.set_level(logging.INFO, logger="statmigrate")
        await copy_to_stat_event(sqlite_engine, three_events, ["c1", "p1"])
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.compare_counts(START, END)

        assert not report.is_consistent
        assert [str(b) for b in report.discrepancies] == ["2024-03-01 click ES:2 PG:1"]
        assert report.bucket("2024-03-02", "print").is_consistent
        assert "2024-03-01 click ES:2 PG:1" in caplog.text

    @pytest.mark.asyncio
    async def test_bucket_only_in_source(self, sqlite_engine, three_events):
        """A bucket absent from the relational store is reported with PG:0."""
        await copy_to_stat_event(sqlite_engine, three_events, ["c1", "c2"])
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.compare_counts(START, END)

        assert str(report.bucket("2024-03-02", "print")) == "2024-03-02 print ES:1 PG:0"

    @pytest.mark.asyncio
    async def test_bucket_only_in_target(self, sqlite_engine, source_store):
        """A bucket absent from the document store is reported with ES:0."""
        source_store.add("c1", make_document(type="click", createdAt=at(0)))
        await copy_to_stat_event(sqlite_engine, source_store, ["c1"])
        orphan = SourceEvent.from_hit("p1", make_document(type="print", createdAt=at(0, days=1)))
        writer = IdempotentBatchWriter(sqlite_engine, stat_event, "id", enable_tracing=False)
        await writer.write([DocumentTransformer().transform(orphan)])
        reporter = ReconciliationReporter(source_store, sqlite_engine, enable_tracing=False)

        report = await reporter.compare_counts(START, END)

        assert str(report.bucket("2024-03-02", "print")) == "2024-03-02 print ES:0 PG:1"
        assert report.bucket("2024-03-01", "click").is_consistent

    @pytest.mark.asyncio
    async def test_window_end_is_exclusive(self, sqlite_engine, three_events):
        """Events at the window end are outside the window on both sides."""
        await copy_to_stat_event(sqlite_engine, three_events, ["c1", "c2", "p1"])
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.compare_counts(START, BASE_TIME + timedelta(days=1))

        assert report.is_consistent
        assert report.bucket("2024-03-02", "print") is None

    @pytest.mark.asyncio
    async def test_event_type_filter(self, sqlite_engine, three_events):
        """Restricting to a type only compares that type."""
        await copy_to_stat_event(sqlite_engine, three_events, ["c1"])
        reporter = ReconciliationReporter(
            three_events, sqlite_engine, event_type=EventType.PRINT, enable_tracing=False
        )

        report = await reporter.compare_counts(START, END)

        assert [str(b) for b in report.buckets] == ["2024-03-02 print ES:1 PG:0"]

    @pytest.mark.asyncio
    async def test_analytics_target(self, sqlite_engine, three_events):
        """Analytics counts come from each type's table."""
        async with sqlite_engine.begin() as conn:
            await conn.execute(
                click.insert(),
                [
                    analytics_row("c1", BASE_TIME),
                    analytics_row("c2", BASE_TIME + timedelta(minutes=30)),
                ],
            )
        reporter = ReconciliationReporter(
            three_events,
            sqlite_engine,
            target=ReconciliationTarget.ANALYTICS,
            enable_tracing=False,
        )

        report = await reporter.compare_counts(START, END)

        assert [str(b) for b in report.buckets] == [
            "2024-03-01 click ES:2 PG:2",
            "2024-03-02 print ES:1 PG:0",
        ]

    @pytest.mark.asyncio
    async def test_to_dict(self, sqlite_engine, three_events):
        """Reports serialize for structured output."""
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        data = (await reporter.compare_counts(START, END)).to_dict()

        assert data["is_consistent"] is False
        assert data["source_total"] == 3
        assert data["target_total"] == 0
        assert data["buckets"][0] == {
            "day": "2024-03-01",
            "type": "click",
            "source": 2,
            "target": 0,
        }


class TestSpotCheck:
    """Tests for sampled and explicit id checks."""

    @pytest.mark.asyncio
    async def test_all_sampled_ids_found(self, sqlite_engine, three_events):
        """A complete copy passes the spot check."""
        await copy_to_stat_event(sqlite_engine, three_events, ["c1", "c2", "p1"])
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.spot_check(START, END, sample_size=5)

        assert len(report.results) == 3
        assert report.is_consistent
        assert report.found_count == 3

    @pytest.mark.asyncio
    async def test_missing_ids_reported(self, sqlite_engine, three_events):
        """Ids absent from the relational store are listed."""
        await copy_to_stat_event(sqlite_engine, three_events, ["c1"])
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.check_ids(["c1", "c2", "p1"])

        assert sorted(report.missing_ids) == ["c2", "p1"]
        assert report.to_dict()["found"] == 1

    @pytest.mark.asyncio
    async def test_sample_size_is_respected(self, sqlite_engine, three_events):
        """No more ids than requested are checked."""
        reporter = ReconciliationReporter(three_events, sqlite_engine, enable_tracing=False)

        report = await reporter.spot_check(START, END, sample_size=2)

        assert len(report.results) == 2

    @pytest.mark.asyncio
    async def test_analytics_lookup_uses_document_type(self, sqlite_engine, three_events):
        """In analytics mode each id is looked up in its type's table by old_id."""
        async with sqlite_engine.begin() as conn:
            await conn.execute(impression.insert(), analytics_row("p1", BASE_TIME))
        reporter = ReconciliationReporter(
            three_events,
            sqlite_engine,
            target=ReconciliationTarget.ANALYTICS,
            enable_tracing=False,
        )

        report = await reporter.check_ids(["p1", "c1", "unknown"])

        assert [(r.source_id, r.event_type, r.found) for r in report.results] == [
            ("p1", "print", True),
            ("c1", "click", False),
            ("unknown", None, False),
        ]


class TestDefaultWindow:
    """Tests for default_window."""

    @pytest.mark.asyncio
    async def test_ends_at_watermark(self, cursor_store):
        """The window ends at the job's watermark."""
        await cursor_store.save("stat_event_es_to_pg", CursorState(last_created_at=BASE_TIME))

        start, end = await default_window(cursor_store, "stat_event_es_to_pg", days=7)

        assert end == BASE_TIME
        assert start == BASE_TIME - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_falls_back_to_now(self, cursor_store):
        """Without a watermark the window ends now."""
        now = BASE_TIME + timedelta(days=30)

        start, end = await default_window(cursor_store, "never_ran", days=2, clock=lambda: now)

        assert (start, end) == (now - timedelta(days=2), now)
