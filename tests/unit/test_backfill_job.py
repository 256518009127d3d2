"""
Tests for the general stat_event backfill.

Runs StatEventBackfill against an in-memory document store and a SQLite
relational store to check:
- Complete copy with progress reporting and cursor checkpoints
- Idempotent reruns
- Resume after a failed batch without duplicates or gaps
- Abort semantics for read, write and checkpoint failures
"""

from unittest.mock import AsyncMock

import pytest

from statmigrate.exceptions import (
    BatchWriteError,
    CheckpointError,
    MigrationRunError,
    SourceStoreError,
)
from statmigrate.jobs import STAT_EVENT_JOB, JobProgress, StatEventBackfill, advance_watermark
from statmigrate.models import CursorState, SourceEvent, parse_timestamp
from statmigrate.relational.schema import stat_event
from statmigrate.writer import IdempotentBatchWriter
from tests.fixtures import BASE_TIME, at, count_rows, fetch_rows, make_document


def fill(store, count: int) -> None:
    for i in range(count):
        store.add(f"evt-{i}", make_document(createdAt=at(minutes=i)))


class FailingWriter:
    """Delegates to a real writer but rejects the n-th batch."""

    def __init__(self, writer: IdempotentBatchWriter, fail_on: int) -> None:
        self._writer = writer
        self._fail_on = fail_on
        self.calls = 0

    async def write(self, rows):
        self.calls += 1
        if self.calls == self._fail_on:
            raise BatchWriteError("stat_event", [row.id for row in rows], "connection lost")
        return await self._writer.write(rows)


class FailingCursorStore:
    """Cursor store whose saves always fail."""

    async def get(self, job_name):
        return None

    async def save(self, job_name, state):
        raise CheckpointError(job_name, "disk full")


@pytest.fixture
def writer(sqlite_engine):
    return IdempotentBatchWriter(sqlite_engine, stat_event, "id", enable_tracing=False)


def backfill(source_store, cursor_store, writer, batch_size=2) -> StatEventBackfill:
    return StatEventBackfill(
        source_store,
        cursor_store,
        writer,
        batch_size=batch_size,
        enable_tracing=False,
    )


class TestAdvanceWatermark:
    """Tests for advance_watermark."""

    def test_last_parsable_timestamp(self):
        """The watermark is the creation time of the last parsable event."""
        batch = [
            SourceEvent.from_hit("a", {"createdAt": at(1)}),
            SourceEvent.from_hit("b", {"createdAt": at(2)}),
            SourceEvent.from_hit("c", {"createdAt": "garbage"}),
        ]
        assert advance_watermark(batch, None) == parse_timestamp(at(2))

    def test_never_moves_backwards(self):
        """An older batch keeps the previous watermark."""
        batch = [SourceEvent.from_hit("a", {"createdAt": at(1)})]
        later = parse_timestamp(at(5))
        assert advance_watermark(batch, later) == later

    def test_unparsable_batch_keeps_previous(self):
        """A batch without any parsable timestamp keeps the watermark."""
        batch = [SourceEvent.from_hit("a", {"createdAt": None})]
        assert advance_watermark(batch, BASE_TIME) == BASE_TIME
        assert advance_watermark(batch, None) is None


class TestStatEventBackfill:
    """Tests for StatEventBackfill runs."""

    @pytest.mark.asyncio
    async def test_copies_every_event(self, source_store, cursor_store, writer, sqlite_engine):
        """All events land in stat_event and the cursor holds the last timestamp."""
        fill(source_store, 5)
        job = backfill(source_store, cursor_store, writer)

        final = await job.execute()

        assert final.is_complete
        assert final.batches == 3
        assert final.processed == 5
        assert final.created == 5
        assert final.failed == 0
        assert final.events_total == 5
        assert await count_rows(sqlite_engine, stat_event) == 5
        state = await cursor_store.get(STAT_EVENT_JOB)
        assert state.last_created_at == parse_timestamp(at(minutes=4))

    @pytest.mark.asyncio
    async def test_checkpoints_after_every_batch(self, source_store, cursor_store, writer):
        """The cursor is saved once per committed batch, in order."""
        fill(source_store, 5)

        await backfill(source_store, cursor_store, writer).execute()

        assert [state.last_created_at for _, state in cursor_store.saves] == [
            parse_timestamp(at(minutes=1)),
            parse_timestamp(at(minutes=3)),
            parse_timestamp(at(minutes=4)),
        ]

    @pytest.mark.asyncio
    async def test_progress_reporting(self, source_store, cursor_store, writer):
        """Progress is yielded after each batch, then once more when complete."""
        fill(source_store, 3)
        reported: list[JobProgress] = []
        job = backfill(source_store, cursor_store, writer)

        yielded = [p async for p in job.run(progress_callback=reported.append)]

        assert yielded == reported
        assert [p.processed for p in yielded] == [2, 3, 3]
        assert [p.is_complete for p in yielded] == [False, False, True]
        assert yielded[-1].progress_percent == 100.0
        assert yielded[-1].to_dict()["watermark"] == "2024-03-01T10:02:00+00:00"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, source_store, cursor_store, writer, sqlite_engine):
        """A second run re-reads only the boundary record and creates nothing."""
        fill(source_store, 5)
        await backfill(source_store, cursor_store, writer).execute()

        second = await backfill(source_store, cursor_store, writer).execute()

        assert second.processed == 1
        assert second.created == 0
        assert await count_rows(sqlite_engine, stat_event) == 5

    @pytest.mark.asyncio
    async def test_picks_up_new_events(self, source_store, cursor_store, writer, sqlite_engine):
        """Events created after the last run are copied by the next one."""
        fill(source_store, 3)
        await backfill(source_store, cursor_store, writer).execute()
        source_store.add("evt-late", make_document(createdAt=at(minutes=30)))

        second = await backfill(source_store, cursor_store, writer).execute()

        assert second.created == 1
        assert await count_rows(sqlite_engine, stat_event) == 4

    @pytest.mark.asyncio
    async def test_resume_after_failed_batch(
        self, source_store, cursor_store, writer, sqlite_engine
    ):
        """A run failing mid-way resumes from its checkpoint without gaps or duplicates."""
        fill(source_store, 6)
        failing = FailingWriter(writer, fail_on=2)

        with pytest.raises(MigrationRunError) as exc_info:
            await backfill(source_store, cursor_store, failing).execute()

        error = exc_info.value
        assert error.job_name == STAT_EVENT_JOB
        assert error.batches_completed == 1
        assert error.last_checkpoint == "2024-03-01T10:01:00+00:00"
        assert error.context["first_id"] == "evt-2"
        assert isinstance(error.__cause__, BatchWriteError)
        assert len(cursor_store.saves) == 1
        assert await count_rows(sqlite_engine, stat_event) == 2

        final = await backfill(source_store, cursor_store, writer).execute()

        assert final.created == 4
        rows = await fetch_rows(sqlite_engine, stat_event)
        assert sorted(row["id"] for row in rows) == [f"evt-{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_equal_timestamps_across_batches(
        self, source_store, cursor_store, writer, sqlite_engine
    ):
        """Events sharing the watermark timestamp are not lost on resume."""
        source_store.add("a", make_document(createdAt=at(1)))
        source_store.add("b", make_document(createdAt=at(2)))
        source_store.add("c", make_document(createdAt=at(2)))
        source_store.add("d", make_document(createdAt=at(3)))

        with pytest.raises(MigrationRunError):
            await backfill(source_store, cursor_store, FailingWriter(writer, fail_on=2)).execute()
        await backfill(source_store, cursor_store, writer).execute()

        rows = await fetch_rows(sqlite_engine, stat_event)
        assert sorted(row["id"] for row in rows) == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_dirty_documents_are_written(
        self, source_store, cursor_store, writer, sqlite_engine
    ):
        """Malformed documents are copied with default values."""
        source_store.add("dirty", {"createdAt": at(1), "type": "???", "isBot": "yes", "tags": 5})

        final = await backfill(source_store, cursor_store, writer).execute()

        assert final.created == 1
        (row,) = await fetch_rows(sqlite_engine, stat_event)
        assert row["type"] == "click"
        assert row["is_bot"] is True
        assert row["tags"] == []
        assert row["source"] == "api"

    @pytest.mark.asyncio
    async def test_out_of_range_timestamp_is_written(
        self, source_store, cursor_store, writer, sqlite_engine
    ):
        """A timestamp outside the UTC range neither aborts nor moves the cursor."""
        source_store.add("normal", make_document(createdAt=at(1)))
        source_store.add("edge", make_document(createdAt="0001-01-01T00:30:00+01:00"))

        final = await backfill(source_store, cursor_store, writer).execute()

        assert final.created == 2
        assert await count_rows(sqlite_engine, stat_event) == 2
        state = await cursor_store.get(STAT_EVENT_JOB)
        assert state.last_created_at == parse_timestamp(at(1))

    @pytest.mark.asyncio
    async def test_empty_index(self, source_store, cursor_store, writer):
        """An empty index completes without saving a cursor."""
        final = await backfill(source_store, cursor_store, writer).execute()

        assert final.is_complete
        assert final.batches == 0
        assert cursor_store.saves == []

    @pytest.mark.asyncio
    async def test_checkpoint_failure_aborts(self, source_store, writer, sqlite_engine):
        """A cursor that cannot be saved stops the run after the first batch write."""
        fill(source_store, 4)

        with pytest.raises(MigrationRunError) as exc_info:
            await backfill(source_store, FailingCursorStore(), writer).execute()

        assert exc_info.value.batches_completed == 0
        assert exc_info.value.last_checkpoint is None
        assert isinstance(exc_info.value.__cause__, CheckpointError)
        assert await count_rows(sqlite_engine, stat_event) == 2

    @pytest.mark.asyncio
    async def test_source_failure_aborts(self, cursor_store, writer):
        """A document store that cannot be read aborts the run."""
        source = AsyncMock()
        source.open_scroll.side_effect = SourceStoreError("search", "stats", "unreachable")

        with pytest.raises(MigrationRunError) as exc_info:
            await backfill(source, cursor_store, writer).execute()

        assert isinstance(exc_info.value.__cause__, SourceStoreError)

    @pytest.mark.asyncio
    async def test_resumes_from_stored_cursor(
        self, source_store, cursor_store, writer, sqlite_engine
    ):
        """A stored watermark bounds the scan."""
        fill(source_store, 5)
        await cursor_store.save(
            STAT_EVENT_JOB, CursorState(last_created_at=parse_timestamp(at(minutes=3)))
        )

        final = await backfill(source_store, cursor_store, writer).execute()

        assert final.processed == 2
        rows = await fetch_rows(sqlite_engine, stat_event)
        assert sorted(row["id"] for row in rows) == ["evt-3", "evt-4"]

    @pytest.mark.asyncio
    async def test_records_spans(self, source_store, cursor_store, writer, mock_tracer):
        """The run and each batch are traced."""
        fill(source_store, 3)
        job = StatEventBackfill(
            source_store, cursor_store, writer, batch_size=2, tracer=mock_tracer
        )

        await job.execute()

        assert mock_tracer.span_names.count("statmigrate.job.batch") == 2
        assert mock_tracer.span_names[0] == "statmigrate.job.run"

    @pytest.mark.asyncio
    async def test_execute_requires_final_report(self, source_store, cursor_store, writer):
        """A run that stops before its completion report is a run error."""

        class TruncatedBackfill(StatEventBackfill):
            async def run(self, progress_callback=None):
                yield JobProgress(
                    job_name=self.job_name,
                    batches=1,
                    processed=2,
                    created=2,
                    failed=0,
                    events_total=None,
                    watermark=None,
                    events_per_second=0.0,
                    is_complete=False,
                )

        job = TruncatedBackfill(source_store, cursor_store, writer, enable_tracing=False)

        with pytest.raises(MigrationRunError) as exc_info:
            await job.execute()

        assert "without a final progress report" in str(exc_info.value)
