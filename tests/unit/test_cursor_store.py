"""
Unit tests for the cursor stores.

Tests for:
- InMemoryCursorStore
- SQLCursorStore against SQLite (lazy table creation, upsert, corrupt rows)
- FileCursorStore (round trip, atomic write, corrupt file recovery)
- create_cursor_store backend selection
"""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from statmigrate.config import CursorBackend, Settings
from statmigrate.cursor_store import (
    CURSOR_TABLE,
    CursorStore,
    FileCursorStore,
    InMemoryCursorStore,
    SQLCursorStore,
    create_cursor_store,
)
from statmigrate.exceptions import CheckpointError
from statmigrate.models import CursorState
from tests.fixtures import BASE_TIME

JOB = "stat_event_es_to_pg"


class TestInMemoryCursorStore:
    """Tests for InMemoryCursorStore."""

    @pytest.mark.asyncio
    async def test_get_unknown_job(self, cursor_store):
        """Unknown jobs have no state."""
        assert await cursor_store.get(JOB) is None

    @pytest.mark.asyncio
    async def test_save_and_get(self, cursor_store):
        """Saved states are returned and recorded."""
        state = CursorState(last_created_at=BASE_TIME)
        await cursor_store.save(JOB, state)

        assert await cursor_store.get(JOB) == state
        assert cursor_store.saves == [(JOB, state)]

    @pytest.mark.asyncio
    async def test_clear(self, cursor_store):
        """clear() forgets every state."""
        await cursor_store.save(JOB, CursorState(last_created_at=BASE_TIME))
        await cursor_store.clear()

        assert await cursor_store.get(JOB) is None
        assert cursor_store.saves == []

    def test_implements_protocol(self):
        """Every backend satisfies the CursorStore protocol."""
        assert isinstance(InMemoryCursorStore(), CursorStore)
        assert isinstance(FileCursorStore("cursor.json"), CursorStore)


class TestSQLCursorStore:
    """Tests for SQLCursorStore on SQLite."""

    @pytest.mark.asyncio
    async def test_get_creates_table(self, sqlite_engine):
        """The cursor table is created on first use."""
        store = SQLCursorStore(sqlite_engine, enable_tracing=False)

        assert await store.get(JOB) is None

        async with sqlite_engine.connect() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {CURSOR_TABLE}"))
            assert result.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_save_and_get(self, sqlite_engine):
        """A saved state is read back."""
        store = SQLCursorStore(sqlite_engine, enable_tracing=False)
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))

        state = await store.get(JOB)

        assert state == CursorState(last_created_at=BASE_TIME)

    @pytest.mark.asyncio
    async def test_save_overwrites(self, sqlite_engine):
        """Saving again replaces the previous state."""
        store = SQLCursorStore(sqlite_engine, enable_tracing=False)
        later = BASE_TIME.replace(hour=12)
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))
        await store.save(JOB, CursorState(last_created_at=later))

        assert (await store.get(JOB)).last_created_at == later
        async with sqlite_engine.connect() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {CURSOR_TABLE}"))
            assert result.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_stored_layout(self, sqlite_engine):
        """The state column holds the lastCreatedAt document."""
        store = SQLCursorStore(sqlite_engine, enable_tracing=False)
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))

        async with sqlite_engine.connect() as conn:
            result = await conn.execute(
                text(f"SELECT state FROM {CURSOR_TABLE} WHERE id = :id"), {"id": JOB}
            )
            stored = json.loads(result.scalar_one())

        assert stored == {"lastCreatedAt": "2024-03-01T10:00:00+00:00"}

    @pytest.mark.asyncio
    async def test_jobs_are_independent(self, sqlite_engine):
        """Each job name has its own state."""
        store = SQLCursorStore(sqlite_engine, enable_tracing=False)
        await store.save("click_es_to_pg", CursorState(last_created_at=BASE_TIME))

        assert await store.get(JOB) is None
        assert (await store.get("click_es_to_pg")).last_created_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_corrupt_row_starts_fresh(self, sqlite_engine):
        """A stored value that is not JSON is treated as no state."""
        store = SQLCursorStore(sqlite_engine, enable_tracing=False)
        await store.get(JOB)
        async with sqlite_engine.begin() as conn:
            await conn.execute(
                text(f"INSERT INTO {CURSOR_TABLE} (id, state) VALUES (:id, :state)"),
                {"id": JOB, "state": "{not json"},
            )

        assert await store.get(JOB) is None

    @pytest.mark.asyncio
    async def test_records_spans(self, sqlite_engine, mock_tracer):
        """Reads and writes are traced."""
        store = SQLCursorStore(sqlite_engine, tracer=mock_tracer)
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))
        await store.get(JOB)

        assert mock_tracer.span_names == [
            "statmigrate.cursor_store.save",
            "statmigrate.cursor_store.get",
        ]

    @pytest.mark.asyncio
    async def test_database_error_raises_checkpoint_error(self):
        """Store failures surface as CheckpointError."""
        conn = MagicMock()
        conn.dialect.name = "sqlite"
        conn.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("locked")))
        store = SQLCursorStore(conn, enable_tracing=False)

        with pytest.raises(CheckpointError) as exc_info:
            await store.save(JOB, CursorState(last_created_at=BASE_TIME))

        assert exc_info.value.job_name == JOB


class TestFileCursorStore:
    """Tests for FileCursorStore."""

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        """A missing file means no state."""
        store = FileCursorStore(tmp_path / "cursor.json")
        assert await store.get(JOB) is None

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        """States survive a new store instance on the same file."""
        path = tmp_path / "cursor.json"
        await FileCursorStore(path).save(JOB, CursorState(last_created_at=BASE_TIME))

        state = await FileCursorStore(path).get(JOB)

        assert state == CursorState(last_created_at=BASE_TIME)
        assert json.loads(path.read_text()) == {
            JOB: {"lastCreatedAt": "2024-03-01T10:00:00+00:00"}
        }

    @pytest.mark.asyncio
    async def test_keeps_other_jobs(self, tmp_path):
        """Saving one job leaves the others in the file."""
        store = FileCursorStore(tmp_path / "cursor.json")
        await store.save("print_es_to_pg", CursorState(last_created_at=BASE_TIME))
        await store.save(JOB, CursorState())

        assert (await store.get("print_es_to_pg")).last_created_at == BASE_TIME
        assert (await store.get(JOB)).last_created_at is None

    @pytest.mark.asyncio
    async def test_no_temporary_files_left(self, tmp_path):
        """The atomic write cleans up after itself."""
        store = FileCursorStore(tmp_path / "cursor.json")
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))

        assert [p.name for p in tmp_path.iterdir()] == ["cursor.json"]

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path):
        """Missing parent directories are created."""
        path = tmp_path / "state" / "nested" / "cursor.json"
        await FileCursorStore(path).save(JOB, CursorState(last_created_at=BASE_TIME))
        assert path.is_file()

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_fresh(self, tmp_path, caplog):
        """A truncated file is reported and treated as empty."""
        caplog.set_level(logging.WARNING, logger="statmigrate")
        path = tmp_path / "cursor.json"
        path.write_text('{"stat_event_es_to_pg": {"lastCrea')
        store = FileCursorStore(path)

        assert await store.get(JOB) is None
        assert "corrupt" in caplog.text

        await store.save(JOB, CursorState(last_created_at=BASE_TIME))
        assert (await store.get(JOB)).last_created_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_corrupt_file_is_set_aside_before_save(self, tmp_path, caplog):
        """Saving over an unreadable file keeps its content in a backup."""
        caplog.set_level(logging.WARNING, logger="statmigrate")
        path = tmp_path / "cursor.json"
        damaged = '{"print_es_to_pg": {"lastCreatedAt": "2024-03-01T10:00:00+00:00"}, "stat_'
        path.write_text(damaged)
        store = FileCursorStore(path)

        await store.save(JOB, CursorState(last_created_at=BASE_TIME))

        assert store.backup_path == tmp_path / "cursor.json.corrupt"
        assert store.backup_path.read_text() == damaged
        assert json.loads(path.read_text()) == {
            JOB: {"lastCreatedAt": "2024-03-01T10:00:00+00:00"}
        }
        assert "not carried over" in caplog.text

    @pytest.mark.asyncio
    async def test_readable_file_is_not_backed_up(self, tmp_path):
        """A healthy file is updated in place without a backup."""
        store = FileCursorStore(tmp_path / "cursor.json")
        await store.save("print_es_to_pg", CursorState(last_created_at=BASE_TIME))
        await store.save(JOB, CursorState(last_created_at=BASE_TIME))

        assert not store.backup_path.exists()

    @pytest.mark.asyncio
    async def test_non_object_file_starts_fresh(self, tmp_path):
        """A file holding something other than an object is treated as empty."""
        path = tmp_path / "cursor.json"
        path.write_text("[1, 2, 3]")
        assert await FileCursorStore(path).get(JOB) is None

    @pytest.mark.asyncio
    async def test_unwritable_path_raises_checkpoint_error(self, tmp_path):
        """A state that cannot be written is a fatal checkpoint error."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        store = FileCursorStore(blocker / "cursor.json")

        with pytest.raises(CheckpointError):
            await store.save(JOB, CursorState(last_created_at=BASE_TIME))


class TestCreateCursorStore:
    """Tests for create_cursor_store."""

    def test_table_backend(self):
        """The table backend uses the core engine."""
        engine = MagicMock()
        engine.dialect.name = "postgresql"
        settings = Settings(cursor_backend=CursorBackend.TABLE)
        store = create_cursor_store(settings, engine)

        assert isinstance(store, SQLCursorStore)
        assert store.conn is engine

    def test_file_backend(self, tmp_path):
        """The file backend writes to the configured path."""
        settings = Settings(cursor_backend=CursorBackend.FILE, cursor_file=tmp_path / "c.json")
        store = create_cursor_store(settings, MagicMock())

        assert isinstance(store, FileCursorStore)
        assert store.path == tmp_path / "c.json"
