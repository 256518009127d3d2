"""
Cursor persistence for resumable jobs.

A cursor maps a job name to the creation timestamp of the last record the
job committed. One CursorStore interface, three interchangeable backends:

- SQLCursorStore: ``backfill_state`` table in the relational store
- FileCursorStore: local JSON file, written atomically
- InMemoryCursorStore: for tests

Every backend raises CheckpointError when a state cannot be persisted.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from statmigrate.config import CursorBackend, Settings
from statmigrate.exceptions import CheckpointError
from statmigrate.models import CursorState
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import ATTR_DB_SYSTEM, ATTR_JOB_NAME, ATTR_WATERMARK
from statmigrate.relational import dialect_name, execute_with_connection

logger = logging.getLogger(__name__)

CURSOR_TABLE = "backfill_state"


@runtime_checkable
class CursorStore(Protocol):
    """
    Protocol for cursor stores.

    States are created lazily on the first save and overwritten after every
    committed batch. They are never deleted.
    """

    async def get(self, job_name: str) -> CursorState | None:
        """
        Get the stored state of a job.

        Args:
            job_name: Job name (cursor key)

        Returns:
            The stored state, or None when the job never committed a batch
        """
        ...

    async def save(self, job_name: str, state: CursorState) -> None:
        """
        Persist the state of a job, replacing any previous one.

        Raises:
            CheckpointError: If the state could not be persisted
        """
        ...


class SQLCursorStore:
    """
    Cursor store backed by the ``backfill_state`` table.

    The table is created on first use. The state column is JSONB on
    PostgreSQL and TEXT on other dialects.

    Example:
        >>> store = SQLCursorStore(engine)
        >>> await store.save("stat_event_es_to_pg", CursorState(last_created_at=ts))
        >>> state = await store.get("stat_event_es_to_pg")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._is_postgres = dialect_name(conn) == "postgresql"
        self._table_ready = False
        self._lock = asyncio.Lock()

    async def _ensure_table(self) -> None:
        if self._table_ready:
            return
        async with self._lock:
            if self._table_ready:
                return
            column_type = "JSONB NOT NULL DEFAULT '{}'" if self._is_postgres else "TEXT NOT NULL"
            query = text(
                f"CREATE TABLE IF NOT EXISTS {CURSOR_TABLE} "
                f"(id TEXT PRIMARY KEY, state {column_type})"
            )
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query)
            self._table_ready = True

    async def get(self, job_name: str) -> CursorState | None:
        with self._tracer.span(
            "statmigrate.cursor_store.get",
            {ATTR_JOB_NAME: job_name, ATTR_DB_SYSTEM: dialect_name(self.conn)},
        ):
            try:
                await self._ensure_table()
                query = text(f"SELECT state FROM {CURSOR_TABLE} WHERE id = :id")
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, {"id": job_name})
                    row = result.fetchone()
            except SQLAlchemyError as e:
                raise CheckpointError(job_name, f"could not read cursor: {e}") from e

            if row is None:
                return None
            raw = row[0]
            try:
                data = json.loads(raw) if isinstance(raw, str | bytes) else raw
            except json.JSONDecodeError:
                logger.warning(
                    "Stored cursor for %s is not valid JSON, starting fresh",
                    job_name,
                    extra={"job_name": job_name},
                )
                return None
            return CursorState.from_dict(data if isinstance(data, dict) else None)

    async def save(self, job_name: str, state: CursorState) -> None:
        payload = json.dumps(state.to_dict())
        with self._tracer.span(
            "statmigrate.cursor_store.save",
            {
                ATTR_JOB_NAME: job_name,
                ATTR_WATERMARK: payload,
                ATTR_DB_SYSTEM: dialect_name(self.conn),
            },
        ):
            value = "CAST(:state AS JSONB)" if self._is_postgres else ":state"
            query = text(f"""
                INSERT INTO {CURSOR_TABLE} (id, state)
                VALUES (:id, {value})
                ON CONFLICT (id) DO UPDATE SET state = EXCLUDED.state
            """)
            try:
                await self._ensure_table()
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(query, {"id": job_name, "state": payload})
            except SQLAlchemyError as e:
                raise CheckpointError(job_name, f"could not persist cursor: {e}") from e


class FileCursorStore:
    """
    Cursor store backed by a local JSON file.

    The file maps job names to their stored state. Writes go to a temporary
    file in the same directory which then replaces the original, so a crash
    never leaves a truncated file behind. A file that cannot be parsed is
    reported and read as empty; before the next save it is moved aside to
    ``<name>.corrupt`` so the cursors of other jobs can still be recovered
    from it by hand.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def backup_path(self) -> Path:
        """Where an unreadable cursor file is moved before being replaced."""
        return self.path.with_name(f"{self.path.name}.corrupt")

    def _read_all(self) -> dict[str, Any] | None:
        """Stored states by job name; None when the file exists but is unusable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.warning(
                "Could not read cursor file %s, starting fresh: %s",
                self.path,
                e,
                extra={"path": str(self.path)},
            )
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(
                "Cursor file %s is corrupt, starting fresh: %s",
                self.path,
                e,
                extra={"path": str(self.path)},
            )
            return None
        if not isinstance(data, dict):
            logger.warning(
                "Cursor file %s does not hold an object, starting fresh",
                self.path,
                extra={"path": str(self.path)},
            )
            return None
        return data

    def _set_aside(self) -> None:
        os.replace(self.path, self.backup_path)
        logger.warning(
            "Moved unreadable cursor file %s to %s; cursors of other jobs in it are "
            "not carried over",
            self.path,
            self.backup_path,
            extra={"path": str(self.path), "backup_path": str(self.backup_path)},
        )

    def _write_all(self, data: dict[str, Any]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    async def get(self, job_name: str) -> CursorState | None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
        entry = (data or {}).get(job_name)
        if entry is None:
            return None
        return CursorState.from_dict(entry if isinstance(entry, dict) else None)

    async def save(self, job_name: str, state: CursorState) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            try:
                if data is None:
                    await asyncio.to_thread(self._set_aside)
                    data = {}
                data[job_name] = state.to_dict()
                await asyncio.to_thread(self._write_all, data)
            except OSError as e:
                raise CheckpointError(job_name, f"could not write {self.path}: {e}") from e


class InMemoryCursorStore:
    """
    In-memory cursor store for testing.

    Example:
        >>> store = InMemoryCursorStore()
        >>> await store.save("job", CursorState(last_created_at=ts))
        >>> store.saves  # every state saved, in order
    """

    def __init__(self) -> None:
        self._states: dict[str, CursorState] = {}
        self.saves: list[tuple[str, CursorState]] = []
        self._lock = asyncio.Lock()

    async def get(self, job_name: str) -> CursorState | None:
        async with self._lock:
            return self._states.get(job_name)

    async def save(self, job_name: str, state: CursorState) -> None:
        async with self._lock:
            self._states[job_name] = state
            self.saves.append((job_name, state))

    async def clear(self) -> None:
        """Clear all stored states."""
        async with self._lock:
            self._states.clear()
            self.saves.clear()


def create_cursor_store(
    settings: Settings,
    engine: AsyncEngine,
    tracer: Tracer | None = None,
) -> CursorStore:
    """
    Build the cursor store selected by configuration.

    Args:
        settings: Process settings
        engine: Core relational store engine (table backend)
        tracer: Optional tracer

    Returns:
        SQLCursorStore or FileCursorStore
    """
    if settings.cursor_backend is CursorBackend.FILE:
        logger.info("Using file cursor store at %s", settings.cursor_file)
        return FileCursorStore(settings.cursor_file)
    logger.info("Using %s table cursor store", CURSOR_TABLE)
    return SQLCursorStore(engine, tracer=tracer, enable_tracing=settings.enable_tracing)


__all__ = [
    "CURSOR_TABLE",
    "CursorStore",
    "SQLCursorStore",
    "FileCursorStore",
    "InMemoryCursorStore",
    "create_cursor_store",
]
