"""
Shared pytest fixtures for the statmigrate tests.

This module provides:
- Relational store fixtures (sqlite_engine, seeded_engine) backed by a
  temporary aiosqlite database file with the migration tables created
- Document store fixtures (source_store)
- Cursor store fixtures (cursor_store)
- Tracing fixtures (mock_tracer)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from statmigrate.cursor_store import InMemoryCursorStore
from statmigrate.observability import MockTracer
from statmigrate.relational.schema import metadata
from statmigrate.sources import InMemorySourceStore
from tests.fixtures import seed_references

# =============================================================================
# Relational Store Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Provide an async SQLite engine with every migration table created.

    Yields:
        AsyncEngine on a database file in the test's temporary directory.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'statmigrate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_engine(sqlite_engine: AsyncEngine) -> AsyncEngine:
    """
    Provide the SQLite engine with partners, missions, campaigns and widgets.

    Returns:
        The sqlite_engine fixture, seeded.
    """
    await seed_references(sqlite_engine)
    return sqlite_engine


# =============================================================================
# Document Store Fixtures
# =============================================================================


@pytest.fixture
def source_store() -> InMemorySourceStore:
    """Provide an empty in-memory document store."""
    return InMemorySourceStore(index="stats")


# =============================================================================
# Cursor Store Fixtures
# =============================================================================


@pytest.fixture
def cursor_store() -> InMemoryCursorStore:
    """Provide an empty in-memory cursor store."""
    return InMemoryCursorStore()


# =============================================================================
# Tracing Fixtures
# =============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    """Provide a tracer recording span names and attributes."""
    return MockTracer()
