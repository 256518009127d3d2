"""
Connection handling helper for relational store operations.

Components accept either an AsyncEngine (the usual case for a job) or an
AsyncConnection (tests and callers that manage their own transaction).
`execute_with_connection` hides the difference.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection to run statements on.

    An engine opens a new connection: inside a transaction committed on
    exit (rolled back on error) when ``transactional``, bare otherwise. A
    connection is yielded unchanged and ``transactional`` is ignored.

    Example:
        >>> async with execute_with_connection(engine) as conn:
        ...     await conn.execute(stat_event.insert(), rows)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        # Caller owns the transaction
        yield conn


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """Name of the SQL dialect behind an engine or connection."""
    return conn.dialect.name
