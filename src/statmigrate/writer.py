"""
Idempotent bulk writer.

Each batch is written with one ``INSERT ... ON CONFLICT (natural key) DO
NOTHING RETURNING`` statement, so replaying a batch is a silent no-op for
rows already present. Rows reported by RETURNING are the ones actually
created; skipped duplicates still count as successfully exported.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Table
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from statmigrate.exceptions import BatchWriteError, ConfigurationError
from statmigrate.models import BatchOutcome
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ROWS_CREATED,
)
from statmigrate.relational import dialect_name, execute_with_connection

logger = logging.getLogger(__name__)

_INSERT_BUILDERS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class IdempotentBatchWriter:
    """
    Bulk inserts rows, skipping those whose natural key already exists.

    Args:
        conn: Relational store engine or connection
        table: Target table
        key_column: Natural key column (``id`` for stat_event, ``old_id``
            for the analytics tables)

    Example:
        >>> writer = IdempotentBatchWriter(engine, schema.stat_event, "id")
        >>> outcome = await writer.write(rows)
        >>> outcome.created
        998
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        table: Table,
        key_column: str,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        dialect = dialect_name(conn)
        if dialect not in _INSERT_BUILDERS:
            raise ConfigurationError(
                "database url", f"dialect {dialect!r} has no conflict-skipping insert"
            )
        if key_column not in table.c:
            raise ValueError(f"Table {table.name} has no column {key_column!r}")

        self.conn = conn
        self.table = table
        self.key_column = key_column
        self._dialect = dialect
        self._insert = _INSERT_BUILDERS[dialect]
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    def _to_params(self, row: BaseModel) -> dict[str, Any]:
        params = {
            name: _column_value(value)
            for name, value in row.model_dump().items()
            if name in self.table.c
        }
        if "id" in self.table.c and params.get("id") is None:
            params["id"] = str(uuid4())
        return params

    async def write(self, rows: Sequence[BaseModel]) -> BatchOutcome:
        """
        Insert a batch of rows.

        Args:
            rows: Rows to insert (pydantic row models)

        Returns:
            BatchOutcome with the created count and every natural key of the
            batch as succeeded

        Raises:
            BatchWriteError: If the store rejects the statement; nothing of
                the batch is considered written
        """
        if not rows:
            return BatchOutcome()

        params = [self._to_params(row) for row in rows]
        source_ids = [str(p[self.key_column]) for p in params]
        key = self.table.c[self.key_column]
        stmt = (
            self._insert(self.table)
            .on_conflict_do_nothing(index_elements=[key])
            .returning(key)
        )

        with self._tracer.span(
            "statmigrate.writer.write",
            {
                ATTR_DB_SYSTEM: self._dialect,
                ATTR_DB_NAME: self.table.name,
                ATTR_DB_OPERATION: "INSERT",
                ATTR_BATCH_SIZE: len(params),
            },
        ) as span:
            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(stmt, params)
                    created = len(result.all())
            except SQLAlchemyError as e:
                logger.error(
                    "Bulk insert into %s failed for %d rows: %s",
                    self.table.name,
                    len(params),
                    e,
                    extra={
                        "table": self.table.name,
                        "batch_size": len(params),
                        "first_id": source_ids[0],
                        "last_id": source_ids[-1],
                    },
                )
                raise BatchWriteError(self.table.name, source_ids, str(e)) from e

            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_ROWS_CREATED, created)

        logger.info(
            "Created %d rows in %s, %d already present",
            created,
            self.table.name,
            len(params) - created,
            extra={"table": self.table.name, "rows_created": created, "batch_size": len(params)},
        )
        return BatchOutcome(created=created, succeeded=tuple(source_ids))


__all__ = ["IdempotentBatchWriter"]
