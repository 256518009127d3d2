"""
In-memory implementation of the document store.

Holds raw documents in a dict keyed by id. Scrolls take a snapshot of the
matching documents when opened, as a search scroll context would, so
documents updated or added mid-scroll do not change the pages already
promised.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import uuid4

from statmigrate.models import EventType, ExportStatus, SourceEvent, parse_timestamp
from statmigrate.sources.interface import BucketKey, ScrollPage, ScrollQuery


class InMemorySourceStore:
    """
    Document store kept in memory, for tests and local runs.

    Example:
        >>> store = InMemorySourceStore()
        >>> store.add("evt-1", {"type": "click", "createdAt": "2024-03-01T10:00:00Z"})
        >>> page = await store.open_scroll(ScrollQuery(), size=100, keep_alive="5m")
    """

    def __init__(self, index: str = "stats", documents: dict[str, dict[str, Any]] | None = None):
        self._index = index
        self._documents: dict[str, dict[str, Any]] = dict(documents or {})
        self._scrolls: dict[str, tuple[list[str], int, int]] = {}
        self.closed_scrolls: list[str] = []
        self.status_updates: list[tuple[list[str], ExportStatus]] = []
        self._lock = asyncio.Lock()

    @property
    def index(self) -> str:
        return self._index

    @property
    def open_scroll_count(self) -> int:
        """Number of scroll contexts not yet closed."""
        return len(self._scrolls)

    def add(self, source_id: str, document: dict[str, Any]) -> None:
        """Store (or replace) a raw document."""
        self._documents[source_id] = dict(document)

    def add_many(self, documents: Iterable[tuple[str, dict[str, Any]]]) -> None:
        for source_id, document in documents:
            self.add(source_id, document)

    def document(self, source_id: str) -> dict[str, Any] | None:
        """Raw stored document, for assertions."""
        return self._documents.get(source_id)

    def _matches(self, document: dict[str, Any], query: ScrollQuery) -> bool:
        if query.event_type is not None and document.get("type") != query.event_type.value:
            return False
        if query.created_from is not None:
            created_at = parse_timestamp(document.get("createdAt"))
            if created_at is None or created_at < query.created_from:
                return False
        if query.exclude_status is not None:
            if document.get("exportToPgStatus") == query.exclude_status.value:
                return False
        if query.flagged_only:
            if document.get("isBot") is not True and document.get("isHuman") is not True:
                return False
        return True

    def _sorted_ids(self, query: ScrollQuery) -> list[str]:
        matching = [
            (parse_timestamp(doc.get("createdAt")), source_id)
            for source_id, doc in self._documents.items()
            if self._matches(doc, query)
        ]
        # Documents without a usable timestamp sort last, like missing values
        matching.sort(key=lambda item: (item[0] is None, item[0] or datetime.min, item[1]))
        return [source_id for _, source_id in matching]

    def _next_page(self, scroll_id: str) -> ScrollPage:
        ids, position, size = self._scrolls[scroll_id]
        chunk = ids[position : position + size]
        self._scrolls[scroll_id] = (ids, position + len(chunk), size)
        events = [
            SourceEvent.from_hit(source_id, self._documents.get(source_id, {}))
            for source_id in chunk
        ]
        return ScrollPage(scroll_id=scroll_id, events=events, total=len(ids))

    async def open_scroll(self, query: ScrollQuery, size: int, keep_alive: str) -> ScrollPage:
        async with self._lock:
            scroll_id = uuid4().hex
            self._scrolls[scroll_id] = (self._sorted_ids(query), 0, size)
            return self._next_page(scroll_id)

    async def continue_scroll(self, scroll_id: str, keep_alive: str) -> ScrollPage:
        async with self._lock:
            if scroll_id not in self._scrolls:
                return ScrollPage(scroll_id=None, events=[], total=None)
            page = self._next_page(scroll_id)
            return ScrollPage(scroll_id=page.scroll_id, events=page.events, total=None)

    async def close_scroll(self, scroll_id: str) -> None:
        async with self._lock:
            self._scrolls.pop(scroll_id, None)
            self.closed_scrolls.append(scroll_id)

    async def get(self, source_id: str) -> SourceEvent | None:
        document = self._documents.get(source_id)
        if document is None:
            return None
        return SourceEvent.from_hit(source_id, document)

    async def update_export_status(self, source_ids: Sequence[str], status: ExportStatus) -> int:
        async with self._lock:
            updated = 0
            for source_id in source_ids:
                document = self._documents.get(source_id)
                if document is None:
                    continue
                document["exportToPgStatus"] = status.value
                updated += 1
            self.status_updates.append((list(source_ids), status))
            return updated

    def _in_window(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None,
    ) -> list[tuple[str, dict[str, Any], datetime]]:
        selected = []
        for source_id, document in self._documents.items():
            created_at = parse_timestamp(document.get("createdAt"))
            if created_at is None or not start <= created_at < end:
                continue
            if event_type is not None and document.get("type") != event_type.value:
                continue
            selected.append((source_id, document, created_at))
        return selected

    async def count_by_day_and_type(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None = None,
    ) -> dict[BucketKey, int]:
        counts: dict[BucketKey, int] = {}
        for _, document, created_at in self._in_window(start, end, event_type):
            doc_type = document.get("type")
            if not isinstance(doc_type, str):
                continue
            key = (created_at.date().isoformat(), doc_type)
            counts[key] = counts.get(key, 0) + 1
        return counts

    async def sample_ids(
        self,
        start: datetime,
        end: datetime,
        size: int,
        event_type: EventType | None = None,
    ) -> list[str]:
        ids = [source_id for source_id, _, _ in self._in_window(start, end, event_type)]
        if len(ids) <= size:
            return ids
        return random.sample(ids, size)  # nosec B311 - not crypto


__all__ = ["InMemorySourceStore"]
