"""
Document store interface.

The activity events live in a document search index. Jobs only talk to it
through the SourceStore protocol so that the Elasticsearch backend can be
replaced by an in-memory one in tests and local runs.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from statmigrate.models import EventType, ExportStatus, SourceEvent

BucketKey = tuple[str, str]
"""(day as YYYY-MM-DD, event type) pair used by count aggregations."""


@dataclass(frozen=True)
class ScrollQuery:
    """
    Filter of a scroll over the event index.

    Results are always sorted by ascending ``createdAt``.

    Attributes:
        event_type: Only events of this type (None for every type)
        created_from: Inclusive lower bound on ``createdAt``
        exclude_status: Skip events already carrying this export marker
        flagged_only: Only events with ``isBot`` or ``isHuman`` set to true
    """

    event_type: EventType | None = None
    created_from: datetime | None = None
    exclude_status: ExportStatus | None = None
    flagged_only: bool = False


@dataclass(frozen=True)
class ScrollPage:
    """
    One page of a scroll.

    Attributes:
        scroll_id: Id to continue the scroll with (None once exhausted)
        events: Events of the page, in ascending ``createdAt`` order
        total: Total number of matching events, reported by the first page
    """

    scroll_id: str | None
    events: list[SourceEvent] = field(default_factory=list)
    total: int | None = None


@runtime_checkable
class SourceStore(Protocol):
    """
    Protocol for the document store holding activity events.

    Every method raises SourceStoreError when the store cannot be reached
    or rejects the request.
    """

    @property
    def index(self) -> str:
        """Name of the index or collection holding the events."""
        ...

    async def open_scroll(self, query: ScrollQuery, size: int, keep_alive: str) -> ScrollPage:
        """Start a scroll and return its first page."""
        ...

    async def continue_scroll(self, scroll_id: str, keep_alive: str) -> ScrollPage:
        """Fetch the next page of a scroll, renewing its keep-alive."""
        ...

    async def close_scroll(self, scroll_id: str) -> None:
        """Release a scroll context. Unknown or expired ids are ignored."""
        ...

    async def get(self, source_id: str) -> SourceEvent | None:
        """Get one event by id, None when it does not exist."""
        ...

    async def update_export_status(self, source_ids: Sequence[str], status: ExportStatus) -> int:
        """
        Set the export marker of many events without forcing a refresh.

        Returns:
            Number of events updated
        """
        ...

    async def count_by_day_and_type(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None = None,
    ) -> dict[BucketKey, int]:
        """Count events with ``start <= createdAt < end`` per (day, type)."""
        ...

    async def sample_ids(
        self,
        start: datetime,
        end: datetime,
        size: int,
        event_type: EventType | None = None,
    ) -> list[str]:
        """Randomly sample up to ``size`` event ids created in the window."""
        ...


__all__ = [
    "BucketKey",
    "ScrollQuery",
    "ScrollPage",
    "SourceStore",
]
