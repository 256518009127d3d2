"""
Elasticsearch implementation of the document store.

Uses the async client of elasticsearch-py. Scroll pages are sorted by
``createdAt`` ascending and every call renews the scroll keep-alive. Export
markers are written with the bulk API without forcing an index refresh.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError

from statmigrate.exceptions import SourceStoreError
from statmigrate.models import EventType, ExportStatus, SourceEvent
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_EVENT_TYPE,
    ATTR_EXPORT_STATUS,
)
from statmigrate.sources.interface import BucketKey, ScrollPage, ScrollQuery

logger = logging.getLogger(__name__)

STORE_ERRORS = (ApiError, TransportError)

TYPE_FIELD = "type.keyword"
STATUS_FIELD = "exportToPgStatus.keyword"
CREATED_AT_FIELD = "createdAt"
BOT_FIELD = "isBot"
HUMAN_FIELD = "isHuman"


def build_scroll_query(query: ScrollQuery) -> dict[str, Any]:
    """
    Translate a ScrollQuery into an Elasticsearch query clause.

    Example:
        >>> build_scroll_query(ScrollQuery())
        {'match_all': {}}
    """
    must: list[dict[str, Any]] = []
    must_not: list[dict[str, Any]] = []

    if query.event_type is not None:
        must.append({"term": {TYPE_FIELD: query.event_type.value}})
    if query.created_from is not None:
        must.append({"range": {CREATED_AT_FIELD: {"gte": query.created_from.isoformat()}}})
    if query.exclude_status is not None:
        must_not.append({"term": {STATUS_FIELD: query.exclude_status.value}})
    if query.flagged_only:
        must.append(
            {
                "bool": {
                    "should": [{"term": {BOT_FIELD: True}}, {"term": {HUMAN_FIELD: True}}],
                    "minimum_should_match": 1,
                }
            }
        )

    if not must and not must_not:
        return {"match_all": {}}

    clause: dict[str, Any] = {}
    if must:
        clause["must"] = must
    if must_not:
        clause["must_not"] = must_not
    return {"bool": clause}


def _body(response: Any) -> Any:
    # ObjectApiResponse exposes the decoded JSON as .body
    return getattr(response, "body", response)


def _window_query(
    start: datetime,
    end: datetime,
    event_type: EventType | None,
) -> dict[str, Any]:
    must: list[dict[str, Any]] = [
        {"range": {CREATED_AT_FIELD: {"gte": start.isoformat(), "lt": end.isoformat()}}}
    ]
    if event_type is not None:
        must.append({"term": {TYPE_FIELD: event_type.value}})
    return {"bool": {"must": must}}


class ElasticsearchSourceStore:
    """
    Document store backed by an Elasticsearch index.

    Example:
        >>> client = AsyncElasticsearch("http://localhost:9200")
        >>> store = ElasticsearchSourceStore(client, index="stats")
        >>> page = await store.open_scroll(ScrollQuery(), size=1000, keep_alive="5m")
    """

    def __init__(
        self,
        client: AsyncElasticsearch,
        index: str,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._client = client
        self._index = index
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def index(self) -> str:
        return self._index

    def _span_attributes(self, operation: str, **extra: Any) -> dict[str, Any]:
        return {
            ATTR_DB_SYSTEM: "elasticsearch",
            ATTR_DB_NAME: self._index,
            ATTR_DB_OPERATION: operation,
            **extra,
        }

    def _page(self, response: Any) -> ScrollPage:
        response = _body(response)
        hits = response["hits"]["hits"]
        total = response["hits"].get("total")
        if isinstance(total, dict):
            total = total.get("value")
        events = [SourceEvent.from_hit(hit.get("_id"), hit.get("_source")) for hit in hits]
        return ScrollPage(scroll_id=response.get("_scroll_id"), events=events, total=total)

    async def open_scroll(self, query: ScrollQuery, size: int, keep_alive: str) -> ScrollPage:
        body = build_scroll_query(query)
        attributes = self._span_attributes("search", **{ATTR_BATCH_SIZE: size})
        if query.event_type is not None:
            attributes[ATTR_EVENT_TYPE] = query.event_type.value
        with self._tracer.span("statmigrate.source.open_scroll", attributes):
            try:
                response = await self._client.search(
                    index=self._index,
                    scroll=keep_alive,
                    size=size,
                    query=body,
                    sort=[{CREATED_AT_FIELD: "asc"}],
                    track_total_hits=True,
                )
            except STORE_ERRORS as e:
                raise SourceStoreError("search", self._index, str(e)) from e
            page = self._page(response)
            logger.debug(
                "Opened scroll on %s, %s total hits",
                self._index,
                page.total,
                extra={"index": self._index, "query": body, "total": page.total},
            )
            return page

    async def continue_scroll(self, scroll_id: str, keep_alive: str) -> ScrollPage:
        with self._tracer.span(
            "statmigrate.source.continue_scroll", self._span_attributes("scroll")
        ):
            try:
                response = await self._client.scroll(scroll_id=scroll_id, scroll=keep_alive)
            except STORE_ERRORS as e:
                raise SourceStoreError("scroll", self._index, str(e)) from e
            return self._page(response)

    async def close_scroll(self, scroll_id: str) -> None:
        with self._tracer.span(
            "statmigrate.source.close_scroll", self._span_attributes("clear_scroll")
        ):
            try:
                await self._client.clear_scroll(scroll_id=scroll_id)
            except NotFoundError:
                logger.debug("Scroll context already released", extra={"index": self._index})
            except STORE_ERRORS as e:
                raise SourceStoreError("clear_scroll", self._index, str(e)) from e

    async def get(self, source_id: str) -> SourceEvent | None:
        with self._tracer.span("statmigrate.source.get", self._span_attributes("get")):
            try:
                response = await self._client.get(index=self._index, id=source_id)
            except NotFoundError:
                return None
            except STORE_ERRORS as e:
                raise SourceStoreError("get", self._index, str(e)) from e
            body = _body(response)
            return SourceEvent.from_hit(body.get("_id"), body.get("_source"))

    async def update_export_status(self, source_ids: Sequence[str], status: ExportStatus) -> int:
        if not source_ids:
            return 0
        operations: list[dict[str, Any]] = []
        for source_id in source_ids:
            operations.append({"update": {"_index": self._index, "_id": source_id}})
            operations.append({"doc": {"exportToPgStatus": status.value}})

        with self._tracer.span(
            "statmigrate.source.update_export_status",
            self._span_attributes(
                "bulk",
                **{ATTR_BATCH_SIZE: len(source_ids), ATTR_EXPORT_STATUS: status.value},
            ),
        ):
            try:
                response = await self._client.bulk(operations=operations, refresh=False)
            except STORE_ERRORS as e:
                raise SourceStoreError("bulk", self._index, str(e)) from e

            items = _body(response).get("items", [])
            failed = [
                item.get("update", {})
                for item in items
                if item.get("update", {}).get("error") is not None
            ]
            if failed:
                logger.warning(
                    "%d of %d export markers were not written",
                    len(failed),
                    len(source_ids),
                    extra={
                        "index": self._index,
                        "status": status.value,
                        "failed_ids": [item.get("_id") for item in failed[:20]],
                    },
                )
            return len(source_ids) - len(failed)

    async def count_by_day_and_type(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None = None,
    ) -> dict[BucketKey, int]:
        with self._tracer.span(
            "statmigrate.source.count_by_day_and_type", self._span_attributes("aggregate")
        ):
            try:
                response = await self._client.search(
                    index=self._index,
                    size=0,
                    query=_window_query(start, end, event_type),
                    aggs={
                        "per_day": {
                            "date_histogram": {
                                "field": CREATED_AT_FIELD,
                                "calendar_interval": "day",
                                "format": "yyyy-MM-dd",
                                "time_zone": "UTC",
                            },
                            "aggs": {"per_type": {"terms": {"field": TYPE_FIELD, "size": 20}}},
                        }
                    },
                )
            except STORE_ERRORS as e:
                raise SourceStoreError("aggregate", self._index, str(e)) from e

            counts: dict[BucketKey, int] = {}
            for day_bucket in _body(response)["aggregations"]["per_day"]["buckets"]:
                day = str(day_bucket["key_as_string"])[:10]
                for type_bucket in day_bucket["per_type"]["buckets"]:
                    counts[(day, str(type_bucket["key"]))] = int(type_bucket["doc_count"])
            return counts

    async def sample_ids(
        self,
        start: datetime,
        end: datetime,
        size: int,
        event_type: EventType | None = None,
    ) -> list[str]:
        with self._tracer.span("statmigrate.source.sample_ids", self._span_attributes("search")):
            try:
                response = await self._client.search(
                    index=self._index,
                    size=size,
                    source=False,
                    query={
                        "function_score": {
                            "query": _window_query(start, end, event_type),
                            "random_score": {},
                        }
                    },
                )
            except STORE_ERRORS as e:
                raise SourceStoreError("search", self._index, str(e)) from e
            return [str(hit["_id"]) for hit in _body(response)["hits"]["hits"]]


__all__ = [
    "ElasticsearchSourceStore",
    "build_scroll_query",
]
