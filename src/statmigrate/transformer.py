"""
Document to row transformation.

DocumentTransformer maps any source document to a ``stat_event`` row. It
is total: dirty, missing or unexpected values are replaced by defaults and
it never raises.

PartnerEventTransformer maps a document to a row of one analytics table,
resolving legacy references on the way. A document whose sending or
receiving publisher cannot be resolved yields an Unresolvable value
instead of a row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar
from urllib.parse import urlsplit

from statmigrate.models import (
    AccountRow,
    ApplyRow,
    ClickRow,
    EventSource,
    EventStatus,
    EventType,
    ImpressionRow,
    PartnerRow,
    SourceEvent,
    StatEventRow,
    Unresolvable,
    parse_timestamp,
)
from statmigrate.references import ReferenceResolver

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FOLDED_SOURCES = frozenset({EventSource.PUBLISHER, EventSource.JSTAG})
_STATUS_VALUES = frozenset(status.value for status in EventStatus)


def _now() -> datetime:
    return datetime.now(UTC)


def safe_string(value: Any, default: str = "") -> str:
    return default if value is None else str(value)


def safe_nullable_string(value: Any) -> str | None:
    return None if value is None else str(value)


def safe_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def safe_enum(value: Any, enum_type: type[E], default: E) -> E:
    if isinstance(value, str):
        try:
            return enum_type(value)
        except ValueError:
            return default
    return default


def safe_tags(value: Any) -> list[str]:
    if not isinstance(value, list | tuple):
        return []
    return [str(tag) for tag in value if tag is not None]


def normalize_source(value: Any) -> EventSource:
    """Coerce a channel, folding publisher and jstag into api."""
    source = safe_enum(value, EventSource, EventSource.API)
    return EventSource.API if source in _FOLDED_SOURCES else source


def valid_url(value: Any) -> str | None:
    """Return the value when it is an absolute URL, None otherwise."""
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return candidate


class DocumentTransformer:
    """
    Maps source documents to ``stat_event`` rows.

    Args:
        clock: Returns the timestamp used when a document's creation time
            cannot be parsed

    Example:
        >>> row = DocumentTransformer().transform(SourceEvent(type="unknown-type"))
        >>> row.type
        <EventType.CLICK: 'click'>
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _now

    def transform(self, doc: SourceEvent) -> StatEventRow:
        created_at = parse_timestamp(doc.created_at)
        if created_at is None:
            created_at = self._clock()

        return StatEventRow(
            id=doc.source_key or None,
            type=safe_enum(doc.type, EventType, EventType.CLICK),
            created_at=created_at,
            click_user=safe_nullable_string(doc.click_user),
            click_id=safe_nullable_string(doc.click_id),
            request_id=safe_nullable_string(doc.request_id),
            origin=safe_string(doc.origin),
            referer=safe_string(doc.referer),
            user_agent=safe_string(doc.user_agent),
            host=safe_string(doc.host),
            user=safe_nullable_string(doc.user),
            is_bot=safe_bool(doc.is_bot),
            is_human=safe_bool(doc.is_human),
            source=normalize_source(doc.source),
            source_id=safe_string(doc.source_id),
            source_name=safe_string(doc.source_name),
            status=safe_enum(doc.status, EventStatus, EventStatus.PENDING),
            from_publisher_id=safe_string(doc.from_publisher_id),
            from_publisher_name=safe_string(doc.from_publisher_name),
            to_publisher_id=safe_string(doc.to_publisher_id),
            to_publisher_name=safe_string(doc.to_publisher_name),
            mission_id=safe_nullable_string(doc.mission_id),
            mission_client_id=safe_nullable_string(doc.mission_client_id),
            mission_domain=safe_nullable_string(doc.mission_domain),
            mission_title=safe_nullable_string(doc.mission_title),
            mission_postal_code=safe_nullable_string(doc.mission_postal_code),
            mission_department_name=safe_nullable_string(doc.mission_department_name),
            mission_organization_id=safe_nullable_string(doc.mission_organization_id),
            mission_organization_name=safe_nullable_string(doc.mission_organization_name),
            mission_organization_client_id=safe_nullable_string(
                doc.mission_organization_client_id
            ),
            tag=safe_nullable_string(doc.tag),
            tags=safe_tags(doc.tags),
        )

    def transform_many(self, docs: Sequence[SourceEvent]) -> list[StatEventRow]:
        return [self.transform(doc) for doc in docs]


class PartnerEventTransformer:
    """
    Maps source documents of one event type to analytics table rows.

    Call ``prepare`` with each batch before transforming its documents so
    the missions (and clicks) the batch references are loaded in bulk.

    Args:
        resolver: Preloaded reference resolver
        event_type: Event type handled (selects the target row model)
        clock: Fallback timestamp source for unparsable creation times
    """

    def __init__(
        self,
        resolver: ReferenceResolver,
        event_type: EventType,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._resolver = resolver
        self._event_type = event_type
        self._clock = clock or _now

    @property
    def event_type(self) -> EventType:
        return self._event_type

    async def prepare(self, docs: Sequence[SourceEvent]) -> None:
        """Bulk-load the references a batch points at."""
        if self._event_type is EventType.CLICK:
            await self._resolver.load_legacy_missions(doc.mission_id for doc in docs)
        else:
            await self._resolver.load_missions(doc.mission_client_id for doc in docs)
        if self._event_type in (EventType.APPLY, EventType.ACCOUNT):
            await self._resolver.load_clicks(doc.click_id for doc in docs)

    async def transform(self, doc: SourceEvent) -> PartnerRow | Unresolvable:
        source_key = doc.source_key

        from_partner_id = self._resolver.partner(doc.from_publisher_id)
        if from_partner_id is None:
            return self._unresolvable(source_key, "fromPublisherId", doc.from_publisher_id)
        to_partner_id = self._resolver.partner(doc.to_publisher_id)
        if to_partner_id is None:
            return self._unresolvable(source_key, "toPublisherId", doc.to_publisher_id)

        mission_id = await self._resolver.resolve_mission(
            doc.mission_client_id,
            doc.to_publisher_id,
            legacy_id=doc.mission_id,
            prefer_legacy=self._event_type is EventType.CLICK,
        )
        if mission_id is None and (doc.mission_id or doc.mission_client_id):
            logger.info(
                "[%s] Mission %s not found for doc %s",
                self._event_type.value,
                doc.mission_id or doc.mission_client_id,
                source_key,
                extra={
                    "source_id": source_key,
                    "reference": "missionId",
                    "mission_id": safe_nullable_string(doc.mission_id),
                    "mission_client_id": safe_nullable_string(doc.mission_client_id),
                },
            )

        channel = safe_enum(doc.source, EventSource, EventSource.API)
        source_id: str | None = None
        if channel is EventSource.WIDGET:
            source_id = self._resolver.widget(doc.source_id)
        elif channel is EventSource.CAMPAIGN:
            source_id = self._resolver.campaign(doc.source_id)
        elif channel is EventSource.PUBLISHER:
            source_id = self._resolver.partner(doc.source_id)

        created_at = parse_timestamp(doc.created_at)
        if created_at is None:
            created_at = self._clock()

        common: dict[str, Any] = {
            "old_id": source_key,
            "created_at": created_at,
            "mission_id": mission_id,
            "mission_old_id": safe_nullable_string(doc.mission_id) or None,
            "source": normalize_source(doc.source),
            "source_id": source_id,
            "campaign_id": source_id if channel is EventSource.CAMPAIGN else None,
            "widget_id": source_id if channel is EventSource.WIDGET else None,
            "to_partner_id": to_partner_id,
            "from_partner_id": from_partner_id,
        }

        if self._event_type is EventType.PRINT:
            return ImpressionRow(**common, host=safe_nullable_string(doc.host))

        if self._event_type is EventType.CLICK:
            return ClickRow(
                **common,
                url_origin=valid_url(doc.referer),
                tag=safe_nullable_string(doc.tag),
                tags=safe_tags(doc.tags),
                is_bot=True if safe_bool(doc.is_bot) else None,
                is_human=True if safe_bool(doc.is_human) else None,
            )

        click_id = await self._resolver.resolve_click(doc.click_id)
        extras: dict[str, Any] = {
            "old_view_id": safe_nullable_string(doc.click_id),
            "host": safe_nullable_string(doc.host),
            "tag": safe_nullable_string(doc.tag),
            "click_id": click_id,
        }
        if self._event_type is EventType.APPLY:
            status = (
                safe_enum(doc.status, EventStatus, EventStatus.PENDING)
                if isinstance(doc.status, str) and doc.status in _STATUS_VALUES
                else None
            )
            return ApplyRow(**common, **extras, status=status)
        return AccountRow(**common, **extras)

    def _unresolvable(self, source_key: str, reference: str, value: Any) -> Unresolvable:
        missing = safe_nullable_string(value)
        logger.info(
            "[%s] Partner %s not found for doc %s",
            self._event_type.value,
            missing,
            source_key,
            extra={"source_id": source_key, "reference": reference, "value": missing},
        )
        return Unresolvable(source_id=source_key, reference=reference, value=missing)


__all__ = [
    "DocumentTransformer",
    "PartnerEventTransformer",
    "normalize_source",
    "safe_bool",
    "safe_enum",
    "safe_nullable_string",
    "safe_string",
    "safe_tags",
    "valid_url",
]
