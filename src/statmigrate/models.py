"""
Data model for the activity-event migration.

Source documents are modelled leniently: a SourceEvent never fails to build
from a raw search hit, every field accepts whatever the document holds and
coercion is left to the transformers. Target rows are strict, frozen
pydantic models whose field names match the relational columns.

Small run-scoped values (cursor state, batch outcomes, export outcomes) are
frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Kind of activity event recorded by the platform."""

    PRINT = "print"
    CLICK = "click"
    APPLY = "apply"
    ACCOUNT = "account"


class EventSource(str, Enum):
    """Channel through which the event was produced."""

    API = "api"
    WIDGET = "widget"
    CAMPAIGN = "campaign"
    SEO = "seo"
    JSTAG = "jstag"
    PUBLISHER = "publisher"


class EventStatus(str, Enum):
    """Moderation status of an apply or account event."""

    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    CANCEL = "CANCEL"
    CANCELED = "CANCELED"
    REFUSED = "REFUSED"
    CARRIED_OUT = "CARRIED_OUT"


class ExportStatus(str, Enum):
    """Marker written back to a source document after a partner export."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class SourceEvent(BaseModel):
    """
    An activity event as stored in the document store.

    Field names are snake case; the raw document uses camel case, which is
    accepted through aliases. Every field is untyped on purpose so that
    building a SourceEvent from a dirty document never raises.

    Attributes:
        id: Document id from the search hit (not part of the stored source)
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: Any = Field(default=None, alias="_id")
    type: Any = None
    created_at: Any = None
    click_user: Any = None
    click_id: Any = None
    request_id: Any = None
    origin: Any = None
    referer: Any = None
    user_agent: Any = None
    host: Any = None
    user: Any = None
    is_bot: Any = None
    is_human: Any = None
    source: Any = None
    source_id: Any = None
    source_name: Any = None
    status: Any = None
    from_publisher_id: Any = None
    from_publisher_name: Any = None
    to_publisher_id: Any = None
    to_publisher_name: Any = None
    mission_id: Any = None
    mission_client_id: Any = None
    mission_domain: Any = None
    mission_title: Any = None
    mission_postal_code: Any = None
    mission_department_name: Any = None
    mission_organization_id: Any = None
    mission_organization_name: Any = None
    mission_organization_client_id: Any = None
    tag: Any = None
    tags: Any = None
    export_to_pg_status: Any = None

    @classmethod
    def from_hit(cls, hit_id: Any, source: dict[str, Any] | None) -> SourceEvent:
        """
        Build an event from a search hit.

        Args:
            hit_id: The hit's document id (may be None)
            source: The hit's stored document

        Returns:
            SourceEvent carrying the hit id
        """
        data = dict(source or {})
        data.pop("_id", None)
        data.pop("id", None)
        return cls.model_validate({**data, "_id": hit_id})

    @property
    def source_key(self) -> str:
        """Document id as a string, empty when the hit had none."""
        return "" if self.id is None else str(self.id)


class StatEventRow(BaseModel):
    """Row of the general ``stat_event`` table."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    type: EventType
    created_at: datetime
    click_user: str | None = None
    click_id: str | None = None
    request_id: str | None = None
    origin: str = ""
    referer: str = ""
    user_agent: str = ""
    host: str = ""
    user: str | None = None
    is_bot: bool = False
    is_human: bool = False
    source: EventSource = EventSource.API
    source_id: str = ""
    source_name: str = ""
    status: EventStatus = EventStatus.PENDING
    from_publisher_id: str = ""
    from_publisher_name: str = ""
    to_publisher_id: str = ""
    to_publisher_name: str = ""
    mission_id: str | None = None
    mission_client_id: str | None = None
    mission_domain: str | None = None
    mission_title: str | None = None
    mission_postal_code: str | None = None
    mission_department_name: str | None = None
    mission_organization_id: str | None = None
    mission_organization_name: str | None = None
    mission_organization_client_id: str | None = None
    tag: str | None = None
    tags: list[str] = Field(default_factory=list)


class PartnerRow(BaseModel):
    """
    Columns shared by every analytics table.

    ``old_id`` holds the source document id and is the natural key.
    """

    model_config = ConfigDict(frozen=True)

    old_id: str
    created_at: datetime
    mission_id: str | None = None
    mission_old_id: str | None = None
    source: EventSource = EventSource.API
    source_id: str | None = None
    campaign_id: str | None = None
    widget_id: str | None = None
    to_partner_id: str
    from_partner_id: str


class ImpressionRow(PartnerRow):
    """Row of the ``impression`` table (print events)."""

    host: str | None = None


class ClickRow(PartnerRow):
    """Row of the ``click`` table."""

    url_origin: str | None = None
    tag: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_bot: bool | None = None
    is_human: bool | None = None


class AccountRow(PartnerRow):
    """Row of the ``account`` table."""

    old_view_id: str | None = None
    host: str | None = None
    tag: str | None = None
    click_id: str | None = None


class ApplyRow(AccountRow):
    """Row of the ``apply`` table."""

    status: EventStatus | None = None


@dataclass(frozen=True)
class CursorState:
    """
    Resumable watermark of a job.

    Attributes:
        last_created_at: Creation timestamp of the last committed record
    """

    last_created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the stored layout ``{"lastCreatedAt": iso}``."""
        return {
            "lastCreatedAt": (
                self.last_created_at.isoformat() if self.last_created_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CursorState:
        """Deserialize a stored state; unparsable watermarks become None."""
        raw = (data or {}).get("lastCreatedAt")
        return cls(last_created_at=parse_timestamp(raw))


@dataclass(frozen=True)
class FailedRecord:
    """A source record that could not be exported, with the reason."""

    source_id: str
    reason: str


@dataclass(frozen=True)
class BatchOutcome:
    """
    Result of writing one batch.

    Attributes:
        created: Rows actually inserted (duplicates excluded)
        succeeded: Source ids persisted or already present
        failed: Source ids that were not persisted, with reasons
    """

    created: int = 0
    succeeded: tuple[str, ...] = ()
    failed: tuple[FailedRecord, ...] = ()

    @property
    def failed_ids(self) -> list[str]:
        return [record.source_id for record in self.failed]

    def merge(self, other: BatchOutcome) -> BatchOutcome:
        """Combine two outcomes of the same batch."""
        return BatchOutcome(
            created=self.created + other.created,
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
        )


@dataclass(frozen=True)
class ExportSuccess:
    """A record was persisted in the target store."""

    source_id: str

    @property
    def status(self) -> ExportStatus:
        return ExportStatus.SUCCESS


@dataclass(frozen=True)
class ExportFailure:
    """A record could not be persisted."""

    source_id: str
    reason: str

    @property
    def status(self) -> ExportStatus:
        return ExportStatus.FAILURE


ExportOutcome = ExportSuccess | ExportFailure


@dataclass(frozen=True)
class Unresolvable:
    """
    Returned by a partner transformer when a required reference is missing.

    Attributes:
        source_id: Source document id
        reference: Which reference could not be resolved (e.g. "fromPublisherId")
        value: The legacy value that did not resolve
    """

    source_id: str
    reference: str
    value: str | None

    @property
    def reason(self) -> str:
        return f"{self.reference} {self.value!r} not found"


@dataclass
class ReferenceMap:
    """
    Run-scoped legacy id to primary key maps.

    ``missions`` is keyed by ``"{client_id}-{partner_old_id}"``,
    ``legacy_missions`` by the mission's own legacy id.
    """

    partners: dict[str, str] = field(default_factory=dict)
    missions: dict[str, str] = field(default_factory=dict)
    legacy_missions: dict[str, str] = field(default_factory=dict)
    campaigns: dict[str, str] = field(default_factory=dict)
    widgets: dict[str, str] = field(default_factory=dict)
    clicks: dict[str, str] = field(default_factory=dict)


def mission_key(client_id: Any, publisher_id: Any) -> str:
    """Composite key of a mission within a publisher's catalogue."""
    return f"{client_id}-{publisher_id}"


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a stored timestamp into an aware datetime.

    Accepts datetimes, ISO-8601 strings (with or without a trailing ``Z``)
    and epoch milliseconds. Naive values are taken as UTC and every result
    is converted to UTC.

    Returns:
        The parsed datetime, or None when the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    try:
        return parsed.astimezone(UTC)
    except OverflowError:
        # The offset moved a value at the edge of the calendar out of range
        return None


__all__ = [
    "EventType",
    "EventSource",
    "EventStatus",
    "ExportStatus",
    "SourceEvent",
    "StatEventRow",
    "PartnerRow",
    "ImpressionRow",
    "ClickRow",
    "ApplyRow",
    "AccountRow",
    "CursorState",
    "FailedRecord",
    "BatchOutcome",
    "ExportSuccess",
    "ExportFailure",
    "ExportOutcome",
    "Unresolvable",
    "ReferenceMap",
    "mission_key",
    "parse_timestamp",
]
