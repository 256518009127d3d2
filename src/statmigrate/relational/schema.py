"""
Relational tables touched by the migration.

The production schema is owned by the platform's application; these
SQLAlchemy Core definitions describe the columns the migration reads and
writes so that statements are built once for every dialect. Tests and
local runs create them with ``metadata.create_all``.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects import postgresql

from statmigrate.models import EventType

metadata = MetaData()

Tags = JSON().with_variant(postgresql.ARRAY(Text), "postgresql")


# =============================================================================
# Reference tables
# =============================================================================

partner = Table(
    "partner",
    metadata,
    Column("id", String, primary_key=True),
    Column("old_id", String, unique=True, index=True),
    Column("name", String),
)

mission = Table(
    "mission",
    metadata,
    Column("id", String, primary_key=True),
    Column("old_id", String, index=True),
    Column("client_id", String, index=True),
    Column("partner_id", String, ForeignKey("partner.id")),
)

campaign = Table(
    "campaign",
    metadata,
    Column("id", String, primary_key=True),
    Column("old_id", String, unique=True, index=True),
)

widget = Table(
    "widget",
    metadata,
    Column("id", String, primary_key=True),
    Column("old_id", String, unique=True, index=True),
)


# =============================================================================
# General event table
# =============================================================================

stat_event = Table(
    "stat_event",
    metadata,
    Column("id", String, primary_key=True),
    Column("type", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("click_user", String),
    Column("click_id", String),
    Column("request_id", String),
    Column("origin", String, nullable=False, default=""),
    Column("referer", String, nullable=False, default=""),
    Column("user_agent", String, nullable=False, default=""),
    Column("host", String, nullable=False, default=""),
    Column("user", String),
    Column("is_bot", Boolean, nullable=False, default=False),
    Column("is_human", Boolean, nullable=False, default=False),
    Column("source", String, nullable=False),
    Column("source_id", String, nullable=False, default=""),
    Column("source_name", String, nullable=False, default=""),
    Column("status", String, nullable=False),
    Column("from_publisher_id", String, nullable=False, default=""),
    Column("from_publisher_name", String, nullable=False, default=""),
    Column("to_publisher_id", String, nullable=False, default=""),
    Column("to_publisher_name", String, nullable=False, default=""),
    Column("mission_id", String),
    Column("mission_client_id", String),
    Column("mission_domain", String),
    Column("mission_title", String),
    Column("mission_postal_code", String),
    Column("mission_department_name", String),
    Column("mission_organization_id", String),
    Column("mission_organization_name", String),
    Column("mission_organization_client_id", String),
    Column("tag", String),
    Column("tags", Tags),
)


# =============================================================================
# Analytics tables
# =============================================================================


def _partner_columns() -> list[Column]:
    return [
        Column("id", String, primary_key=True),
        Column("old_id", String, nullable=False, unique=True),
        Column("created_at", DateTime(timezone=True), nullable=False, index=True),
        Column("mission_id", String),
        Column("mission_old_id", String),
        Column("source", String, nullable=False),
        Column("source_id", String),
        Column("campaign_id", String),
        Column("widget_id", String),
        Column("to_partner_id", String, nullable=False),
        Column("from_partner_id", String, nullable=False),
    ]


impression = Table(
    "impression",
    metadata,
    *_partner_columns(),
    Column("host", String),
)

click = Table(
    "click",
    metadata,
    *_partner_columns(),
    Column("url_origin", String),
    Column("tag", String),
    Column("tags", Tags),
    Column("is_bot", Boolean),
    Column("is_human", Boolean),
    # Set when the bot/human flags are synced; NULL for rows never synced
    Column("updated_at", DateTime(timezone=True)),
)

apply = Table(
    "apply",
    metadata,
    *_partner_columns(),
    Column("old_view_id", String),
    Column("host", String),
    Column("tag", String),
    Column("click_id", String),
    Column("status", String),
)

account = Table(
    "account",
    metadata,
    *_partner_columns(),
    Column("old_view_id", String),
    Column("host", String),
    Column("tag", String),
    Column("click_id", String),
)

ANALYTICS_TABLES: dict[EventType, Table] = {
    EventType.PRINT: impression,
    EventType.CLICK: click,
    EventType.APPLY: apply,
    EventType.ACCOUNT: account,
}


__all__ = [
    "metadata",
    "partner",
    "mission",
    "campaign",
    "widget",
    "stat_event",
    "impression",
    "click",
    "apply",
    "account",
    "ANALYTICS_TABLES",
]
