"""
Standard span attributes for statmigrate.

Attribute constants shared by every component so that spans from the
exporter, writer, annotator and reconciliation tool can be filtered on the
same keys. Database attributes follow OpenTelemetry semantic conventions.

Example:
    >>> from statmigrate.observability.attributes import ATTR_JOB_NAME, ATTR_BATCH_SIZE
    >>>
    >>> with tracer.span(
    ...     "statmigrate.writer.write",
    ...     {ATTR_JOB_NAME: "stat_event_es_to_pg", ATTR_BATCH_SIZE: 1000},
    ... ):
    ...     pass
"""

# =============================================================================
# Job Attributes
# =============================================================================

ATTR_JOB_NAME = "statmigrate.job.name"
"""Migration job name, also the cursor key (string)."""

ATTR_BATCH_SIZE = "statmigrate.batch.size"
"""Number of records in a batch (integer)."""

ATTR_ROWS_CREATED = "statmigrate.rows.created"
"""Rows actually inserted by a batch, duplicates excluded (integer)."""

ATTR_EVENT_TYPE = "statmigrate.event.type"
"""Activity event type: print, click, apply or account (string)."""

ATTR_EXPORT_STATUS = "statmigrate.export.status"
"""Export status marker written back to the source store (string)."""

ATTR_WATERMARK = "statmigrate.cursor.watermark"
"""ISO-8601 watermark of a cursor (string)."""

# =============================================================================
# Reference Attributes
# =============================================================================

ATTR_REFERENCE_KIND = "statmigrate.reference.kind"
"""Kind of legacy reference being resolved: partner, mission, campaign, widget, click."""

# =============================================================================
# Reconciliation Attributes
# =============================================================================

ATTR_WINDOW_START = "statmigrate.window.start"
"""Inclusive start of a reconciliation window, ISO-8601 (string)."""

ATTR_WINDOW_END = "statmigrate.window.end"
"""Exclusive end of a reconciliation window, ISO-8601 (string)."""

ATTR_SAMPLE_SIZE = "statmigrate.sample.size"
"""Number of ids sampled by a spot check (integer)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system: postgresql, sqlite, elasticsearch (string)."""

ATTR_DB_NAME = "db.name"
"""Database, table or index name (string)."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation: INSERT, SELECT, scroll, bulk (string)."""


__all__ = [
    "ATTR_JOB_NAME",
    "ATTR_BATCH_SIZE",
    "ATTR_ROWS_CREATED",
    "ATTR_EVENT_TYPE",
    "ATTR_EXPORT_STATUS",
    "ATTR_WATERMARK",
    "ATTR_REFERENCE_KIND",
    "ATTR_WINDOW_START",
    "ATTR_WINDOW_END",
    "ATTR_SAMPLE_SIZE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
]
