"""
Observability utilities for statmigrate.

Provides the composition-based tracer and the standard span attribute
names used across the migration engine.

Example:
    >>> from statmigrate.observability import create_tracer
    >>>
    >>> class MyExporter:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from statmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_EVENT_TYPE,
    ATTR_EXPORT_STATUS,
    ATTR_JOB_NAME,
    ATTR_REFERENCE_KIND,
    ATTR_ROWS_CREATED,
    ATTR_SAMPLE_SIZE,
    ATTR_WATERMARK,
    ATTR_WINDOW_END,
    ATTR_WINDOW_START,
)
from statmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_SIZE",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_EVENT_TYPE",
    "ATTR_EXPORT_STATUS",
    "ATTR_JOB_NAME",
    "ATTR_REFERENCE_KIND",
    "ATTR_ROWS_CREATED",
    "ATTR_SAMPLE_SIZE",
    "ATTR_WATERMARK",
    "ATTR_WINDOW_END",
    "ATTR_WINDOW_START",
]
