"""
Tracer protocol and implementations for composition-based tracing.

Every component of the migration engine receives a tracer as a dependency
instead of talking to OpenTelemetry directly. Jobs built for operators run
with tracing switched off unless configured, tests inject a MockTracer to
assert on span names.

Example:
    >>> from statmigrate.observability import create_tracer, NullTracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>>
    >>> class MyWriter:
    ...     def __init__(self, tracer: Tracer | None = None):
    ...         self._tracer = tracer or NullTracer()
    ...
    ...     async def write(self, rows: list) -> None:
    ...         with self._tracer.span("my_writer.write", {"batch.size": len(rows)}):
    ...             await self._do_write(rows)
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span


@runtime_checkable
class Tracer(Protocol):
    """
    What migration components need from a tracer.

    NullTracer (tracing off), OpenTelemetryTracer (production) and
    MockTracer (tests) all satisfy it.
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """Open a span named e.g. "statmigrate.writer.write"; yields the span or None."""
        ...

    @property
    def enabled(self) -> bool:
        """Whether spans are recorded, so callers can skip computing attributes."""
        ...


class NullTracer:
    """Tracer used when ENABLE_TRACING is off; spans cost nothing."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Spans go to whatever TracerProvider the process has installed; with
    none installed, the API hands out non-recording spans.

    Args:
        tracer_name: Name for the tracer (typically __name__)
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            attributes=attributes or {},
        )

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Records every span opened, for assertions in tests.

    Example:
        >>> tracer = MockTracer()
        >>> writer = IdempotentBatchWriter(engine, stat_event, "id", tracer=tracer)
        >>> await writer.write(rows)
        >>> tracer.span_names
        ['statmigrate.writer.write']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        """Enabled, so components compute the attributes tests assert on."""
        return True

    @property
    def span_names(self) -> list[str]:
        """Recorded span names, in opening order."""
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        """Forget recorded spans."""
        self.spans.clear()


def create_tracer(
    name: str,
    enable_tracing: bool = True,
) -> Tracer:
    """
    OpenTelemetryTracer when tracing is enabled, NullTracer otherwise.

    Components call it as ``tracer or create_tracer(__name__, enable_tracing)``
    so an injected tracer always wins.
    """
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
]
