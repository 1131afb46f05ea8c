"""Helper functions for producers creating MetricSample and Span objects."""

import time
import uuid
from dataclasses import replace

from perfsleuth.core.models import (
    MetricSample,
    Span,
    SpanKind,
    SpanStatus,
    Timestamp,
    Unit,
)


def _sample(
    component: str,
    metric: str,
    value: float,
    unit: Unit,
    threshold: float | None,
    target: float | None,
) -> MetricSample:
    return MetricSample(
        component=component,
        metric=metric,
        value=float(value),
        unit=unit,
        timestamp=Timestamp.now(),
        threshold=threshold,
        target=target,
    )


def timing(
    component: str,
    metric: str,
    milliseconds: float,
    threshold: float | None = None,
    target: float | None = None,
) -> MetricSample:
    """Create a duration sample in milliseconds.

    Args:
        component: Producing component (e.g., "database")
        metric: Metric name (e.g., "query_time")
        milliseconds: Measured duration
        threshold: Optional alerting threshold
        target: Optional target value

    Returns:
        MetricSample with current timestamp
    """
    return _sample(
        component, metric, milliseconds, Unit.MILLISECONDS, threshold, target
    )


def percent(
    component: str,
    metric: str,
    value: float,
    threshold: float | None = None,
    target: float | None = None,
) -> MetricSample:
    """Create a percentage sample (e.g., memory_usage, error_rate)."""
    return _sample(component, metric, value, Unit.PERCENT, threshold, target)


def count(
    component: str,
    metric: str,
    value: float = 1.0,
    threshold: float | None = None,
) -> MetricSample:
    """Create a count sample. Defaults to a single occurrence."""
    return _sample(component, metric, value, Unit.COUNT, threshold, None)


def byte_size(
    component: str,
    metric: str,
    value: float,
    threshold: float | None = None,
) -> MetricSample:
    """Create a size sample in bytes."""
    return _sample(component, metric, value, Unit.BYTES, threshold, None)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def new_span_id() -> str:
    return uuid.uuid4().hex[:16]


def start_span(
    component: str,
    operation: str,
    trace_id: str | None = None,
    parent: Span | None = None,
    kind: SpanKind = SpanKind.CUSTOM,
    **attributes: str | int | float | bool,
) -> Span:
    """Create an open span, starting a new trace unless one is given.

    Args:
        component: Component performing the operation
        operation: Operation name (e.g., "GET /users")
        trace_id: Trace to join (default: parent's trace, else a new trace)
        parent: Parent span, if any
        kind: Span kind
        **attributes: Additional structured fields

    Returns:
        Span with ``start_time`` set to now and no ``end_time``
    """
    if trace_id is None:
        trace_id = parent.trace_id if parent is not None else new_trace_id()
    return Span(
        trace_id=trace_id,
        span_id=new_span_id(),
        parent_span_id=parent.span_id if parent is not None else None,
        component=component,
        operation=operation,
        start_time=time.time(),
        kind=kind,
        attributes=dict(attributes),
    )


def end_span(span: Span, status: SpanStatus = SpanStatus.OK) -> Span:
    """Return a copy of ``span`` ended now with the given status."""
    return replace(span, end_time=time.time(), status=status)
