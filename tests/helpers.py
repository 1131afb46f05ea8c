"""Builders and a manual clock shared by the test modules."""

from perfsleuth.core.models import (
    MetricKey,
    MetricSample,
    Span,
    Timestamp,
    Unit,
    WindowStats,
)

NOW = 1_702_300_000.0


class ManualClock:
    """Controllable time source passed wherever a ``clock`` is accepted."""

    def __init__(self, start: float = NOW) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_sample(
    component: str = "api",
    metric: str = "response_time",
    value: float = 100.0,
    at: float = NOW,
    unit: Unit = Unit.MILLISECONDS,
    threshold: float | None = None,
    target: float | None = None,
) -> MetricSample:
    return MetricSample(
        component=component,
        metric=metric,
        value=value,
        unit=unit,
        timestamp=Timestamp.at(at),
        threshold=threshold,
        target=target,
    )


def make_span(
    span_id: str,
    trace_id: str = "trace-1",
    parent: str | None = None,
    component: str = "api",
    operation: str = "GET /users",
    start: float = NOW,
    end: float | None = None,
) -> Span:
    return Span(
        trace_id=trace_id,
        span_id=span_id,
        parent_span_id=parent,
        component=component,
        operation=operation,
        start_time=start,
        end_time=end,
    )


def make_stats(
    component: str = "api",
    metric: str = "response_time",
    mean: float = 100.0,
    count: int = 10,
    threshold: float | None = None,
    slope: float = 0.0,
    latest: float | None = None,
    window: float = 60.0,
    end: float = NOW,
) -> WindowStats:
    return WindowStats(
        key=MetricKey(component, metric),
        window_start=end - window,
        window_end=end,
        count=count,
        mean=mean,
        p95=mean,
        min=mean,
        max=mean,
        slope=slope,
        latest=mean if latest is None else latest,
        threshold=threshold,
    )


