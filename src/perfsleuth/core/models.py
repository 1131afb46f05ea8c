"""Core domain models for performance observability data."""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType


class Unit(str, Enum):
    """Unit of a recorded metric value."""

    MILLISECONDS = "ms"
    SECONDS = "s"
    PERCENT = "%"
    COUNT = "count"
    BYTES = "bytes"
    PER_SECOND = "req/s"


class Severity(IntEnum):
    """Severity of a finding or recommendation. Higher is worse."""

    INFO = 1
    WARNING = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: "str | Severity") -> "Severity":
        """Parse a severity from its name (case-insensitive)."""
        if isinstance(value, Severity):
            return value
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown severity: {value!r}") from None


class FindingKind(str, Enum):
    """Kind of anomaly detected by the analysis engine."""

    THRESHOLD_BREACH = "threshold_breach"
    TREND_DEGRADATION = "trend_degradation"
    VOLUME_ANOMALY = "volume_anomaly"


class SpanStatus(str, Enum):
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


class SpanKind(str, Enum):
    HTTP_REQUEST = "http_request"
    DB_QUERY = "db_query"
    RENDER = "render"
    FUNCTION_CALL = "function_call"
    CUSTOM = "custom"


class TraceState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class Timestamp:
    """A wall-clock and monotonic clock reading taken together.

    Attributes:
        wall: Unix timestamp in seconds. Used for windowing and display.
        monotonic: Monotonic clock reading in seconds. Used for durations.
    """

    wall: float
    monotonic: float

    @classmethod
    def now(cls) -> "Timestamp":
        return cls(wall=time.time(), monotonic=time.monotonic())

    @classmethod
    def at(cls, wall: float) -> "Timestamp":
        """Build a timestamp from a wall-clock value alone (replays, tests)."""
        return cls(wall=wall, monotonic=wall)


@dataclass(frozen=True, order=True)
class MetricKey:
    """Identity of a metric series: the component and the metric name."""

    component: str
    metric: str

    def __str__(self) -> str:
        return f"{self.component}/{self.metric}"


@dataclass(frozen=True)
class MetricSample:
    """A single metric measurement from an instrumented component.

    Attributes:
        component: Producing component (e.g., "database").
        metric: Metric name (e.g., "query_time").
        value: The measured value.
        unit: Unit of the value.
        timestamp: When the value was measured.
        threshold: Optional alerting threshold for this metric.
        target: Optional target value the metric should stay near.
    """

    component: str
    metric: str
    value: float
    unit: Unit
    timestamp: Timestamp
    threshold: float | None = None
    target: float | None = None

    @property
    def key(self) -> MetricKey:
        return MetricKey(self.component, self.metric)


@dataclass(frozen=True)
class WindowStats:
    """Rolling statistics over one trailing window of a metric series.

    A window with no samples has ``count == 0`` and zero-valued statistics.
    ``threshold``, ``target`` and ``unit`` are copied from the most recent
    sample in the window.
    """

    key: MetricKey
    window_start: float
    window_end: float
    count: int
    mean: float
    p95: float
    min: float
    max: float
    slope: float
    latest: float | None = None
    threshold: float | None = None
    target: float | None = None
    unit: Unit | None = None

    @classmethod
    def empty(
        cls, key: MetricKey, window_start: float, window_end: float
    ) -> "WindowStats":
        return cls(
            key=key,
            window_start=window_start,
            window_end=window_end,
            count=0,
            mean=0.0,
            p95=0.0,
            min=0.0,
            max=0.0,
            slope=0.0,
        )

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    @property
    def duration(self) -> float:
        return self.window_end - self.window_start


@dataclass(frozen=True)
class Finding:
    """A detected, currently-open anomaly condition on a metric series."""

    id: str
    key: MetricKey
    kind: FindingKind
    severity: Severity
    observed_value: float
    threshold: float | None
    first_seen: float
    last_seen: float


@dataclass(frozen=True)
class Recommendation:
    """A remediation suggestion derived from one or more findings."""

    id: str
    finding_ids: frozenset[str]
    title: str
    rationale: str
    severity: Severity
    created_at: float
    suppress_until: float
    component: str
    category: str = "backend"
    actions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Span:
    """One timed operation inside a trace.

    Times are Unix timestamps in seconds. ``end_time`` is None while the
    operation is still running.
    """

    trace_id: str
    span_id: str
    component: str
    operation: str
    start_time: float
    end_time: float | None = None
    parent_span_id: str | None = None
    status: SpanStatus = SpanStatus.PENDING
    kind: SpanKind = SpanKind.CUSTOM
    attributes: Mapping[str, str | int | float | bool] = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        return self.parent_span_id is None

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000


@dataclass(frozen=True)
class Trace:
    """Read-only copy of a reconstructed trace."""

    trace_id: str
    spans: Mapping[str, Span]
    state: TraceState
    last_activity: float
    started_at: float
    finished_at: float | None = None
    root_span_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.spans, MappingProxyType):
            object.__setattr__(self, "spans", MappingProxyType(dict(self.spans)))

    @property
    def incomplete(self) -> bool:
        return self.state is TraceState.ABANDONED

    @property
    def duration_ms(self) -> float | None:
        if self.root_span_id is None:
            return None
        root = self.spans.get(self.root_span_id)
        return root.duration_ms if root is not None else None

    @property
    def components(self) -> frozenset[str]:
        return frozenset(span.component for span in self.spans.values())


@dataclass(frozen=True)
class DashboardSnapshot:
    """Immutable point-in-time summary broadcast to dashboard clients."""

    timestamp: float
    window_stats: tuple[WindowStats, ...] = ()
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[Recommendation, ...] = ()
    recent_traces: tuple[Trace, ...] = ()
