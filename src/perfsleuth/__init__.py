"""perfsleuth: in-process performance observability engine.

Collects metric samples and trace spans, aggregates them over sliding
windows, detects performance findings, ranks recommendations and pushes
dashboard snapshots to connected clients.
"""

import logging

from perfsleuth.adapters.broadcast import BroadcastHub, ClientChannel
from perfsleuth.adapters.storage import (
    InMemorySnapshotSink,
    SampleBuffer,
    SQLiteSnapshotSink,
)
from perfsleuth.core.config import (
    AggregationConfig,
    AnalysisConfig,
    BroadcastConfig,
    BufferConfig,
    EngineConfig,
    RecommendationConfig,
    TraceConfig,
)
from perfsleuth.core.errors import (
    ConfigurationError,
    ConnectionRejectedError,
    ErrorKind,
    IngestionError,
    InvalidSampleError,
    InvalidSpanError,
    PerfsleuthError,
)
from perfsleuth.core.models import (
    DashboardSnapshot,
    Finding,
    FindingKind,
    MetricKey,
    MetricSample,
    Recommendation,
    Severity,
    Span,
    SpanKind,
    SpanStatus,
    Timestamp,
    Trace,
    TraceState,
    Unit,
    WindowStats,
)
from perfsleuth.core.samples import (
    byte_size,
    count,
    end_span,
    new_span_id,
    new_trace_id,
    percent,
    start_span,
    timing,
)
from perfsleuth.runtime.engine import Engine

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AggregationConfig",
    "AnalysisConfig",
    "BroadcastConfig",
    "BroadcastHub",
    "BufferConfig",
    "ClientChannel",
    "ConfigurationError",
    "ConnectionRejectedError",
    "DashboardSnapshot",
    "Engine",
    "EngineConfig",
    "ErrorKind",
    "Finding",
    "FindingKind",
    "InMemorySnapshotSink",
    "IngestionError",
    "InvalidSampleError",
    "InvalidSpanError",
    "MetricKey",
    "MetricSample",
    "PerfsleuthError",
    "Recommendation",
    "RecommendationConfig",
    "SQLiteSnapshotSink",
    "SampleBuffer",
    "Severity",
    "Span",
    "SpanKind",
    "SpanStatus",
    "Timestamp",
    "Trace",
    "TraceConfig",
    "TraceState",
    "Unit",
    "WindowStats",
    "byte_size",
    "count",
    "end_span",
    "new_span_id",
    "new_trace_id",
    "percent",
    "start_span",
    "timing",
]
