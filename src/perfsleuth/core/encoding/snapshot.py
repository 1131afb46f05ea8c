"""JSON encoding of dashboard snapshots and their parts."""

import json
from collections.abc import Iterable
from typing import Any

from perfsleuth.core.models import (
    DashboardSnapshot,
    Finding,
    Recommendation,
    Span,
    Trace,
    WindowStats,
)


def window_stats_to_dict(stats: WindowStats) -> dict[str, Any]:
    return {
        "component": stats.key.component,
        "metric": stats.key.metric,
        "window_start": stats.window_start,
        "window_end": stats.window_end,
        "count": stats.count,
        "mean": stats.mean,
        "p95": stats.p95,
        "min": stats.min,
        "max": stats.max,
        "slope": stats.slope,
        "latest": stats.latest,
        "threshold": stats.threshold,
        "target": stats.target,
        "unit": stats.unit.value if stats.unit is not None else None,
    }


def finding_to_dict(finding: Finding) -> dict[str, Any]:
    return {
        "id": finding.id,
        "component": finding.key.component,
        "metric": finding.key.metric,
        "kind": finding.kind.value,
        "severity": finding.severity.label,
        "observed_value": finding.observed_value,
        "threshold": finding.threshold,
        "first_seen": finding.first_seen,
        "last_seen": finding.last_seen,
    }


def recommendation_to_dict(recommendation: Recommendation) -> dict[str, Any]:
    return {
        "id": recommendation.id,
        "finding_ids": sorted(recommendation.finding_ids),
        "title": recommendation.title,
        "rationale": recommendation.rationale,
        "severity": recommendation.severity.label,
        "component": recommendation.component,
        "category": recommendation.category,
        "actions": list(recommendation.actions),
        "created_at": recommendation.created_at,
        "suppress_until": recommendation.suppress_until,
    }


def span_to_dict(span: Span) -> dict[str, Any]:
    return {
        "span_id": span.span_id,
        "parent_span_id": span.parent_span_id,
        "component": span.component,
        "operation": span.operation,
        "kind": span.kind.value,
        "status": span.status.value,
        "start_time": span.start_time,
        "end_time": span.end_time,
        "duration_ms": span.duration_ms,
        "attributes": dict(span.attributes),
    }


def trace_to_dict(trace: Trace) -> dict[str, Any]:
    spans = sorted(trace.spans.values(), key=lambda s: (s.start_time, s.span_id))
    return {
        "trace_id": trace.trace_id,
        "state": trace.state.value,
        "incomplete": trace.incomplete,
        "root_span_id": trace.root_span_id,
        "started_at": trace.started_at,
        "finished_at": trace.finished_at,
        "last_activity": trace.last_activity,
        "duration_ms": trace.duration_ms,
        "spans": [span_to_dict(span) for span in spans],
    }


def snapshot_to_dict(snapshot: DashboardSnapshot) -> dict[str, Any]:
    return {
        "timestamp": snapshot.timestamp,
        "window_stats": [window_stats_to_dict(s) for s in snapshot.window_stats],
        "findings": [finding_to_dict(f) for f in snapshot.findings],
        "recommendations": [
            recommendation_to_dict(r) for r in snapshot.recommendations
        ],
        "recent_traces": [trace_to_dict(t) for t in snapshot.recent_traces],
    }


def encode_snapshot(snapshot: DashboardSnapshot) -> str:
    """Encode a snapshot as a compact JSON object."""
    return json.dumps(snapshot_to_dict(snapshot), separators=(",", ":"))


def encode_ndjson(objects: Iterable[dict[str, Any]]) -> str:
    """Encode dicts as newline-delimited JSON.

    Returns:
        NDJSON string with one JSON object per line.
        Empty string if there are no objects.
    """
    lines = [json.dumps(obj) for obj in objects]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"
