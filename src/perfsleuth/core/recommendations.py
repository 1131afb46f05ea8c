"""Turns open findings into ranked, cooldown-suppressed recommendations."""

import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from perfsleuth.core.config import RecommendationConfig
from perfsleuth.core.logs import get_logger
from perfsleuth.core.models import (
    Finding,
    FindingKind,
    Recommendation,
    Severity,
    Trace,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Template:
    title: str
    rationale: str
    actions: tuple[str, ...]


_KIND_TEMPLATES: dict[FindingKind, _Template] = {
    FindingKind.THRESHOLD_BREACH: _Template(
        title="Bring {metric} on {component} back under its threshold",
        rationale=(
            "{component} {metric} is at {observed:.2f} "
            "against a threshold of {threshold:.2f}."
        ),
        actions=(
            "Profile the slowest operations of the component",
            "Compare with the last known good deployment",
        ),
    ),
    FindingKind.TREND_DEGRADATION: _Template(
        title="Investigate worsening {metric} on {component}",
        rationale=(
            "{component} {metric} moved {observed:+.0%} across the analysis window."
        ),
        actions=(
            "Correlate the trend with recent deployments or traffic changes",
            "Check for resource leaks that grow over time",
        ),
    ),
    FindingKind.VOLUME_ANOMALY: _Template(
        title="Check the sample volume reported by {component}",
        rationale=(
            "{component} reported {observed:.0f} {metric} samples "
            "against a baseline of {threshold:.1f}."
        ),
        actions=(
            "Verify the component's instrumentation is still attached",
            "Look for traffic bursts or retry storms",
        ),
    ),
}

# Metric-specific advice, keyed by metric name.
_METRIC_ACTIONS: dict[str, tuple[str, ...]] = {
    "database_query_time": (
        "Add indexes for frequently queried columns",
        "Eliminate N+1 query patterns with batching or eager loading",
        "Cache query results that rarely change",
        "Use connection pooling",
    ),
    "render_time": (
        "Memoize expensive components and computations",
        "Virtualize long lists and tables",
        "Lazy load components and images",
    ),
    "memory_usage": (
        "Look for leaked listeners, timers and caches",
        "Bound in-memory caches and collections",
        "Review object retention in long-lived structures",
    ),
    "network_latency": (
        "Enable response compression and caching",
        "Serve static assets from a CDN",
        "Batch small API requests",
    ),
    "response_time": (
        "Trace the slowest endpoints and optimize their critical path",
        "Move slow work off the request path",
    ),
}

_CATEGORIES = {
    "database": "database",
    "db": "database",
    "frontend": "frontend",
    "browser": "frontend",
    "network": "network",
    "memory": "memory",
    "cache": "caching",
    "redis": "caching",
}


def category_for(component: str) -> str:
    """Map a component name to a recommendation category."""
    name = component.lower()
    for prefix, category in _CATEGORIES.items():
        if name.startswith(prefix):
            return category
    return "backend"


def _describe(finding: Finding) -> tuple[str, str]:
    template = _KIND_TEMPLATES[finding.kind]
    values = {
        "component": finding.key.component,
        "metric": finding.key.metric,
        "observed": finding.observed_value,
        "threshold": finding.threshold if finding.threshold is not None else 0.0,
    }
    return template.title.format(**values), template.rationale.format(**values)


class _ComponentGroups:
    """Union-find over component names."""

    def __init__(self) -> None:
        self._parent: dict[str, str] = {}

    def find(self, item: str) -> str:
        parent = self._parent.setdefault(item, item)
        if parent != item:
            parent = self._parent[item] = self.find(parent)
        return parent

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # Smallest name becomes the root so grouping is order-independent.
            low, high = sorted((root_a, root_b))
            self._parent[high] = low


def group_findings(
    findings: Iterable[Finding], traces: Iterable[Trace] = ()
) -> list[tuple[Finding, ...]]:
    """Group findings sharing a component or linked through one trace.

    Returns groups in a deterministic order, each sorted by finding id.
    """
    findings = list(findings)
    groups = _ComponentGroups()
    involved = {f.key.component for f in findings}
    for component in involved:
        groups.find(component)
    for trace in traces:
        linked = sorted(trace.components & involved)
        for other in linked[1:]:
            groups.union(linked[0], other)
    buckets: dict[str, list[Finding]] = {}
    for finding in findings:
        buckets.setdefault(groups.find(finding.key.component), []).append(finding)
    return [
        tuple(sorted(bucket, key=lambda f: f.id))
        for _, bucket in sorted(buckets.items())
    ]


def _signature(group: Sequence[Finding]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted((str(f.key), f.kind.value) for f in group))


def _ordered(recommendations: Iterable[Recommendation]) -> list[Recommendation]:
    return sorted(recommendations, key=lambda r: (-r.severity, -r.created_at, r.id))


class RecommendationRanker:
    """Builds deduplicated, severity-ranked recommendations from findings.

    Once a recommendation is emitted for a group of findings, the same
    group is not recommended again until its cooldown elapses, even while
    the underlying findings stay open.

    Args:
        config: Cooldown settings.
    """

    def __init__(self, config: RecommendationConfig | None = None) -> None:
        self._config = config or RecommendationConfig()
        self._emitted: dict[tuple[tuple[str, str], ...], Recommendation] = {}
        self._current: set[tuple[tuple[str, str], ...]] = set()
        self._sequence = 0
        self._lock = threading.Lock()

    def _build(self, group: Sequence[Finding], now: float) -> Recommendation:
        primary = min(group, key=lambda f: (-f.severity, f.first_seen, f.id))
        title, _ = _describe(primary)
        rationale = " ".join(_describe(f)[1] for f in group)
        actions = _METRIC_ACTIONS.get(
            primary.key.metric, _KIND_TEMPLATES[primary.kind].actions
        )
        self._sequence += 1
        return Recommendation(
            id=f"rec-{self._sequence}",
            finding_ids=frozenset(f.id for f in group),
            title=title,
            rationale=rationale,
            severity=max(f.severity for f in group),
            created_at=now,
            suppress_until=now + self._config.cooldown,
            component=primary.key.component,
            category=category_for(primary.key.component),
            actions=actions,
        )

    def rank(
        self,
        findings: Iterable[Finding],
        now: float,
        traces: Iterable[Trace] = (),
    ) -> list[Recommendation]:
        """Emit recommendations for finding groups that are not cooling down.

        Args:
            findings: Currently open findings.
            now: Current time in seconds.
            traces: Recent traces used to link findings across components.

        Returns:
            Newly emitted recommendations, severity desc then most recently
            triggered first.
        """
        groups = group_findings(findings, traces)
        emitted: list[tuple[float, Recommendation]] = []
        with self._lock:
            self._current = set()
            for group in groups:
                signature = _signature(group)
                self._current.add(signature)
                previous = self._emitted.get(signature)
                if previous is not None and now < previous.suppress_until:
                    continue
                recommendation = self._build(group, now)
                self._emitted[signature] = recommendation
                emitted.append((max(f.last_seen for f in group), recommendation))
                logger.info(
                    "Recommendation emitted: %s",
                    recommendation.title,
                    extra={"recommendation_id": recommendation.id},
                )
            for signature in list(self._emitted):
                stale = self._emitted[signature]
                if signature not in self._current and now >= stale.suppress_until:
                    del self._emitted[signature]
        emitted.sort(key=lambda pair: (-pair[1].severity, -pair[0], pair[1].id))
        return [recommendation for _, recommendation in emitted]

    def active(self) -> list[Recommendation]:
        """Recommendations whose finding group is still open."""
        with self._lock:
            return _ordered(
                rec for sig, rec in self._emitted.items() if sig in self._current
            )

    def since(self, severity: Severity | str) -> list[Recommendation]:
        """Active recommendations at or above ``severity``."""
        minimum = Severity.parse(severity)
        return [rec for rec in self.active() if rec.severity >= minimum]

    def reset(self) -> None:
        with self._lock:
            self._emitted.clear()
            self._current.clear()
