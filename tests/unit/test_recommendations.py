"""Tests for recommendation ranking and cooldown."""

import pytest
from tests.helpers import NOW, make_span

from perfsleuth.core.config import RecommendationConfig
from perfsleuth.core.models import (
    Finding,
    FindingKind,
    MetricKey,
    Severity,
    Trace,
    TraceState,
)
from perfsleuth.core.recommendations import (
    RecommendationRanker,
    category_for,
    group_findings,
)


def _finding(
    component: str = "database",
    metric: str = "database_query_time",
    kind: FindingKind = FindingKind.THRESHOLD_BREACH,
    severity: Severity = Severity.WARNING,
    seen: float = NOW,
    seq: int = 1,
) -> Finding:
    key = MetricKey(component, metric)
    return Finding(
        id=f"{kind.value}:{key}:{seq}",
        key=key,
        kind=kind,
        severity=severity,
        observed_value=800.0,
        threshold=500.0,
        first_seen=seen,
        last_seen=seen,
    )


def _trace(*components: str) -> Trace:
    spans = {
        f"s{i}": make_span(f"s{i}", component=c, parent=None if i == 0 else "s0")
        for i, c in enumerate(components)
    }
    return Trace(
        trace_id="trace-1",
        spans=spans,
        state=TraceState.CLOSED,
        last_activity=NOW,
        started_at=NOW,
        root_span_id="s0",
    )


class TestCategory:
    """Tests for category_for()."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        ("component", "category"),
        [
            ("database", "database"),
            ("db-replica", "database"),
            ("Frontend", "frontend"),
            ("redis-sessions", "caching"),
            ("checkout-service", "backend"),
        ],
    )
    def test_category_from_component_prefix(
        self, component: str, category: str
    ) -> None:
        """The category is derived from the component name."""
        assert category_for(component) == category


class TestGrouping:
    """Tests for group_findings()."""

    @pytest.mark.core
    def test_findings_on_one_component_form_one_group(self) -> None:
        """Findings on one component are grouped together."""
        findings = [
            _finding(metric="database_query_time", seq=1),
            _finding(metric="connections", seq=2),
        ]
        assert len(group_findings(findings)) == 1

    @pytest.mark.core
    def test_components_sharing_a_trace_are_grouped(self) -> None:
        """Components seen in one trace share a group."""
        findings = [
            _finding(component="api", metric="response_time", seq=1),
            _finding(component="database", seq=2),
            _finding(component="cache", metric="hit_latency", seq=3),
        ]

        groups = group_findings(findings, [_trace("api", "database")])

        assert sorted(len(g) for g in groups) == [1, 2]


class TestRecommendationRanker:
    """Tests for RecommendationRanker.rank and cooldown."""

    @pytest.mark.core
    def test_emits_recommendation_for_open_finding(self) -> None:
        """An open finding yields a recommendation."""
        ranker = RecommendationRanker()
        finding = _finding()

        emitted = ranker.rank([finding], NOW)

        assert len(emitted) == 1
        rec = emitted[0]
        assert rec.finding_ids == frozenset({finding.id})
        assert rec.severity is Severity.WARNING
        assert rec.component == "database"
        assert rec.category == "database"
        assert rec.created_at == NOW
        assert rec.suppress_until == NOW + 600.0
        assert "database_query_time" in rec.title
        assert any("index" in action for action in rec.actions)

    @pytest.mark.core
    def test_cooldown_suppresses_repeat_emission(self) -> None:
        """A group is not re-emitted during its cooldown."""
        ranker = RecommendationRanker(RecommendationConfig(cooldown=600.0))
        finding = _finding()
        first = ranker.rank([finding], NOW)

        during = ranker.rank([finding], NOW + 100)
        after = ranker.rank([finding], NOW + 600)

        assert during == []
        assert len(ranker.active()) == 1
        assert len(after) == 1
        assert after[0].id != first[0].id

    @pytest.mark.core
    def test_active_lists_only_open_groups(self) -> None:
        """Groups whose findings closed leave the active list."""
        ranker = RecommendationRanker()
        ranker.rank([_finding()], NOW)
        assert len(ranker.active()) == 1

        ranker.rank([], NOW + 2)

        assert ranker.active() == []

    @pytest.mark.core
    def test_cooldown_survives_finding_flapping(self) -> None:
        """A group that flaps stays in cooldown."""
        ranker = RecommendationRanker()
        finding = _finding()
        ranker.rank([finding], NOW)
        ranker.rank([], NOW + 10)

        assert ranker.rank([finding], NOW + 20) == []

    @pytest.mark.core
    def test_ranked_by_severity_then_recency(self) -> None:
        """Recommendations rank by severity, then by recency."""
        ranker = RecommendationRanker()
        findings = [
            _finding(component="api", metric="response_time", seen=NOW, seq=1),
            _finding(
                component="database", severity=Severity.CRITICAL, seen=NOW, seq=2
            ),
            _finding(component="cache", metric="hit_latency", seen=NOW + 5, seq=3),
        ]

        emitted = ranker.rank(findings, NOW + 5)

        assert [r.component for r in emitted] == ["database", "cache", "api"]

    @pytest.mark.core
    def test_group_recommendation_takes_highest_severity(self) -> None:
        """A group takes the severity of its worst finding."""
        ranker = RecommendationRanker()
        findings = [
            _finding(component="api", metric="response_time", seq=1),
            _finding(component="database", severity=Severity.CRITICAL, seq=2),
        ]

        emitted = ranker.rank(findings, NOW, traces=[_trace("api", "database")])

        assert len(emitted) == 1
        assert emitted[0].severity is Severity.CRITICAL
        assert emitted[0].component == "database"
        assert len(emitted[0].finding_ids) == 2

    @pytest.mark.core
    def test_since_filters_by_minimum_severity(self) -> None:
        """since() drops recommendations below the given severity."""
        ranker = RecommendationRanker()
        ranker.rank(
            [
                _finding(component="api", metric="response_time", seq=1),
                _finding(component="database", severity=Severity.CRITICAL, seq=2),
            ],
            NOW,
        )

        assert [r.component for r in ranker.since("critical")] == ["database"]
        assert len(ranker.since(Severity.INFO)) == 2

    @pytest.mark.core
    def test_reset_clears_cooldowns(self) -> None:
        """reset() forgets groups and cooldowns."""
        ranker = RecommendationRanker()
        ranker.rank([_finding()], NOW)
        ranker.reset()
        assert len(ranker.rank([_finding()], NOW + 1)) == 1
