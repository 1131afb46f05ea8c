"""BDD step definitions for findings and trace lifecycle features."""

from dataclasses import dataclass, field, replace

import pytest
from pytest_bdd import given, parsers, then, when
from tests.helpers import ManualClock, make_sample, make_span

from perfsleuth.core.models import Severity, Span, TraceState
from perfsleuth.runtime.engine import Engine


@dataclass
class ScenarioContext:
    """State shared between the steps of one scenario."""

    clock: ManualClock = field(default_factory=ManualClock)
    engine: Engine | None = None
    spans: dict[str, Span] = field(default_factory=dict)
    recommendation_ids: list[str] = field(default_factory=list)

    @property
    def running_engine(self) -> Engine:
        assert self.engine is not None, "engine not created"
        return self.engine


@pytest.fixture
def ctx() -> ScenarioContext:
    """Fresh scenario context for each test."""
    return ScenarioContext()


# === Background Steps ===
@given("an engine with default settings")
def step_engine(ctx: ScenarioContext) -> None:
    ctx.engine = Engine(clock=ctx.clock)


# === Metric Steps ===
def _record(ctx: ScenarioContext, n: int, metric: str, value: int, name: str) -> None:
    now = ctx.clock.now
    for j in range(n):
        ctx.running_engine.record_metric(
            make_sample(component=name, metric=metric, value=value, at=now - n + j)
        )


@given(parsers.parse('{n:d} "{metric}" samples of {value:d} ms from "{name}"'))
def given_samples(
    ctx: ScenarioContext, n: int, metric: str, value: int, name: str
) -> None:
    _record(ctx, n, metric, value, name)


@when(
    parsers.parse('{n:d} "{metric}" samples of {value:d} ms from "{name}" are recorded')
)
def when_samples(
    ctx: ScenarioContext, n: int, metric: str, value: int, name: str
) -> None:
    _record(ctx, n, metric, value, name)


@when("the engine builds a snapshot")
def when_build(ctx: ScenarioContext) -> None:
    ctx.running_engine.build_snapshot()
    ctx.recommendation_ids.append(_active_ids(ctx))


@when(parsers.parse("the engine builds {n:d} snapshots one second apart"))
def when_build_many(ctx: ScenarioContext, n: int) -> None:
    for i in range(n):
        if i:
            ctx.clock.advance(1.0)
        when_build(ctx)


@when(parsers.parse("{seconds:d} seconds pass"))
def when_time_passes(ctx: ScenarioContext, seconds: int) -> None:
    ctx.clock.advance(seconds)


def _active_ids(ctx: ScenarioContext) -> str:
    return ",".join(r.id for r in ctx.running_engine.recommendations())


@then(parsers.parse('there is {n:d} open finding for "{name}"'))
def then_findings_for(ctx: ScenarioContext, n: int, name: str) -> None:
    findings = ctx.running_engine.analysis.open_findings()
    assert [f.key.component for f in findings] == [name] * n


@then("there are no open findings")
def then_no_findings(ctx: ScenarioContext) -> None:
    assert ctx.running_engine.analysis.open_findings() == []


@then(parsers.parse('the finding for "{name}" is "{severity}"'))
def then_finding_severity(ctx: ScenarioContext, name: str, severity: str) -> None:
    findings = [
        f
        for f in ctx.running_engine.analysis.open_findings()
        if f.key.component == name
    ]
    assert findings
    assert findings[0].severity is Severity.parse(severity)


@then(parsers.parse("there is {n:d} active recommendation"))
def then_active_recommendations(ctx: ScenarioContext, n: int) -> None:
    assert len(ctx.running_engine.recommendations()) == n


@then("the active recommendation is unchanged")
def then_recommendation_unchanged(ctx: ScenarioContext) -> None:
    first, *rest = ctx.recommendation_ids
    assert first
    assert all(ids == first for ids in rest)


@then("the active recommendation has been replaced")
def then_recommendation_replaced(ctx: ScenarioContext) -> None:
    assert len(ctx.recommendation_ids) >= 2
    assert ctx.recommendation_ids[-1]
    assert ctx.recommendation_ids[-1] != ctx.recommendation_ids[0]


# === Trace Steps ===
@given(parsers.parse('span "{span_id}" starts in trace "{trace_id}"'))
def given_span_starts(ctx: ScenarioContext, span_id: str, trace_id: str) -> None:
    span = make_span(span_id, trace_id=trace_id, start=ctx.clock.now)
    ctx.spans[span_id] = span
    ctx.running_engine.record_span(span)


@given(
    parsers.parse(
        'span "{span_id}" under "{parent}" takes {ms:d} ms in trace "{trace_id}"'
    )
)
def given_child_span(
    ctx: ScenarioContext, span_id: str, parent: str, ms: int, trace_id: str
) -> None:
    start = ctx.clock.now
    span = make_span(
        span_id, trace_id=trace_id, parent=parent, start=start, end=start + ms / 1000
    )
    ctx.spans[span_id] = span
    ctx.running_engine.record_span(span)


@when(parsers.parse('span "{span_id}" ends after {ms:d} ms in trace "{trace_id}"'))
def when_span_ends(ctx: ScenarioContext, span_id: str, ms: int, trace_id: str) -> None:
    span = ctx.spans[span_id]
    assert span.trace_id == trace_id
    ctx.running_engine.record_span(replace(span, end_time=span.start_time + ms / 1000))


@when(parsers.parse("the trace sweep runs {n:d} times"))
def when_sweep(ctx: ScenarioContext, n: int) -> None:
    for _ in range(n):
        ctx.running_engine.traces.sweep()


@then(parsers.parse('trace "{trace_id}" is "{state}"'))
def then_trace_state(ctx: ScenarioContext, trace_id: str, state: str) -> None:
    trace = ctx.running_engine.traces.get_trace(trace_id)
    assert trace is not None
    assert trace.state is TraceState(state)


@then(
    parsers.parse('trace "{trace_id}" is listed {n:d} time in the recent traces')
)
def then_recent_count(ctx: ScenarioContext, trace_id: str, n: int) -> None:
    recent = ctx.running_engine.recent_traces()
    assert [t.trace_id for t in recent].count(trace_id) == n


@then(parsers.parse("{n:d} orphan span has been counted"))
def then_orphans(ctx: ScenarioContext, n: int) -> None:
    assert ctx.running_engine.counters()["orphan_span"] == n
