"""Trace reconstruction from ingested spans.

Spans are correlated into traces by trace id. A trace stays open until its
root span ends (closed) or until it has been idle longer than the stale
timeout (abandoned). Finished traces feed a bounded "recent" list and are
evicted from active tracking after a retention period.
"""

import hashlib
import math
import threading
import time
from collections import Counter, OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field

from perfsleuth.core.aggregation import percentile
from perfsleuth.core.config import TraceConfig
from perfsleuth.core.errors import ErrorKind, InvalidSpanError
from perfsleuth.core.logs import get_logger
from perfsleuth.core.models import Span, SpanStatus, Trace, TraceState

logger = get_logger(__name__)

_FAILED = frozenset({SpanStatus.ERROR, SpanStatus.TIMEOUT})


def validate_span(span: Span) -> None:
    """Reject spans that cannot be placed in a trace.

    Raises:
        InvalidSpanError: On missing ids/names or inconsistent times.
    """
    if not isinstance(span, Span):
        raise InvalidSpanError(f"expected Span, got {type(span).__name__}")
    for name in ("trace_id", "span_id", "component", "operation"):
        value = getattr(span, name)
        if not isinstance(value, str) or not value.strip():
            raise InvalidSpanError(f"span is missing its {name}")
    if not _is_time(span.start_time):
        raise InvalidSpanError(f"invalid start_time: {span.start_time!r}")
    if span.end_time is not None:
        if not _is_time(span.end_time):
            raise InvalidSpanError(f"invalid end_time: {span.end_time!r}")
        if span.end_time < span.start_time:
            raise InvalidSpanError("span ends before it starts")
    if span.parent_span_id is not None:
        if not isinstance(span.parent_span_id, str) or not span.parent_span_id:
            raise InvalidSpanError("parent_span_id must be a non-empty string")
        if span.parent_span_id == span.span_id:
            raise InvalidSpanError("span cannot be its own parent")


def _is_time(value: object) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


@dataclass(frozen=True)
class DurationStats:
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0

    @classmethod
    def of(cls, durations: list[float]) -> "DurationStats":
        if not durations:
            return cls()
        ordered = sorted(durations)
        return cls(
            count=len(ordered),
            min=ordered[0],
            max=ordered[-1],
            mean=sum(ordered) / len(ordered),
            p50=percentile(ordered, 50),
            p95=percentile(ordered, 95),
            p99=percentile(ordered, 99),
        )


@dataclass(frozen=True)
class TraceStats:
    """Duration statistics (milliseconds) of tracked traces and spans."""

    open_traces: int
    traces: DurationStats
    spans: DurationStats


@dataclass
class _TraceRecord:
    trace_id: str
    started_at: float
    last_activity: float
    state: TraceState = TraceState.OPEN
    spans: dict[str, Span] = field(default_factory=dict)
    finished_at: float | None = None
    root_span_id: str | None = None

    def view(self) -> Trace:
        return Trace(
            trace_id=self.trace_id,
            spans=dict(self.spans),
            state=self.state,
            last_activity=self.last_activity,
            started_at=self.started_at,
            finished_at=self.finished_at,
            root_span_id=self.root_span_id,
        )


class _Throttle:
    """Admits at most ``per_second`` new traces per one-second window."""

    def __init__(self, per_second: int) -> None:
        self._per_second = per_second
        self._tokens = per_second
        self._window = -1

    def admit(self, now: float) -> bool:
        window = math.floor(now)
        if window != self._window:
            self._window = window
            self._tokens = self._per_second
        if self._tokens <= 0:
            return False
        self._tokens -= 1
        return True


class AdaptiveSampler:
    """Steers the trace sample rate toward a target rate of kept traces.

    Each adjustment compares the traces kept per second since the previous
    one with ``target_traces_per_second``. Above 120 % of the target the
    rate goes down, below 80 % it goes up. A share of failed traces above
    ``error_rate_boost`` raises it further so failures stay visible. One
    adjustment moves the rate by at most ``max_rate_step`` and the rate
    never leaves ``[min_sample_rate, max_sample_rate]``.

    Not thread-safe; the collector calls it under its own lock.
    """

    def __init__(self, config: TraceConfig) -> None:
        self._config = config
        self.rate = _clamp(
            config.sample_rate, config.min_sample_rate, config.max_sample_rate
        )
        self._since: float | None = None
        self._kept = 0
        self._finished = 0
        self._failed = 0

    def record_kept(self) -> None:
        self._kept += 1

    def record_finished(self, failed: bool) -> None:
        self._finished += 1
        if failed:
            self._failed += 1

    def adjust(self, now: float) -> float | None:
        """Apply one adjustment once ``adjustment_interval`` has elapsed.

        The first call only starts the measurement period.

        Returns:
            The new rate, or None when no adjustment was due.
        """
        if self._since is None:
            self._since = now
            return None
        elapsed = now - self._since
        if elapsed < self._config.adjustment_interval:
            return None
        error_rate = self._failed / self._finished if self._finished else 0.0
        step = self._step(self._kept / elapsed, error_rate)
        self.rate = _clamp(
            self.rate + step,
            self._config.min_sample_rate,
            self._config.max_sample_rate,
        )
        self._since = now
        self._kept = self._finished = self._failed = 0
        return self.rate

    def _step(self, traces_per_second: float, error_rate: float) -> float:
        config = self._config
        step = 0.0
        load = traces_per_second / config.target_traces_per_second
        if load > 1.2:
            step -= 0.1 * config.aggressiveness * (load - 1)
        elif load < 0.8:
            step += 0.05 * config.aggressiveness * (1 - load)
        if error_rate > config.error_rate_boost:
            step += 2.0 * config.aggressiveness * error_rate
        return _clamp(step, -config.max_rate_step, config.max_rate_step)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class TraceCollector:
    """Reconstructs traces from spans and tracks their lifecycle.

    Safe to call from several producer threads. ``sweep`` is meant to run
    on its own cadence (the engine schedules it); it is what abandons stale
    traces, evicts finished ones, resolves orphan spans and, with adaptive
    sampling, adjusts the sample rate.

    Args:
        config: Timeouts, bounds and sampling.
        clock: Time source in seconds (default: ``time.time``).
    """

    def __init__(
        self,
        config: TraceConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or TraceConfig()
        self._clock = clock
        self._traces: dict[str, _TraceRecord] = {}
        self._recent: deque[Trace] = deque(maxlen=self._config.recent_capacity)
        # (trace_id, span_id) -> (parent_span_id, received_at), oldest first
        self._orphans: OrderedDict[tuple[str, str], tuple[str, float]] = OrderedDict()
        # (trace_id, parent_span_id) -> ids of the orphans waiting for it
        self._awaiting: dict[tuple[str, str], set[str]] = {}
        self._throttle = (
            _Throttle(self._config.max_traces_per_second)
            if self._config.max_traces_per_second
            else None
        )
        self._sampler = (
            AdaptiveSampler(self._config) if self._config.adaptive_sampling else None
        )
        # trace ids sampled out, throttled or already evicted
        self._ignored: OrderedDict[str, None] = OrderedDict()
        self._counts: Counter[ErrorKind] = Counter()
        self._lock = threading.Lock()

    @property
    def sample_rate(self) -> float:
        """Fraction of new traces currently kept."""
        if self._sampler is not None:
            return self._sampler.rate
        return self._config.sample_rate

    def _sampled(self, trace_id: str) -> bool:
        rate = self.sample_rate
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        digest = hashlib.blake2b(trace_id.encode(), digest_size=8).digest()
        return int.from_bytes(digest, "big") / 2**64 < rate

    def ingest_span(self, span: Span, now: float | None = None) -> bool:
        """Insert or update ``span`` in its trace.

        Spans of a trace that is already tracked are always stored. The
        sampling and throttling decision is made once, for the first span
        of a trace. Spans arriving after their trace was evicted are
        dropped.

        Returns:
            True if the span was stored, False if sampling, throttling,
            eviction or the per-trace span bound dropped it.

        Raises:
            InvalidSpanError: If the span is malformed.
        """
        try:
            validate_span(span)
        except InvalidSpanError:
            with self._lock:
                self._counts[ErrorKind.INVALID_SPAN] += 1
            raise
        at = self._clock() if now is None else now
        with self._lock:
            record = self._traces.get(span.trace_id)
            if record is None:
                record = self._open_trace(span, at)
                if record is None:
                    return False
            if (
                span.span_id not in record.spans
                and len(record.spans) >= self._config.max_spans_per_trace
            ):
                return False
            record.spans[span.span_id] = span
            record.last_activity = at
            record.started_at = min(record.started_at, span.start_time)
            self._track_orphans(record, span, at)
            if span.is_root:
                record.root_span_id = span.span_id
                if span.end_time is not None and record.state is TraceState.OPEN:
                    self._finish(record, TraceState.CLOSED, at)
        return True

    def _open_trace(self, span: Span, now: float) -> _TraceRecord | None:
        if span.trace_id in self._ignored:
            return None
        if not self._sampled(span.trace_id) or (
            self._throttle is not None and not self._throttle.admit(now)
        ):
            self._ignore(span.trace_id)
            return None
        record = _TraceRecord(
            trace_id=span.trace_id,
            started_at=span.start_time,
            last_activity=now,
        )
        self._traces[span.trace_id] = record
        if self._sampler is not None:
            self._sampler.record_kept()
        return record

    def _ignore(self, trace_id: str) -> None:
        self._ignored[trace_id] = None
        while len(self._ignored) > 10 * self._config.recent_capacity:
            self._ignored.popitem(last=False)

    def _track_orphans(self, record: _TraceRecord, span: Span, now: float) -> None:
        children = self._awaiting.pop((record.trace_id, span.span_id), ())
        for child_id in children:
            del self._orphans[(record.trace_id, child_id)]
        parent_id = span.parent_span_id
        if parent_id is None or parent_id in record.spans:
            return
        slot = (record.trace_id, span.span_id)
        if slot in self._orphans:
            return
        self._orphans[slot] = (parent_id, now)
        self._awaiting.setdefault((record.trace_id, parent_id), set()).add(
            span.span_id
        )
        if len(self._orphans) > self._config.max_pending_orphans:
            oldest = next(iter(self._orphans))
            self._settle_orphan(oldest, "pending orphan bound reached")

    def _settle_orphan(self, slot: tuple[str, str], reason: str) -> None:
        trace_id, span_id = slot
        parent_id, _ = self._orphans.pop(slot)
        waiting = self._awaiting.get((trace_id, parent_id))
        if waiting is not None:
            waiting.discard(span_id)
            if not waiting:
                del self._awaiting[(trace_id, parent_id)]
        self._counts[ErrorKind.ORPHAN_SPAN] += 1
        logger.warning(
            "Orphan span %s in trace %s accepted without parent (%s)",
            span_id,
            trace_id,
            reason,
            extra={"error_kind": ErrorKind.ORPHAN_SPAN.value},
        )

    def _finish(self, record: _TraceRecord, state: TraceState, now: float) -> None:
        record.state = state
        record.finished_at = now
        trace = record.view()
        if self._sampler is not None:
            self._sampler.record_finished(
                any(s.status in _FAILED for s in trace.spans.values())
            )
        duration = trace.duration_ms
        if (
            state is TraceState.CLOSED
            and duration is not None
            and duration < self._config.min_duration_ms
        ):
            return
        self._recent.append(trace)

    def sweep(self, now: float | None = None) -> list[Trace]:
        """Abandon stale traces, evict expired ones and settle orphans.

        With adaptive sampling the sample rate is adjusted here as well,
        at most once per ``adjustment_interval``.

        Returns:
            Traces abandoned by this sweep.
        """
        at = self._clock() if now is None else now
        abandoned: list[Trace] = []
        previous_rate = new_rate = None
        with self._lock:
            for trace_id, record in list(self._traces.items()):
                if record.state is TraceState.OPEN:
                    if at - record.last_activity > self._config.stale_timeout:
                        self._finish(record, TraceState.ABANDONED, at)
                        abandoned.append(record.view())
                elif (
                    record.finished_at is not None
                    and at - record.finished_at > self._config.retention_after_close
                ):
                    del self._traces[trace_id]
                    self._ignore(trace_id)
            while self._orphans:
                slot, (_, received_at) = next(iter(self._orphans.items()))
                if at - received_at < self._config.orphan_grace:
                    break
                self._settle_orphan(slot, "parent never arrived")
            if self._sampler is not None:
                previous_rate = self._sampler.rate
                new_rate = self._sampler.adjust(at)
        for trace in abandoned:
            logger.warning(
                "Trace %s abandoned after %.1fs without activity (%d spans)",
                trace.trace_id,
                self._config.stale_timeout,
                len(trace.spans),
            )
        if new_rate is not None and new_rate != previous_rate:
            logger.info(
                "Trace sample rate changed from %.1f%% to %.1f%%",
                previous_rate * 100,
                new_rate * 100,
            )
        return abandoned

    def get_trace(self, trace_id: str) -> Trace | None:
        with self._lock:
            record = self._traces.get(trace_id)
            return record.view() if record is not None else None

    def recent_traces(self, limit: int | None = None) -> list[Trace]:
        """Most recently closed or abandoned traces, newest first."""
        with self._lock:
            recent = list(reversed(self._recent))
        return recent if limit is None else recent[: max(limit, 0)]

    def pending_orphans(self) -> int:
        with self._lock:
            return len(self._orphans)

    def stats(self) -> TraceStats:
        """Duration statistics over currently tracked traces."""
        with self._lock:
            records = [record.view() for record in self._traces.values()]
        trace_durations = [
            t.duration_ms for t in records if t.duration_ms is not None
        ]
        span_durations = [
            s.duration_ms
            for t in records
            for s in t.spans.values()
            if s.duration_ms is not None
        ]
        return TraceStats(
            open_traces=sum(1 for t in records if t.state is TraceState.OPEN),
            traces=DurationStats.of(trace_durations),
            spans=DurationStats.of(span_durations),
        )

    def counters(self) -> Counter[ErrorKind]:
        with self._lock:
            return Counter(self._counts)

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()
            self._recent.clear()
            self._orphans.clear()
            self._awaiting.clear()
            self._ignored.clear()
