"""Engine runtime: owns every component and runs the periodic cycles.

The engine is the single context object holding the sample buffer, trace
collector, analysis state and client set. ``start()`` launches two
background tasks on the running event loop:

- the tick loop (aggregate -> analyze -> rank -> snapshot -> publish -> sink)
- the trace sweep loop (abandon stale traces, evict finished ones)

A tick that is still running when the next one is due causes that next
tick to be skipped, so slow cycles never pile up.
"""

import asyncio
import inspect
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from perfsleuth.adapters.broadcast import BroadcastHub, ClientChannel
from perfsleuth.adapters.storage.ring_buffer import SampleBuffer
from perfsleuth.core.aggregation import WindowAggregator
from perfsleuth.core.analysis import AnalysisEngine
from perfsleuth.core.config import EngineConfig
from perfsleuth.core.errors import ErrorKind
from perfsleuth.core.logs import get_logger, log_exception
from perfsleuth.core.models import (
    DashboardSnapshot,
    MetricSample,
    Recommendation,
    Severity,
    Span,
    Trace,
    WindowStats,
)
from perfsleuth.core.ports import (
    ConnectionGate,
    SnapshotSinkFunc,
    SnapshotSinkPort,
    accept_all,
)
from perfsleuth.core.recommendations import RecommendationRanker
from perfsleuth.core.traces import TraceCollector

logger = get_logger(__name__)


class Engine:
    """In-process performance observability engine.

    Example:
        ```python
        engine = Engine(sink=SQLiteSnapshotSink("snapshots.db"))
        await engine.start()
        engine.record_metric(timing("database", "query_time", 42.0))
        ...
        await engine.stop()
        ```

    Args:
        config: Engine configuration (defaults for everything if omitted).
        sink: Receives every published snapshot. Failures are logged and
            ignored.
        gate: Validates dashboard client tokens.
        clock: Time source in seconds (default: ``time.time``).
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        sink: SnapshotSinkPort | SnapshotSinkFunc | None = None,
        gate: ConnectionGate = accept_all,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock
        self._sink = sink
        self.buffer = SampleBuffer(self.config.buffer.capacity)
        self.aggregator = WindowAggregator(
            self.buffer, cache_tick=self.config.aggregation.cache_tick
        )
        self.analysis = AnalysisEngine(self.config.analysis)
        self.ranker = RecommendationRanker(self.config.recommendations)
        self.traces = TraceCollector(self.config.traces, clock=clock)
        self.hub = BroadcastHub(
            self.config.broadcast, gate=gate, initial_snapshot=self.current_snapshot
        )
        self._snapshot: DashboardSnapshot | None = None
        self._counts: Counter[ErrorKind] = Counter()
        self._ticks = 0
        self._started = False
        self._stopped = False
        self._tick_task: asyncio.Task[None] | None = None
        self._background: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    @property
    def accepting(self) -> bool:
        return not self._stopped

    # --- Ingestion ---

    def record_metric(self, sample: MetricSample) -> bool:
        """Store a metric sample. Never blocks on analysis or broadcast.

        Returns:
            False if the engine has been stopped and the sample was dropped.

        Raises:
            InvalidSampleError: If the sample is malformed.
        """
        if self._stopped:
            return False
        self.buffer.record(sample)
        return True

    def record_span(self, span: Span) -> bool:
        """Store a span in its trace.

        Returns:
            False if the engine has been stopped or the span was sampled out.

        Raises:
            InvalidSpanError: If the span is malformed.
        """
        if self._stopped:
            return False
        return self.traces.ingest_span(span)

    # --- Periodic cycle ---

    def build_snapshot(self, now: float | None = None) -> DashboardSnapshot:
        """Aggregate, analyze and rank the current state into a snapshot.

        CPU-bound; ``tick`` runs it in a worker thread.
        """
        at = self._clock() if now is None else now
        windows = self.config.aggregation.windows
        window_stats: list[WindowStats] = []
        for key in self.buffer.keys():
            stats = self.aggregator.compute_many(key, windows, at)
            window_stats.extend(stats)
            self.analysis.evaluate(stats[0], now=at)
        findings = self.analysis.open_findings()
        recent = self.traces.recent_traces(self.config.broadcast.recent_traces)
        self.ranker.rank(findings, at, traces=recent)
        snapshot = DashboardSnapshot(
            timestamp=at,
            window_stats=tuple(window_stats),
            findings=tuple(findings),
            recommendations=tuple(self.ranker.active()),
            recent_traces=tuple(recent),
        )
        self._snapshot = snapshot
        return snapshot

    async def tick(self) -> DashboardSnapshot:
        """Run one full cycle: build, publish and persist a snapshot."""
        snapshot = await asyncio.to_thread(self.build_snapshot)
        self._ticks += 1
        delivered = self.hub.publish(snapshot)
        logger.debug(
            "Tick %d published to %d clients (%d findings, %d recommendations)",
            self._ticks,
            delivered,
            len(snapshot.findings),
            len(snapshot.recommendations),
        )
        await self._persist(snapshot)
        return snapshot

    async def _persist(self, snapshot: DashboardSnapshot) -> None:
        if self._sink is None:
            return
        try:
            if isinstance(self._sink, SnapshotSinkPort):
                result: Any = self._sink.write(snapshot)
            else:
                result = self._sink(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._counts[ErrorKind.SINK_FAILURE] += 1
            log_exception(
                "Snapshot sink failed; continuing",
                logger=logger,
                error_kind=ErrorKind.SINK_FAILURE.value,
            )

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            log_exception("Tick failed", logger=logger)

    def _schedule_tick(self) -> bool:
        """Start a tick unless the previous one is still running."""
        if self._tick_task is not None and not self._tick_task.done():
            self._counts[ErrorKind.TICK_OVERRUN] += 1
            logger.warning(
                "Previous tick still running after %.2fs; skipping this tick",
                self.config.tick_interval,
                extra={"error_kind": ErrorKind.TICK_OVERRUN.value},
            )
            return False
        self._tick_task = asyncio.create_task(self._guarded_tick())
        return True

    async def _run_ticks(self) -> None:
        while True:
            await asyncio.sleep(self.config.tick_interval)
            self._schedule_tick()

    async def _run_sweeps(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                self.traces.sweep()
            except Exception:
                log_exception("Trace sweep failed", logger=logger)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Launch the tick and sweep loops. Idempotent while running.

        Raises:
            RuntimeError: If the engine was already stopped.
        """
        if self._stopped:
            raise RuntimeError("engine has been stopped and cannot be restarted")
        if self._started:
            return
        self._started = True
        self._background = [
            asyncio.create_task(self._run_ticks(), name="perfsleuth-ticks"),
            asyncio.create_task(self._run_sweeps(), name="perfsleuth-sweeps"),
        ]
        logger.info(
            "Engine started (tick every %.1fs, windows %s)",
            self.config.tick_interval,
            list(self.config.aggregation.windows),
        )

    async def stop(self) -> None:
        """Stop ingestion, finish or cancel the in-flight tick, close clients
        and release buffers. Safe to call any number of times."""
        if self._stopped:
            return
        self._stopped = True
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        tick = self._tick_task
        if tick is not None and not tick.done():
            try:
                await asyncio.wait_for(
                    asyncio.shield(tick), timeout=self.config.stop_timeout
                )
            except TimeoutError:
                tick.cancel()
                await asyncio.gather(tick, return_exceptions=True)
        self.hub.close()
        self.buffer.clear()
        self.traces.clear()
        self.analysis.reset()
        self.ranker.reset()
        self.aggregator.invalidate()
        logger.info("Engine stopped after %d ticks", self._ticks)

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # --- Queries ---

    def connect(self, token: str | None = None) -> ClientChannel:
        """Connect a dashboard client (see ``BroadcastHub.connect``)."""
        return self.hub.connect(token)

    def current_snapshot(self) -> DashboardSnapshot:
        """The last built snapshot, or an empty one before the first tick."""
        if self._snapshot is not None:
            return self._snapshot
        return DashboardSnapshot(
            timestamp=self._clock(),
            recent_traces=tuple(
                self.traces.recent_traces(self.config.broadcast.recent_traces)
            ),
        )

    def recent_traces(self, limit: int | None = None) -> list[Trace]:
        return self.traces.recent_traces(limit)

    def recommendations(
        self, since_severity: Severity | str = Severity.INFO
    ) -> list[Recommendation]:
        return self.ranker.since(since_severity)

    def counters(self) -> dict[str, int]:
        """Counts of every non-fatal error kind observed so far."""
        total: Counter[ErrorKind] = Counter({kind: 0 for kind in ErrorKind})
        total.update(self.buffer.counters())
        total.update(self.traces.counters())
        total.update(self.hub.counters())
        total.update(self._counts)
        return {kind.value: total[kind] for kind in ErrorKind}

    def stats(self) -> dict[str, Any]:
        trace_stats = self.traces.stats()
        return {
            "running": self.running,
            "ticks": self._ticks,
            "keys": len(self.buffer.keys()),
            "clients": len(self.hub.clients),
            "rejected_clients": self.hub.rejected,
            "open_traces": trace_stats.open_traces,
            "pending_orphans": self.traces.pending_orphans(),
            "trace_sample_rate": self.traces.sample_rate,
            "trace_duration_ms": asdict(trace_stats.traces),
            "span_duration_ms": asdict(trace_stats.spans),
            "counters": self.counters(),
        }
