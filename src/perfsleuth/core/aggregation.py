"""Rolling-window statistics over sample buffer snapshots."""

import bisect
import math
import threading
from collections.abc import Iterable, Sequence

from perfsleuth.core.models import MetricKey, MetricSample, WindowStats
from perfsleuth.core.ports import SampleSourcePort


def percentile(values: Sequence[float], pct: float) -> float:
    """Percentile by linear interpolation between the closest ranks.

    ``values`` must be sorted ascending. Returns 0.0 for an empty sequence.
    """
    if not values:
        return 0.0
    index = (pct / 100) * (len(values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return values[lower]
    weight = index - lower
    return values[lower] * (1 - weight) + values[upper] * weight


def slope(points: Sequence[tuple[float, float]]) -> float:
    """Least-squares slope of value over time, in value units per second.

    Returns 0.0 with fewer than two points or when all times are equal.
    """
    n = len(points)
    if n < 2:
        return 0.0
    mean_t = sum(t for t, _ in points) / n
    mean_v = sum(v for _, v in points) / n
    cov = sum((t - mean_t) * (v - mean_v) for t, v in points)
    var = sum((t - mean_t) ** 2 for t, _ in points)
    if var == 0:
        return 0.0
    return cov / var


def summarize(
    key: MetricKey,
    samples: Sequence[MetricSample],
    window_start: float,
    window_end: float,
) -> WindowStats:
    """Compute window statistics for samples already restricted to the window."""
    if not samples:
        return WindowStats.empty(key, window_start, window_end)
    values = [s.value for s in samples]
    ordered = sorted(values)
    last = samples[-1]
    return WindowStats(
        key=key,
        window_start=window_start,
        window_end=window_end,
        count=len(values),
        mean=sum(values) / len(values),
        p95=percentile(ordered, 95),
        min=ordered[0],
        max=ordered[-1],
        slope=slope([(s.timestamp.wall, s.value) for s in samples]),
        latest=last.value,
        threshold=last.threshold,
        target=last.target,
        unit=last.unit,
    )


class WindowAggregator:
    """Computes rolling statistics for trailing windows of a sample store.

    Results are cached per (key, window) until ``now`` crosses the next
    ``cache_tick`` boundary, which bounds staleness to one tick while
    letting several readers share one computation.

    Args:
        buffer: The sample store to read from.
        cache_tick: Cache granularity in seconds.
    """

    def __init__(self, buffer: SampleSourcePort, cache_tick: float = 1.0) -> None:
        self._buffer = buffer
        self._cache_tick = cache_tick
        self._cache: dict[tuple[MetricKey, float], WindowStats] = {}
        self._cache_epoch: int | None = None
        self._lock = threading.Lock()

    def _epoch(self, now: float) -> int:
        return math.floor(now / self._cache_tick)

    def _cached(self, key: MetricKey, window: float, now: float) -> WindowStats | None:
        epoch = self._epoch(now)
        with self._lock:
            if epoch != self._cache_epoch:
                self._cache.clear()
                self._cache_epoch = epoch
                return None
            return self._cache.get((key, window))

    def _store(self, stats: WindowStats, window: float, now: float) -> None:
        with self._lock:
            if self._epoch(now) == self._cache_epoch:
                self._cache[(stats.key, window)] = stats

    def _window_samples(
        self, key: MetricKey, start: float, now: float
    ) -> list[MetricSample]:
        snapshot = self._buffer.snapshot(key, since=start)
        samples = [s for s in snapshot if s.timestamp.wall <= now]
        samples.sort(key=lambda s: s.timestamp.wall)
        return samples

    def compute(self, key: MetricKey, window: float, now: float) -> WindowStats:
        """Statistics for ``key`` over ``[now - window, now]``.

        Never raises for an empty window: returns ``WindowStats.empty``.
        """
        cached = self._cached(key, window, now)
        if cached is not None:
            return cached
        start = now - window
        samples = self._window_samples(key, start, now)
        stats = summarize(key, samples, start, now)
        self._store(stats, window, now)
        return stats

    def compute_many(
        self, key: MetricKey, windows: Iterable[float], now: float
    ) -> list[WindowStats]:
        """Statistics for several windows of one key from a single snapshot.

        Returned in the order of ``windows``.
        """
        windows = list(windows)
        if not windows:
            return []
        results: dict[float, WindowStats] = {}
        missing = []
        for window in windows:
            cached = self._cached(key, window, now)
            if cached is not None:
                results[window] = cached
            else:
                missing.append(window)
        if missing:
            longest = max(missing)
            samples = self._window_samples(key, now - longest, now)
            walls = [s.timestamp.wall for s in samples]
            for window in missing:
                start = now - window
                offset = bisect.bisect_left(walls, start)
                stats = summarize(key, samples[offset:], start, now)
                self._store(stats, window, now)
                results[window] = stats
        return [results[window] for window in windows]

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
            self._cache_epoch = None
