"""Engine configuration.

Every tunable has a documented default. Values are validated on
construction and raise ``ConfigurationError`` when out of range.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

from perfsleuth.core.errors import ConfigurationError

DEFAULT_THRESHOLDS: dict[str, float] = {
    "response_time": 1000.0,
    "database_query_time": 500.0,
    "memory_usage": 85.0,
    "cpu_usage": 80.0,
    "error_rate": 5.0,
    "network_latency": 200.0,
}

DEFAULT_HIGHER_IS_BETTER = frozenset(
    {"success_rate", "cache_hit_rate", "throughput", "availability"}
)


def _require_positive(name: str, value: float) -> None:
    if not (isinstance(value, int | float) and math.isfinite(value) and value > 0):
        raise ConfigurationError(f"{name} must be a positive number, got {value!r}")


def _require_non_negative(name: str, value: float) -> None:
    if not (isinstance(value, int | float) and math.isfinite(value) and value >= 0):
        raise ConfigurationError(f"{name} must be >= 0, got {value!r}")


@dataclass(frozen=True)
class BufferConfig:
    """Sample buffer sizing.

    Attributes:
        capacity: Maximum samples retained per (component, metric) key.
    """

    capacity: int = 10_000

    def __post_init__(self) -> None:
        if not isinstance(self.capacity, int) or self.capacity < 1:
            raise ConfigurationError("capacity must be a positive integer")


@dataclass(frozen=True)
class AggregationConfig:
    """Window aggregation settings.

    Attributes:
        windows: Trailing window durations in seconds. The first one is the
            window the analysis engine evaluates.
        cache_tick: Granularity in seconds of the statistics cache. Cached
            results are dropped whenever ``now`` crosses a tick boundary.
    """

    windows: tuple[float, ...] = (60.0, 900.0)
    cache_tick: float = 1.0

    def __post_init__(self) -> None:
        if not self.windows:
            raise ConfigurationError("at least one window is required")
        for window in self.windows:
            _require_positive("window", window)
        _require_positive("cache_tick", self.cache_tick)

    @property
    def analysis_window(self) -> float:
        return self.windows[0]


@dataclass(frozen=True)
class AnalysisConfig:
    """Finding detection rules.

    Attributes:
        breach_on: "mean" or "latest": which value is compared to the threshold.
        significance_delta: Minimum absolute margin beyond the threshold.
        significance_ratio: Minimum margin as a fraction of the threshold.
            The effective margin is the larger of the two.
        trend_ratio: Relative change across a window that counts as a trend.
        min_trend_samples: Samples required before trends are evaluated.
        volume_ratio: Allowed relative deviation of the sample count from
            its rolling baseline.
        baseline_alpha: Smoothing factor of the rolling baseline count.
        min_baseline_evaluations: Evaluations needed before volume is judged.
        clear_after: Consecutive non-triggering evaluations that close a finding.
        critical_ratio: Relative overshoot at which a breach becomes critical.
        thresholds: Per-metric thresholds used when a sample carries none.
        higher_is_better: Metric names where falling values are the bad direction.
    """

    breach_on: str = "mean"
    significance_delta: float = 0.0
    significance_ratio: float = 0.05
    trend_ratio: float = 0.5
    min_trend_samples: int = 5
    volume_ratio: float = 0.75
    baseline_alpha: float = 0.2
    min_baseline_evaluations: int = 3
    clear_after: int = 2
    critical_ratio: float = 0.5
    thresholds: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )
    higher_is_better: frozenset[str] = DEFAULT_HIGHER_IS_BETTER

    def __post_init__(self) -> None:
        if self.breach_on not in ("mean", "latest"):
            raise ConfigurationError("breach_on must be 'mean' or 'latest'")
        _require_non_negative("significance_delta", self.significance_delta)
        _require_non_negative("significance_ratio", self.significance_ratio)
        _require_positive("trend_ratio", self.trend_ratio)
        _require_positive("volume_ratio", self.volume_ratio)
        _require_positive("critical_ratio", self.critical_ratio)
        if not 0 < self.baseline_alpha <= 1:
            raise ConfigurationError("baseline_alpha must be in (0, 1]")
        if self.min_trend_samples < 2:
            raise ConfigurationError("min_trend_samples must be >= 2")
        if self.min_baseline_evaluations < 1:
            raise ConfigurationError("min_baseline_evaluations must be >= 1")
        if self.clear_after < 1:
            raise ConfigurationError("clear_after must be >= 1")
        object.__setattr__(self, "higher_is_better", frozenset(self.higher_is_better))


@dataclass(frozen=True)
class RecommendationConfig:
    """Recommendation cooldown.

    Attributes:
        cooldown: Seconds a recommendation group is suppressed after emission.
    """

    cooldown: float = 600.0

    def __post_init__(self) -> None:
        _require_non_negative("cooldown", self.cooldown)


@dataclass(frozen=True)
class TraceConfig:
    """Trace reconstruction and retention settings.

    Attributes:
        stale_timeout: Idle seconds after which an open trace is abandoned.
        retention_after_close: Seconds a finished trace stays tracked.
        orphan_grace: Seconds an orphan span waits for its parent.
        max_pending_orphans: Bound on orphan spans awaiting reconciliation.
        recent_capacity: Finished traces kept for the recent feed.
        max_spans_per_trace: Spans stored per trace; extra spans are dropped.
        sample_rate: Fraction of traces kept (decided per trace id). With
            adaptive sampling this is the starting rate.
        max_traces_per_second: Optional cap on new traces per second.
        min_duration_ms: Closed traces faster than this are not reported.
        adaptive_sampling: Let the sweep move the sample rate between
            ``min_sample_rate`` and ``max_sample_rate``.
        target_traces_per_second: Kept-trace rate adaptive sampling aims for.
        min_sample_rate: Lower bound of the adaptive rate.
        max_sample_rate: Upper bound of the adaptive rate.
        adjustment_interval: Seconds between two rate adjustments.
        aggressiveness: Scales every adjustment, from 0.1 (gentle) to 1.0.
        max_rate_step: Largest change applied in one adjustment.
        error_rate_boost: Share of failed traces above which the rate is
            raised to keep more failures.
    """

    stale_timeout: float = 30.0
    retention_after_close: float = 300.0
    orphan_grace: float = 5.0
    max_pending_orphans: int = 1_000
    recent_capacity: int = 100
    max_spans_per_trace: int = 1_000
    sample_rate: float = 1.0
    max_traces_per_second: int | None = None
    min_duration_ms: float = 0.0
    adaptive_sampling: bool = False
    target_traces_per_second: float = 100.0
    min_sample_rate: float = 0.01
    max_sample_rate: float = 1.0
    adjustment_interval: float = 30.0
    aggressiveness: float = 0.5
    max_rate_step: float = 0.3
    error_rate_boost: float = 0.05

    def __post_init__(self) -> None:
        _require_positive("stale_timeout", self.stale_timeout)
        _require_non_negative("retention_after_close", self.retention_after_close)
        _require_non_negative("orphan_grace", self.orphan_grace)
        _require_non_negative("min_duration_ms", self.min_duration_ms)
        for name in ("max_pending_orphans", "recent_capacity", "max_spans_per_trace"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        if not 0.0 <= self.sample_rate <= 1.0:
            raise ConfigurationError("sample_rate must be between 0.0 and 1.0")
        if self.max_traces_per_second is not None and self.max_traces_per_second < 1:
            raise ConfigurationError("max_traces_per_second must be >= 1")
        _require_positive("target_traces_per_second", self.target_traces_per_second)
        _require_positive("adjustment_interval", self.adjustment_interval)
        if not 0.0 <= self.min_sample_rate <= self.max_sample_rate <= 1.0:
            raise ConfigurationError(
                "sample rate bounds must satisfy 0 <= min <= max <= 1"
            )
        if not 0.1 <= self.aggressiveness <= 1.0:
            raise ConfigurationError("aggressiveness must be between 0.1 and 1.0")
        if not 0.0 < self.max_rate_step <= 1.0:
            raise ConfigurationError("max_rate_step must be in (0, 1]")
        if not 0.0 <= self.error_rate_boost <= 1.0:
            raise ConfigurationError("error_rate_boost must be between 0.0 and 1.0")


@dataclass(frozen=True)
class BroadcastConfig:
    """Dashboard fan-out settings.

    Attributes:
        queue_size: Snapshots buffered per client before the oldest is dropped.
        recent_traces: Traces included in each snapshot.
    """

    queue_size: int = 4
    recent_traces: int = 20

    def __post_init__(self) -> None:
        if self.queue_size < 1:
            raise ConfigurationError("queue_size must be >= 1")
        if self.recent_traces < 0:
            raise ConfigurationError("recent_traces must be >= 0")


@dataclass(frozen=True)
class EngineConfig:
    """Top-level configuration composed of the per-component sections.

    Attributes:
        tick_interval: Seconds between aggregate/analyze/publish cycles.
        sweep_interval: Seconds between trace garbage-collection sweeps.
        stop_timeout: Seconds stop() waits for an in-flight tick.
    """

    buffer: BufferConfig = field(default_factory=BufferConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    recommendations: RecommendationConfig = field(default_factory=RecommendationConfig)
    traces: TraceConfig = field(default_factory=TraceConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    tick_interval: float = 2.0
    sweep_interval: float = 1.0
    stop_timeout: float = 5.0

    def __post_init__(self) -> None:
        _require_positive("tick_interval", self.tick_interval)
        _require_positive("sweep_interval", self.sweep_interval)
        _require_non_negative("stop_timeout", self.stop_timeout)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from plain nested mappings (e.g. parsed TOML/JSON).

        Unknown keys raise ``ConfigurationError``.
        """
        sections = {
            "buffer": BufferConfig,
            "aggregation": AggregationConfig,
            "analysis": AnalysisConfig,
            "recommendations": RecommendationConfig,
            "traces": TraceConfig,
            "broadcast": BroadcastConfig,
        }
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for name, value in data.items():
            if name not in known:
                raise ConfigurationError(f"unknown config key: {name}")
            section = sections.get(name)
            if section is None:
                kwargs[name] = value
                continue
            try:
                kwargs[name] = section(**_coerce_section(section, value))
            except TypeError as exc:
                raise ConfigurationError(f"invalid [{name}] section: {exc}") from exc
        return cls(**kwargs)


def _coerce_section(section: type, value: Mapping[str, Any]) -> dict[str, Any]:
    """Convert list values from TOML/JSON into the tuple/frozenset types used."""
    out = dict(value)
    if section is AggregationConfig and "windows" in out:
        out["windows"] = tuple(float(w) for w in out["windows"])
    if section is AnalysisConfig and "higher_is_better" in out:
        out["higher_is_better"] = frozenset(out["higher_is_better"])
    return out
