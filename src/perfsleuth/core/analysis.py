"""Finding detection over window statistics.

Each evaluation checks three rules in order (threshold breach, trend
degradation, volume anomaly), at most one result per kind. The volume
rule stays quiet until a series has been seen for a full window.

Findings are coalesced per (key, kind): a condition that keeps triggering
extends the open finding instead of creating a new one, and a finding
closes only after ``clear_after`` consecutive evaluations that no longer
trigger it.
"""

import threading
from collections.abc import Iterable
from dataclasses import dataclass, replace

from perfsleuth.core.config import AnalysisConfig
from perfsleuth.core.logs import get_logger
from perfsleuth.core.models import (
    Finding,
    FindingKind,
    MetricKey,
    Severity,
    WindowStats,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Trigger:
    severity: Severity
    observed: float
    threshold: float | None


@dataclass
class _Tracked:
    finding: Finding
    misses: int = 0


@dataclass
class _Baseline:
    mean: float = 0.0
    observations: int = 0
    first_seen: float | None = None


class AnalysisEngine:
    """Evaluates WindowStats against thresholds and trend rules.

    Given the same sequence of inputs, the open findings (including their
    ids) are the same.

    Args:
        config: Detection rules and margins.
    """

    def __init__(self, config: AnalysisConfig | None = None) -> None:
        self._config = config or AnalysisConfig()
        self._open: dict[tuple[MetricKey, FindingKind], _Tracked] = {}
        self._baselines: dict[MetricKey, _Baseline] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def _worse_when_lower(self, key: MetricKey) -> bool:
        return key.metric in self._config.higher_is_better

    def threshold_for(self, stats: WindowStats) -> float | None:
        """Threshold recorded on the samples, else the configured default."""
        if stats.threshold is not None:
            return stats.threshold
        return self._config.thresholds.get(stats.key.metric)

    def _check_threshold(self, stats: WindowStats) -> _Trigger | None:
        threshold = self.threshold_for(stats)
        if stats.is_empty or threshold is None:
            return None
        observed = stats.latest if self._config.breach_on == "latest" else stats.mean
        if observed is None:
            return None
        if self._worse_when_lower(stats.key):
            excess = threshold - observed
        else:
            excess = observed - threshold
        margin = max(
            self._config.significance_delta,
            self._config.significance_ratio * abs(threshold),
        )
        if excess <= 0 or excess < margin:
            return None
        relative = excess / abs(threshold) if threshold else float("inf")
        severity = (
            Severity.CRITICAL
            if relative >= self._config.critical_ratio
            else Severity.WARNING
        )
        return _Trigger(severity, observed, threshold)

    def _check_trend(self, stats: WindowStats) -> _Trigger | None:
        if stats.count < self._config.min_trend_samples or stats.mean == 0:
            return None
        change = stats.slope * stats.duration / abs(stats.mean)
        worsening = -change if self._worse_when_lower(stats.key) else change
        if worsening <= self._config.trend_ratio:
            return None
        severity = (
            Severity.CRITICAL
            if worsening >= 2 * self._config.trend_ratio
            else Severity.WARNING
        )
        return _Trigger(severity, change, self._config.trend_ratio)

    def _check_volume(self, stats: WindowStats) -> _Trigger | None:
        baseline = self._baselines.setdefault(stats.key, _Baseline())
        if baseline.first_seen is None:
            if stats.is_empty:
                return None
            baseline.first_seen = stats.window_end
        # Counts are judged only once a full window has passed since the
        # series first showed up.
        if stats.window_end - baseline.first_seen < stats.duration:
            return None
        trigger = None
        if (
            baseline.observations >= self._config.min_baseline_evaluations
            and baseline.mean > 0
        ):
            deviation = abs(stats.count - baseline.mean) / baseline.mean
            if deviation > self._config.volume_ratio:
                # A producer that went silent is worse than a burst.
                severity = Severity.WARNING if stats.count == 0 else Severity.INFO
                trigger = _Trigger(severity, float(stats.count), baseline.mean)
        alpha = self._config.baseline_alpha
        if baseline.observations == 0:
            baseline.mean = float(stats.count)
        else:
            baseline.mean = alpha * stats.count + (1 - alpha) * baseline.mean
        baseline.observations += 1
        return trigger

    def evaluate(self, stats: WindowStats, now: float | None = None) -> list[Finding]:
        """Evaluate one window and update the open findings for its key.

        Args:
            stats: Window statistics to evaluate.
            now: Evaluation time (default: ``stats.window_end``).

        Returns:
            Findings currently open for ``stats.key``, ordered by severity.
        """
        at = stats.window_end if now is None else now
        with self._lock:
            results = (
                (FindingKind.THRESHOLD_BREACH, self._check_threshold(stats)),
                (FindingKind.TREND_DEGRADATION, self._check_trend(stats)),
                (FindingKind.VOLUME_ANOMALY, self._check_volume(stats)),
            )
            for kind, trigger in results:
                self._apply(stats.key, kind, trigger, at)
            return _ordered(
                t.finding for (key, _), t in self._open.items() if key == stats.key
            )

    def _apply(
        self,
        key: MetricKey,
        kind: FindingKind,
        trigger: _Trigger | None,
        now: float,
    ) -> None:
        slot = (key, kind)
        tracked = self._open.get(slot)
        if trigger is not None:
            if tracked is None:
                self._sequence += 1
                finding = Finding(
                    id=f"{kind.value}:{key}:{self._sequence}",
                    key=key,
                    kind=kind,
                    severity=trigger.severity,
                    observed_value=trigger.observed,
                    threshold=trigger.threshold,
                    first_seen=now,
                    last_seen=now,
                )
                self._open[slot] = _Tracked(finding)
                logger.info(
                    "Finding opened: %s on %s (%s)",
                    kind.value,
                    key,
                    trigger.severity.label,
                    extra={"finding_id": finding.id},
                )
            else:
                tracked.finding = replace(
                    tracked.finding,
                    severity=trigger.severity,
                    observed_value=trigger.observed,
                    threshold=trigger.threshold,
                    last_seen=now,
                )
                tracked.misses = 0
            return
        if tracked is None:
            return
        tracked.misses += 1
        if tracked.misses >= self._config.clear_after:
            del self._open[slot]
            logger.info(
                "Finding cleared: %s on %s",
                kind.value,
                key,
                extra={"finding_id": tracked.finding.id},
            )

    def open_findings(self) -> list[Finding]:
        """All open findings, severity desc then first_seen asc."""
        with self._lock:
            return _ordered(t.finding for t in self._open.values())

    def reset(self) -> None:
        with self._lock:
            self._open.clear()
            self._baselines.clear()


def _ordered(findings: Iterable[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda f: (-f.severity, f.first_seen, f.id))
