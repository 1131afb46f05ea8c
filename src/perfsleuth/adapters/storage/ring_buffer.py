"""Ring buffer storage for metric samples.

Provides bounded in-memory storage per (component, metric) key that
automatically evicts the oldest sample when a key's buffer is full, so
memory use stays predictable no matter how fast producers write.
"""

import bisect
import math
import threading
from collections import Counter, deque

from perfsleuth.core.errors import ErrorKind, InvalidSampleError
from perfsleuth.core.logs import get_logger
from perfsleuth.core.models import MetricKey, MetricSample, Timestamp, Unit

logger = get_logger(__name__)


def validate_sample(sample: MetricSample) -> None:
    """Reject samples that cannot be aggregated.

    Raises:
        InvalidSampleError: If the sample is missing its component or metric,
            or carries a non-finite value or malformed timestamp.
    """
    if not isinstance(sample, MetricSample):
        raise InvalidSampleError(f"expected MetricSample, got {type(sample).__name__}")
    if not isinstance(sample.component, str) or not sample.component.strip():
        raise InvalidSampleError("sample is missing its component")
    if not isinstance(sample.metric, str) or not sample.metric.strip():
        raise InvalidSampleError("sample is missing its metric")
    if isinstance(sample.value, bool) or not isinstance(sample.value, int | float):
        raise InvalidSampleError(f"value must be a number, got {sample.value!r}")
    if not math.isfinite(sample.value):
        raise InvalidSampleError(f"value must be finite, got {sample.value!r}")
    if not isinstance(sample.unit, Unit):
        raise InvalidSampleError(f"unknown unit: {sample.unit!r}")
    if not isinstance(sample.timestamp, Timestamp):
        raise InvalidSampleError("sample timestamp must be a Timestamp")
    for name in ("threshold", "target"):
        bound = getattr(sample, name)
        if bound is not None and not (
            isinstance(bound, int | float) and math.isfinite(bound)
        ):
            raise InvalidSampleError(f"{name} must be a finite number or None")


class _KeyRing:
    """One key's bounded deque and the lock serializing its writers."""

    __slots__ = ("lock", "samples")

    def __init__(self, capacity: int) -> None:
        self.lock = threading.Lock()
        self.samples: deque[MetricSample] = deque(maxlen=capacity)


class SampleBuffer:
    """Fixed-capacity sample store keyed by (component, metric).

    Each key has its own circular buffer and lock, so producers writing
    different keys never contend. When a key's buffer is full, the oldest
    sample is evicted to make room and the eviction is counted.

    Args:
        capacity: Maximum number of samples retained per key.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._rings: dict[MetricKey, _KeyRing] = {}
        self._rings_lock = threading.Lock()
        self._counts: Counter[ErrorKind] = Counter()
        self._counts_lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _ring(self, key: MetricKey) -> _KeyRing:
        ring = self._rings.get(key)
        if ring is None:
            with self._rings_lock:
                ring = self._rings.setdefault(key, _KeyRing(self._capacity))
        return ring

    def record(self, sample: MetricSample) -> None:
        """Append a sample to its key's ring, evicting the oldest when full.

        Raises:
            InvalidSampleError: If the sample is malformed.
        """
        try:
            validate_sample(sample)
        except InvalidSampleError:
            self._count(ErrorKind.INVALID_SAMPLE)
            raise
        ring = self._ring(sample.key)
        with ring.lock:
            evicting = len(ring.samples) == self._capacity
            ring.samples.append(sample)
        if evicting:
            self._count(ErrorKind.CAPACITY_EXCEEDED)

    def _count(self, kind: ErrorKind) -> None:
        with self._counts_lock:
            self._counts[kind] += 1

    def snapshot(self, key: MetricKey, since: float = 0) -> tuple[MetricSample, ...]:
        """Return samples for ``key`` with wall timestamp >= ``since``.

        The result is an immutable copy in arrival order; it can be iterated
        any number of times while producers keep writing.
        """
        ring = self._rings.get(key)
        if ring is None:
            return ()
        with ring.lock:
            samples = tuple(ring.samples)
        if not samples:
            return samples
        # Arrival order is normally time order; fall back to a filter if not.
        walls = [s.timestamp.wall for s in samples]
        if all(a <= b for a, b in zip(walls, walls[1:])):
            return samples[bisect.bisect_left(walls, since) :]
        return tuple(s for s in samples if s.timestamp.wall >= since)

    def keys(self) -> list[MetricKey]:
        with self._rings_lock:
            return sorted(self._rings)

    def size(self, key: MetricKey) -> int:
        ring = self._rings.get(key)
        return len(ring.samples) if ring is not None else 0

    @property
    def evicted(self) -> int:
        """Number of samples lost to capacity eviction."""
        return self._counts[ErrorKind.CAPACITY_EXCEEDED]

    def counters(self) -> Counter[ErrorKind]:
        with self._counts_lock:
            return Counter(self._counts)

    def clear(self) -> None:
        """Drop every key and its samples."""
        with self._rings_lock:
            rings = list(self._rings.values())
            self._rings.clear()
        for ring in rings:
            with ring.lock:
                ring.samples.clear()
        logger.debug("Sample buffer cleared (%d keys)", len(rings))
