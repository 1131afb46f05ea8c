"""In-memory snapshot sink."""

from collections import deque
from collections.abc import AsyncIterable
from typing import Any

from perfsleuth.core.encoding.snapshot import snapshot_to_dict
from perfsleuth.core.models import DashboardSnapshot


class InMemorySnapshotSink:
    """In-memory implementation of SnapshotSinkPort.

    Keeps the most recent snapshots in a bounded list. Suitable for testing
    and for hosts that only need a short history.

    Args:
        max_size: Maximum number of snapshots kept (oldest evicted first).
    """

    def __init__(self, max_size: int = 1_000) -> None:
        self._snapshots: deque[DashboardSnapshot] = deque(maxlen=max_size)

    async def write(self, snapshot: DashboardSnapshot) -> None:
        """Store a published snapshot."""
        self._snapshots.append(snapshot)

    async def read(self, since: float = 0) -> AsyncIterable[dict[str, Any]]:
        """Read stored snapshots with timestamp > since, oldest first."""
        for snapshot in sorted(self._snapshots, key=lambda s: s.timestamp):
            if snapshot.timestamp > since:
                yield snapshot_to_dict(snapshot)

    @property
    def snapshots(self) -> list[DashboardSnapshot]:
        return list(self._snapshots)

    async def count(self) -> int:
        return len(self._snapshots)
