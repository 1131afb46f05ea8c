"""Port interfaces for the engine's external collaborators.

The core depends only on these protocols: the sample source the
aggregator reads, the snapshot sink that persists published state, and
the gate that admits dashboard clients.
"""

from collections.abc import AsyncIterable, Awaitable, Callable, Sequence
from typing import Any, Protocol, runtime_checkable

from perfsleuth.core.models import DashboardSnapshot, MetricKey, MetricSample


@runtime_checkable
class SampleSourcePort(Protocol):
    """Port for reading buffered metric samples.

    Implemented by SampleBuffer; the aggregator depends only on this.
    """

    def snapshot(self, key: MetricKey, since: float = 0) -> Sequence[MetricSample]:
        """Samples for ``key`` with wall timestamp >= ``since``, in arrival order."""
        ...

    def keys(self) -> list[MetricKey]:
        """All keys that have received samples."""
        ...


@runtime_checkable
class SnapshotSinkPort(Protocol):
    """Port for snapshot persistence.

    Adapters implementing this protocol receive every published snapshot.
    Examples: InMemorySnapshotSink, SQLiteSnapshotSink.
    """

    async def write(self, snapshot: DashboardSnapshot) -> None:
        """Persist one snapshot."""
        ...


SnapshotSinkFunc = Callable[[DashboardSnapshot], Awaitable[None] | None]
"""A plain sync or async callable accepted wherever a sink is expected."""

ConnectionGate = Callable[[str | None], bool]
"""Validates a client identity token: True accepts, False rejects."""


def accept_all(token: str | None) -> bool:
    """Gate that admits every client (local development only)."""
    return True


@runtime_checkable
class SnapshotHistoryPort(Protocol):
    """Port for reading persisted snapshots back.

    Implemented by the bundled sinks; used by the dashboard history endpoint.
    """

    def read(self, since: float = 0) -> AsyncIterable[dict[str, Any]]:
        """Stored snapshots with timestamp > since, oldest first."""
        ...
