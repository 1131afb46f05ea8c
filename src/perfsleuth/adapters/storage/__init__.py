"""Storage adapters: the sample buffer and snapshot sinks."""

from perfsleuth.adapters.storage.in_memory import InMemorySnapshotSink
from perfsleuth.adapters.storage.ring_buffer import SampleBuffer, validate_sample
from perfsleuth.adapters.storage.sqlite_snapshots import SQLiteSnapshotSink

__all__ = [
    "InMemorySnapshotSink",
    "SQLiteSnapshotSink",
    "SampleBuffer",
    "validate_sample",
]
