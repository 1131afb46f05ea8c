"""Tests for port protocols."""

import pytest

from perfsleuth.adapters.storage import (
    InMemorySnapshotSink,
    SampleBuffer,
    SQLiteSnapshotSink,
)
from perfsleuth.core.ports import (
    SampleSourcePort,
    SnapshotHistoryPort,
    SnapshotSinkPort,
    accept_all,
)


class TestPorts:
    """Adapters satisfy the protocols the core depends on."""

    @pytest.mark.core
    def test_sample_buffer_is_a_sample_source(self) -> None:
        """SampleBuffer satisfies SampleSourcePort."""
        assert isinstance(SampleBuffer(), SampleSourcePort)

    @pytest.mark.core
    @pytest.mark.parametrize(
        "sink", [InMemorySnapshotSink(), SQLiteSnapshotSink(":memory:")]
    )
    def test_bundled_sinks_implement_sink_and_history(self, sink) -> None:
        """The bundled sinks satisfy both snapshot ports."""
        assert isinstance(sink, SnapshotSinkPort)
        assert isinstance(sink, SnapshotHistoryPort)

    @pytest.mark.core
    def test_plain_object_is_not_a_sink(self) -> None:
        """An object without write() does not satisfy SnapshotSinkPort."""
        assert not isinstance(object(), SnapshotSinkPort)

    @pytest.mark.core
    def test_accept_all_admits_any_token(self) -> None:
        """accept_all admits every token, including None."""
        assert accept_all(None)
        assert accept_all("anything")
