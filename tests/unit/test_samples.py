"""Tests for producer helper functions."""

import time

import pytest

from perfsleuth.core.models import SpanKind, SpanStatus, Unit
from perfsleuth.core.samples import (
    byte_size,
    count,
    end_span,
    new_span_id,
    new_trace_id,
    percent,
    start_span,
    timing,
)


class TestSampleHelpers:
    """Tests for timing(), percent(), count() and byte_size()."""

    @pytest.mark.core
    def test_timing_creates_millisecond_sample(self) -> None:
        """timing() builds a millisecond sample."""
        sample = timing("database", "query_time", 42, threshold=500.0)
        assert sample.unit is Unit.MILLISECONDS
        assert sample.value == 42.0
        assert isinstance(sample.value, float)
        assert sample.threshold == 500.0

    @pytest.mark.core
    def test_timing_captures_current_time(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """timing() stamps the sample with the current time."""
        monkeypatch.setattr(time, "time", lambda: 1702300000.0)
        sample = timing("api", "response_time", 10.0)
        assert sample.timestamp.wall == 1702300000.0

    @pytest.mark.core
    def test_percent_count_and_byte_size_units(self) -> None:
        """Each builder sets its unit."""
        assert percent("host", "memory_usage", 71.5).unit is Unit.PERCENT
        assert count("api", "errors").value == 1.0
        assert count("api", "errors").unit is Unit.COUNT
        assert byte_size("cache", "payload_size", 2048).unit is Unit.BYTES


class TestSpanHelpers:
    """Tests for start_span() and end_span()."""

    @pytest.mark.core
    def test_ids_are_unique_hex_strings(self) -> None:
        """Generated ids are unique hex strings."""
        assert new_trace_id() != new_trace_id()
        assert len(new_trace_id()) == 32
        assert len(new_span_id()) == 16
        int(new_span_id(), 16)

    @pytest.mark.core
    def test_start_span_without_parent_starts_new_trace(self) -> None:
        """A span without parent starts a new trace."""
        span = start_span("api", "GET /users", kind=SpanKind.HTTP_REQUEST, route="/u")
        assert span.is_root
        assert span.end_time is None
        assert span.status is SpanStatus.PENDING
        assert span.kind is SpanKind.HTTP_REQUEST
        assert span.attributes == {"route": "/u"}

    @pytest.mark.core
    def test_child_span_joins_parent_trace(self) -> None:
        """A child span joins its parent's trace."""
        parent = start_span("api", "GET /users")
        child = start_span("database", "SELECT users", parent=parent)
        assert child.trace_id == parent.trace_id
        assert child.parent_span_id == parent.span_id

    @pytest.mark.core
    def test_end_span_sets_end_time_and_status(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """end_span() sets the end time and status."""
        monkeypatch.setattr(time, "time", lambda: 100.0)
        span = start_span("api", "GET /users")
        monkeypatch.setattr(time, "time", lambda: 100.5)
        ended = end_span(span, SpanStatus.ERROR)
        assert ended.status is SpanStatus.ERROR
        assert ended.duration_ms == pytest.approx(500.0)
        assert span.end_time is None
