"""Tests for engine configuration."""

import pytest

from perfsleuth.core.config import (
    DEFAULT_THRESHOLDS,
    AggregationConfig,
    AnalysisConfig,
    BufferConfig,
    EngineConfig,
    TraceConfig,
)
from perfsleuth.core.errors import ConfigurationError


class TestDefaults:
    """Every tunable has a usable default."""

    @pytest.mark.core
    def test_engine_config_defaults(self) -> None:
        """EngineConfig() carries the documented defaults."""
        config = EngineConfig()
        assert config.buffer.capacity == 10_000
        assert config.aggregation.windows == (60.0, 900.0)
        assert config.aggregation.analysis_window == 60.0
        assert config.recommendations.cooldown == 600.0
        assert config.analysis.clear_after == 2
        assert config.tick_interval == 2.0

    @pytest.mark.core
    def test_default_thresholds_cover_common_metrics(self) -> None:
        """Common metrics have default thresholds."""
        assert DEFAULT_THRESHOLDS["response_time"] == 1000.0
        assert DEFAULT_THRESHOLDS["database_query_time"] == 500.0
        assert AnalysisConfig().thresholds == DEFAULT_THRESHOLDS


class TestValidation:
    """Out-of-range values raise ConfigurationError."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        "build",
        [
            lambda: BufferConfig(capacity=0),
            lambda: AggregationConfig(windows=()),
            lambda: AggregationConfig(windows=(60.0, -1.0)),
            lambda: AnalysisConfig(breach_on="median"),
            lambda: AnalysisConfig(clear_after=0),
            lambda: AnalysisConfig(baseline_alpha=1.5),
            lambda: TraceConfig(sample_rate=1.5),
            lambda: TraceConfig(max_traces_per_second=0),
            lambda: TraceConfig(min_sample_rate=0.5, max_sample_rate=0.2),
            lambda: TraceConfig(target_traces_per_second=0),
            lambda: TraceConfig(adjustment_interval=-1),
            lambda: TraceConfig(aggressiveness=2.0),
            lambda: TraceConfig(max_rate_step=0),
            lambda: EngineConfig(tick_interval=0),
        ],
    )
    def test_invalid_values_raise(self, build) -> None:
        """Out-of-range settings raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            build()

    @pytest.mark.core
    def test_configuration_error_is_a_value_error(self) -> None:
        """ConfigurationError can be caught as ValueError."""
        with pytest.raises(ValueError):
            BufferConfig(capacity=-5)


class TestFromMapping:
    """Tests for EngineConfig.from_mapping."""

    @pytest.mark.core
    def test_builds_nested_sections(self) -> None:
        """Nested mappings become the matching config sections."""
        config = EngineConfig.from_mapping(
            {
                "tick_interval": 0.5,
                "aggregation": {"windows": [30, 300]},
                "analysis": {"higher_is_better": ["uptime"], "clear_after": 3},
                "traces": {"stale_timeout": 10},
            }
        )
        assert config.tick_interval == 0.5
        assert config.aggregation.windows == (30.0, 300.0)
        assert config.analysis.higher_is_better == frozenset({"uptime"})
        assert config.analysis.clear_after == 3
        assert config.traces.stale_timeout == 10
        assert config.buffer == BufferConfig()

    @pytest.mark.core
    def test_unknown_top_level_key_raises(self) -> None:
        """Unknown top-level keys are rejected."""
        with pytest.raises(ConfigurationError, match="unknown config key"):
            EngineConfig.from_mapping({"tick": 1})

    @pytest.mark.core
    def test_unknown_section_key_raises(self) -> None:
        """Unknown keys inside a section are rejected."""
        with pytest.raises(ConfigurationError, match=r"invalid \[buffer\] section"):
            EngineConfig.from_mapping({"buffer": {"size": 10}})
