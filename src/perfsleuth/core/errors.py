"""Error taxonomy for the engine.

None of these conditions is fatal. Ingestion errors are raised to the
producer that sent the bad input; everything else is counted per
``ErrorKind`` and logged.
"""

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_SAMPLE = "invalid_sample"
    INVALID_SPAN = "invalid_span"
    ORPHAN_SPAN = "orphan_span"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    SLOW_CONSUMER = "slow_consumer"
    TICK_OVERRUN = "tick_overrun"
    SINK_FAILURE = "sink_failure"


class PerfsleuthError(Exception):
    """Base class for all errors raised by perfsleuth."""


class ConfigurationError(PerfsleuthError, ValueError):
    """Raised when a configuration value is invalid."""


class IngestionError(PerfsleuthError, ValueError):
    """Raised when a producer submits malformed input."""

    kind: ErrorKind


class InvalidSampleError(IngestionError):
    kind = ErrorKind.INVALID_SAMPLE


class InvalidSpanError(IngestionError):
    kind = ErrorKind.INVALID_SPAN


class ConnectionRejectedError(PerfsleuthError):
    """Raised when the connection gate refuses a dashboard client."""
