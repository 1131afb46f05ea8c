"""Shared test fixtures for all test modules."""

from pathlib import Path

import pytest
from tests.helpers import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    """Provide a manual clock starting at a fixed timestamp."""
    return ManualClock()


@pytest.fixture
def snapshot_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for snapshot storage tests."""
    return str(tmp_path / "snapshots.db")
