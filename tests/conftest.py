"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for remote_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from lifecycle.config import Config  # noqa: E402
from lifecycle.orchestrator import OrchestratorContext  # noqa: E402
from remote_mock import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    """Virtual clock; waits advance time without sleeping."""
    return FakeClock()


@pytest.fixture
def context(clock: FakeClock) -> OrchestratorContext:
    """Orchestrator context with default configuration on the fake clock."""
    return OrchestratorContext(config=Config(), clock=clock)
