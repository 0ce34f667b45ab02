"""Pytest configuration and fixtures for forkcascade tests."""

import sys
import tempfile
from pathlib import Path

import pytest
from fakes import FakeCI, FakeClock, FakeHost

from forkcascade.core.log import ConsoleSink, setup_logger
from forkcascade.store.memory import MemoryRecordStore


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    """Configure logging for console-only mode during tests.

    This enables debug output during test runs without requiring
    authentication or sending logs to logfire.dev.
    """
    test_log_root = Path(tempfile.gettempdir()) / "forkcascade-tests"
    setup_logger(
        log_root=test_log_root,
        run_name="test",
        console=ConsoleSink(level="debug"),
    )


@pytest.fixture
def state(tmp_path, monkeypatch):
    """State loaded from the package defaults.

    sys.argv is replaced so pytest's own arguments are not read as
    --include options, and logs go to a temporary directory.
    """
    from forkcascade.core.config import State

    monkeypatch.setattr(sys, "argv", ["forkcascade"])
    return State(config={"log_root": str(tmp_path / "state")})


@pytest.fixture
def config(state):
    return state.config


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def ci():
    return FakeCI()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def sleeps():
    """Delays requested by retry loops; nothing actually sleeps."""
    return []


@pytest.fixture
def orchestrator(state, host, ci, store, clock, sleeps):
    from forkcascade.engine.orchestrator import Orchestrator

    return Orchestrator(state, host, ci, store, clock=clock, sleep=sleeps.append)


@pytest.fixture
def machine(orchestrator):
    return orchestrator.machine
