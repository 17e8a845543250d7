"""Shared test fixtures for the booking orchestrator test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest

from tests.fakes import NOW


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("NEXHEALTH_API_KEY", "test-nexhealth-key-456")
    os.environ.setdefault("STATE_BACKEND", "memory")
    os.environ.setdefault("PRACTICES_FILE", "practices.example.json")
    os.environ.setdefault("METRICS_ENABLED", "false")



@pytest.fixture
def mock_nexhealth_response():
    """Factory fixture for creating mock NexHealth API responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make


@pytest.fixture
def clock():
    from tests.fakes import FakeClock

    return FakeClock(NOW)


@pytest.fixture
def practice():
    from tests.fakes import make_practice

    return make_practice()


@pytest.fixture
def scheduler(clock):
    from tests.fakes import FakeScheduler

    return FakeScheduler(clock=clock)


@pytest.fixture
def classifier():
    from tests.fakes import KeywordClassifier

    return KeywordClassifier()


@pytest.fixture
def ctx(practice, scheduler, classifier, clock):
    from booking_agent.tools.base import HandlerContext, WorkflowSettings

    return HandlerContext(
        practice=practice,
        scheduler=scheduler,
        classifier=classifier,
        settings=WorkflowSettings(),
        clock=clock,
    )
