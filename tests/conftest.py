"""
Pytest configuration and fixtures for the exit engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from core.events import EventChannel  # noqa: E402
from tests.helpers import FakeClock, risk_config  # noqa: E402
from tools.config_validator import ExitConfig, MonitorConfig  # noqa: E402


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alerts():
    return MagicMock()


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def guard_factory(clock, alerts, events):
    from core.risk import AccountRiskGuard

    def _make(**overrides):
        initial_state = overrides.pop("initial_state", None)
        return AccountRiskGuard(
            risk_config(**overrides),
            alert_service=alerts,
            events=events,
            clock=clock,
            initial_state=initial_state,
        )

    return _make


@pytest.fixture
def exit_config():
    return ExitConfig()


@pytest.fixture
def monitor_config():
    return MonitorConfig(price_refresh_seconds=0.05, analysis_seconds=0.05, max_consecutive_price_failures=3)

