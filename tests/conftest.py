"""
Global pytest fixtures for the perfwatch test suite.

Provides:
- A controllable clock starting on an hour boundary
- A default configuration with telemetry disabled
"""

import pytest

from perfwatch.config import MonitoringConfig, ThresholdConfig
from tests.helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> MonitoringConfig:
    """Default configuration with telemetry off and cpu thresholds 80/90."""
    cfg = MonitoringConfig()
    cfg.telemetry.enabled = False
    cfg.thresholds["cpu"] = ThresholdConfig(warning=80, critical=90)
    return cfg
