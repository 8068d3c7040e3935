"""
Test doubles shared across the perfwatch suite.

Provides:
- A controllable epoch-millisecond clock
- Simple metric sources (static, failing, scripted, async)
- A helper that lets loop-scheduled event deliveries run
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from perfwatch.config import MonitoringConfig
from perfwatch.models import HOUR_MS, MINUTE_MS

# Aligned to an hour boundary so bucket expectations are easy to state
BASE_TIME = (1_700_000_000_000 // HOUR_MS) * HOUR_MS

# Zero-mean-ish jitter; no element is more than 1.6 std from the cycle mean
PATTERN = [-1.0, 0.5, 1.2, -0.3, 0.8, -1.1, 0.1, -0.6, 1.0, -0.9]


def normal_values(count: int, base: float = 50.0) -> List[float]:
    """Steady values around ``base`` that never trip the default detectors."""
    return [base + PATTERN[i % len(PATTERN)] for i in range(count)]


class FakeClock:
    """Epoch-millisecond clock advanced explicitly by tests."""

    def __init__(self, start: int = BASE_TIME):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = MINUTE_MS) -> int:
        self.now += ms
        return self.now


class StaticSource:
    """Returns the same values on every call."""

    def __init__(self, values: Dict[str, Any]):
        self.values = values
        self.calls = 0
        self.closed = False

    def collect(self) -> Dict[str, Any]:
        self.calls += 1
        return dict(self.values)

    def close(self) -> None:
        self.closed = True


class FailingSource:
    """Raises on every call."""

    def __init__(self, message: str = "source unavailable"):
        self.message = message
        self.calls = 0

    def collect(self) -> Dict[str, Any]:
        self.calls += 1
        raise RuntimeError(self.message)


class ScriptedSource:
    """Returns the next mapping of a script on every call (last one repeats)."""

    def __init__(self, script: Iterable[Dict[str, Any]]):
        self.script: List[Dict[str, Any]] = list(script)
        self.calls = 0

    def collect(self) -> Dict[str, Any]:
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        return dict(self.script[index])


class AsyncSource:
    """Coroutine-based source wrapping its payload in ``values``."""

    def __init__(self, values: Dict[str, Any], delay: float = 0.0):
        self.values = values
        self.delay = delay
        self.calls = 0

    async def collect(self) -> Dict[str, Any]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return {"values": dict(self.values)}


async def drain_events(rounds: int = 5) -> None:
    """Let call_soon/create_task event deliveries run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_config(**sections: Optional[Dict[str, Any]]) -> MonitoringConfig:
    """Build a config from section overrides, e.g. ``make_config(anomaly={...})``."""
    data: Dict[str, Any] = {"telemetry": {"enabled": False}}
    data.update({k: v for k, v in sections.items() if v is not None})
    return MonitoringConfig(**data)
