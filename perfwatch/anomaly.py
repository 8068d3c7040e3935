"""
Streaming anomaly detection.

Three interchangeable detectors evaluate a value against a window of recent
values and return the same ``Detection`` shape:

- ``ZScoreDetector``: |value - mean| / stddev above a threshold
- ``IQRDetector``: value outside the Tukey fences of the window
- ``IsolationDetector``: distance from the mean relative to the window's
  largest distance from the mean

``StreamingAnomalyDetector`` keeps one bounded window per (source, metric)
and turns detections into ``Anomaly`` records.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .config.schema import AnomalyAlgorithm, AnomalyConfig
from .models import Anomaly, Severity
from .stats import StatisticsCalculator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    """Output shared by every detector."""
    expected_range: Tuple[float, float]
    deviation: float
    severity: Severity


class AnomalyDetector(ABC):
    """Base class for window-based detectors."""

    name: str = "base"

    @abstractmethod
    def evaluate(self, value: float, window: Sequence[float]) -> Optional[Detection]:
        """Return a Detection when ``value`` is anomalous with respect to ``window``."""


class ZScoreDetector(AnomalyDetector):
    """Flags values more than ``threshold`` population standard deviations from the mean."""

    name = AnomalyAlgorithm.ZSCORE.value

    def __init__(self, threshold: float = 2.5, high_threshold: float = 3.0):
        self.threshold = threshold
        self.high_threshold = high_threshold

    def evaluate(self, value: float, window: Sequence[float]) -> Optional[Detection]:
        mean = StatisticsCalculator.mean(window)
        std = StatisticsCalculator.standard_deviation(window)
        if std == 0:
            return None

        z = abs(StatisticsCalculator.zscore(value, mean, std))
        if z <= self.threshold:
            return None

        return Detection(
            expected_range=(mean - self.threshold * std, mean + self.threshold * std),
            deviation=z,
            severity=Severity.HIGH if z > self.high_threshold else Severity.MEDIUM,
        )


class IQRDetector(AnomalyDetector):
    """
    Tukey fences: flags values outside ``[Q1 - k*IQR, Q3 + k*IQR]``.

    The deviation is the distance past the violated fence in IQR units.
    """

    name = AnomalyAlgorithm.IQR.value

    def __init__(self, multiplier: float = 1.5, high_multiplier: float = 3.0):
        self.multiplier = multiplier
        self.high_multiplier = high_multiplier

    def evaluate(self, value: float, window: Sequence[float]) -> Optional[Detection]:
        q1 = StatisticsCalculator.quantile(window, 0.25)
        q3 = StatisticsCalculator.quantile(window, 0.75)
        iqr = q3 - q1
        if iqr == 0:
            return None

        lower = q1 - self.multiplier * iqr
        upper = q3 + self.multiplier * iqr
        if lower <= value <= upper:
            return None

        beyond = (lower - value) if value < lower else (value - upper)
        outside_high = value < q1 - self.high_multiplier * iqr or value > q3 + self.high_multiplier * iqr

        return Detection(
            expected_range=(lower, upper),
            deviation=beyond / iqr,
            severity=Severity.HIGH if outside_high else Severity.MEDIUM,
        )


class IsolationDetector(AnomalyDetector):
    """Simplified isolation score: |value - mean| / max |v - mean| over the window."""

    name = AnomalyAlgorithm.ISOLATION.value

    def __init__(self, threshold: float = 0.7, high_threshold: float = 0.9):
        self.threshold = threshold
        self.high_threshold = high_threshold

    def evaluate(self, value: float, window: Sequence[float]) -> Optional[Detection]:
        mean = StatisticsCalculator.mean(window)
        max_distance = max(abs(v - mean) for v in window)
        if max_distance == 0:
            return None

        score = abs(value - mean) / max_distance
        if score <= self.threshold:
            return None

        return Detection(
            expected_range=(min(window), max(window)),
            deviation=score,
            severity=Severity.HIGH if score > self.high_threshold else Severity.MEDIUM,
        )


def create_detector(config: AnomalyConfig) -> AnomalyDetector:
    """Build the detector selected by configuration."""
    algorithm = AnomalyAlgorithm(config.algorithm)
    if algorithm == AnomalyAlgorithm.ZSCORE:
        return ZScoreDetector(config.z_threshold, config.z_high_threshold)
    if algorithm == AnomalyAlgorithm.IQR:
        return IQRDetector(config.iqr_multiplier, config.iqr_high_multiplier)
    return IsolationDetector(config.isolation_threshold, config.isolation_high_threshold)


class StreamingAnomalyDetector:
    """
    Per-(source, metric) sliding windows feeding a detector.

    Each value is evaluated against the window *before* it is appended, and
    nothing is evaluated until ``min_data_points`` values have been seen.
    """

    def __init__(self, config: Optional[AnomalyConfig] = None, detector: Optional[AnomalyDetector] = None):
        self.config = config or AnomalyConfig()
        self.detector = detector or create_detector(self.config)
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}

    @property
    def algorithm(self) -> str:
        return self.detector.name

    def observe(self, source: str, metric: str, value: float, timestamp: int) -> Optional[Anomaly]:
        key = (source, metric)
        window = self._windows.get(key)
        if window is None:
            window = deque(maxlen=self.config.window_size)
            self._windows[key] = window

        anomaly = None
        if len(window) >= self.config.min_data_points:
            detection = self.detector.evaluate(value, window)
            if detection is not None:
                anomaly = Anomaly(
                    timestamp=timestamp,
                    source=source,
                    metric=metric,
                    value=value,
                    expected_range=detection.expected_range,
                    deviation_score=detection.deviation,
                    severity=detection.severity,
                    algorithm=self.detector.name,
                )

        window.append(value)
        return anomaly

    def scan(self, source: str, metric: str, points: Sequence[Tuple[int, float]]) -> List[Anomaly]:
        """
        Batch detection over an ordered series, with fresh windows.

        Used to recompute anomalies on demand from stored history.
        """
        replay = StreamingAnomalyDetector(self.config, self.detector)
        found = []
        for timestamp, value in points:
            anomaly = replay.observe(source, metric, value, timestamp)
            if anomaly is not None:
                found.append(anomaly)
        return found

    def window_sizes(self) -> Dict[str, int]:
        return {f"{s}.{m}": len(w) for (s, m), w in self._windows.items()}

    def reset(self) -> None:
        self._windows.clear()
