"""
Sustained bottleneck detection.

A bottleneck is a run of consecutive samples at or above a metric's warning
threshold that lasts at least the configured minimum duration. Single
transient spikes never qualify.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .config.schema import ThresholdConfig
from .models import Bottleneck, Severity

logger = logging.getLogger(__name__)

Point = Tuple[int, float]


def classify_severity(max_value: float, threshold: ThresholdConfig) -> Severity:
    """critical at/above critical, high from the warning/critical midpoint, else medium."""
    if max_value >= threshold.critical:
        return Severity.CRITICAL
    midpoint = threshold.warning + (threshold.critical - threshold.warning) / 2
    if max_value >= midpoint:
        return Severity.HIGH
    return Severity.MEDIUM


def breach_periods(points: Sequence[Point], warning: float) -> List[List[Point]]:
    """Split time-ordered points into runs at or above ``warning``."""
    periods: List[List[Point]] = []
    current: List[Point] = []
    for point in points:
        if point[1] >= warning:
            current.append(point)
        elif current:
            periods.append(current)
            current = []
    if current:
        periods.append(current)
    return periods


def _to_bottleneck(metric: str, period: List[Point], threshold: ThresholdConfig) -> Bottleneck:
    values = [v for _, v in period]
    max_value = max(values)
    return Bottleneck(
        type=metric,
        severity=classify_severity(max_value, threshold),
        start_time=period[0][0],
        end_time=period[-1][0],
        max_value=max_value,
        avg_value=sum(values) / len(values),
        threshold=threshold.warning,
        critical_threshold=threshold.critical,
        sample_count=len(values),
    )


def detect_sustained(
    metric: str,
    points: Sequence[Point],
    threshold: ThresholdConfig,
    sustained_duration_ms: int,
) -> List[Bottleneck]:
    """
    Bottlenecks for one metric.

    Args:
        metric: Metric name, used as the bottleneck type
        points: ``(timestamp, value)`` pairs in time order
        threshold: Warning/critical levels
        sustained_duration_ms: Minimum ``end - start`` of a reported period

    Returns:
        Bottlenecks in time order
    """
    return [
        _to_bottleneck(metric, period, threshold)
        for period in breach_periods(points, threshold.warning)
        if period[-1][0] - period[0][0] >= sustained_duration_ms
    ]


class BottleneckDetector:
    """Runs sustained detection over every metric that has a threshold."""

    def __init__(self, thresholds: Mapping[str, ThresholdConfig], sustained_duration_ms: int):
        self.thresholds = thresholds
        self.sustained_duration_ms = sustained_duration_ms

    def detect(self, series: Mapping[str, Sequence[Point]]) -> List[Bottleneck]:
        found: List[Bottleneck] = []
        for metric, points in series.items():
            threshold = self.thresholds.get(metric)
            if threshold is None or not points:
                continue
            found.extend(detect_sustained(metric, points, threshold, self.sustained_duration_ms))
        found.sort(key=lambda b: (-b.severity.rank, b.start_time))
        return found

    def ongoing(self, metric: str, points: Sequence[Point]) -> Optional[Bottleneck]:
        """The sustained period that includes the newest point, if any."""
        threshold = self.thresholds.get(metric)
        if threshold is None or not points or points[-1][1] < threshold.warning:
            return None
        periods = breach_periods(points, threshold.warning)
        last = periods[-1]
        if last[-1][0] - last[0][0] < self.sustained_duration_ms:
            return None
        return _to_bottleneck(metric, last, threshold)

    @staticmethod
    def summarize(bottlenecks: Sequence[Bottleneck]) -> Dict[str, object]:
        by_severity: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for b in bottlenecks:
            by_severity[b.severity.value] = by_severity.get(b.severity.value, 0) + 1
            by_type[b.type] = by_type.get(b.type, 0) + 1
        most_common = max(by_type, key=by_type.get) if by_type else None
        average_duration = (
            sum(b.duration_ms for b in bottlenecks) / len(bottlenecks) if bottlenecks else 0.0
        )
        return {
            "total": len(bottlenecks),
            "by_severity": by_severity,
            "by_type": by_type,
            "most_common": most_common,
            "average_duration_ms": average_duration,
        }
