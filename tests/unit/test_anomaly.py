"""
Unit tests for perfwatch.anomaly

Tests cover:
- Z-score, IQR and isolation detectors in isolation
- Streaming windows: warm-up, evaluate-before-append, bounded size
- Batch rescans with fresh windows
"""

import pytest

from perfwatch.anomaly import (
    IQRDetector,
    IsolationDetector,
    StreamingAnomalyDetector,
    ZScoreDetector,
    create_detector,
)
from perfwatch.config import AnomalyAlgorithm, AnomalyConfig
from perfwatch.models import Severity
from tests.helpers import normal_values

UNIT_WINDOW = [-1.0, 1.0] * 10


# ============================================================================
# Detectors
# ============================================================================

class TestZScoreDetector:
    """Test z-score detection against a window with mean 0 and std 1."""

    def test_within_threshold(self):
        """Values at or below the threshold are not flagged."""
        assert ZScoreDetector().evaluate(2.5, UNIT_WINDOW) is None

    def test_medium_between_thresholds(self):
        """Between 2.5 and 3 std is medium."""
        detection = ZScoreDetector().evaluate(2.6, UNIT_WINDOW)

        assert detection.severity is Severity.MEDIUM
        assert detection.deviation == pytest.approx(2.6)
        assert detection.expected_range == pytest.approx((-2.5, 2.5))

    def test_high_beyond_three_std(self):
        """Beyond 3 std is high, in either direction."""
        assert ZScoreDetector().evaluate(3.5, UNIT_WINDOW).severity is Severity.HIGH
        assert ZScoreDetector().evaluate(-3.5, UNIT_WINDOW).severity is Severity.HIGH

    def test_constant_window_skipped(self):
        """Zero std never flags."""
        assert ZScoreDetector().evaluate(1000, [5.0] * 30) is None


class TestIQRDetector:
    """Test Tukey fences on the window 1..20 (Q1 5.75, Q3 15.25, IQR 9.5)."""

    WINDOW = [float(v) for v in range(1, 21)]

    def test_inside_fences(self):
        """Values inside the fences are not flagged."""
        assert IQRDetector().evaluate(25, self.WINDOW) is None

    def test_deviation_measured_past_fence(self):
        """Deviation is the distance past the upper fence in IQR units."""
        detection = IQRDetector().evaluate(35, self.WINDOW)

        assert detection.expected_range == pytest.approx((-8.5, 29.5))
        assert detection.deviation == pytest.approx(5.5 / 9.5)
        assert detection.severity is Severity.MEDIUM

    def test_lower_fence(self):
        """Values below the lower fence are flagged too."""
        detection = IQRDetector().evaluate(-10, self.WINDOW)

        assert detection.deviation == pytest.approx(1.5 / 9.5)
        assert detection.severity is Severity.MEDIUM

    def test_high_outside_outer_fence(self):
        """Values beyond 3 IQR are high."""
        assert IQRDetector().evaluate(50, self.WINDOW).severity is Severity.HIGH

    def test_zero_iqr_skipped(self):
        """A window with no spread never flags."""
        assert IQRDetector().evaluate(1000, [5.0] * 30) is None


class TestIsolationDetector:
    """Test isolation scores against a window with mean 0 and max distance 1."""

    def test_below_threshold(self):
        assert IsolationDetector().evaluate(0.5, UNIT_WINDOW) is None

    def test_medium_and_high(self):
        """Scores above 0.7 are medium and above 0.9 high."""
        medium = IsolationDetector().evaluate(0.8, UNIT_WINDOW)
        high = IsolationDetector().evaluate(0.95, UNIT_WINDOW)

        assert medium.severity is Severity.MEDIUM
        assert medium.deviation == pytest.approx(0.8)
        assert high.severity is Severity.HIGH
        assert medium.expected_range == (-1.0, 1.0)


class TestCreateDetector:
    """Test detector selection from configuration."""

    @pytest.mark.parametrize("algorithm,cls", [
        (AnomalyAlgorithm.ZSCORE, ZScoreDetector),
        (AnomalyAlgorithm.IQR, IQRDetector),
        (AnomalyAlgorithm.ISOLATION, IsolationDetector),
    ])
    def test_selects_algorithm(self, algorithm, cls):
        detector = create_detector(AnomalyConfig(algorithm=algorithm))

        assert isinstance(detector, cls)
        assert detector.name == algorithm.value


# ============================================================================
# Streaming
# ============================================================================

class TestStreamingAnomalyDetector:
    """Test per-(source, metric) sliding windows."""

    def test_single_outlier_flagged_once(self):
        """40 normal values, one spike, 20 normal values: exactly one high anomaly."""
        detector = StreamingAnomalyDetector(AnomalyConfig())
        values = normal_values(40) + [75.0] + normal_values(20)

        found = []
        for i, value in enumerate(values):
            anomaly = detector.observe("app", "latency", value, i * 1000)
            if anomaly is not None:
                found.append(anomaly)

        assert len(found) == 1
        assert found[0].value == 75.0
        assert found[0].timestamp == 40_000
        assert found[0].severity is Severity.HIGH
        assert found[0].algorithm == "zscore"

    def test_warm_up_not_evaluated(self):
        """Nothing is evaluated before min_data_points values are seen."""
        detector = StreamingAnomalyDetector(AnomalyConfig(min_data_points=20))
        values = normal_values(19) + [1000.0]

        results = [detector.observe("app", "cpu", v, i) for i, v in enumerate(values)]

        assert all(r is None for r in results)

    def test_value_evaluated_before_append(self):
        """The flagged value is still appended to its window."""
        detector = StreamingAnomalyDetector(AnomalyConfig(window_size=30, min_data_points=20))
        for i, value in enumerate(normal_values(20)):
            detector.observe("app", "cpu", value, i)

        assert detector.observe("app", "cpu", 500.0, 20) is not None
        assert detector.window_sizes() == {"app.cpu": 21}

    def test_window_bounded(self):
        """Windows never grow past window_size."""
        detector = StreamingAnomalyDetector(AnomalyConfig(window_size=25, min_data_points=20))
        for i, value in enumerate(normal_values(60)):
            detector.observe("app", "cpu", value, i)

        assert detector.window_sizes()["app.cpu"] == 25

    def test_windows_are_per_source_and_metric(self):
        """Separate keys keep separate windows."""
        detector = StreamingAnomalyDetector(AnomalyConfig())
        detector.observe("a", "cpu", 1.0, 0)
        detector.observe("b", "cpu", 1.0, 0)
        detector.observe("a", "memory", 1.0, 0)

        assert detector.window_sizes() == {"a.cpu": 1, "b.cpu": 1, "a.memory": 1}

    def test_scan_uses_fresh_windows(self):
        """Batch scans neither read nor modify the live windows."""
        detector = StreamingAnomalyDetector(AnomalyConfig())
        detector.observe("app", "cpu", 1.0, 0)
        points = [(i, v) for i, v in enumerate(normal_values(40) + [75.0])]

        found = detector.scan("aggregate", "cpu", points)

        assert [a.value for a in found] == [75.0]
        assert found[0].source == "aggregate"
        assert detector.window_sizes() == {"app.cpu": 1}

    def test_reset(self):
        detector = StreamingAnomalyDetector()
        detector.observe("app", "cpu", 1.0, 0)
        detector.reset()

        assert detector.window_sizes() == {}
