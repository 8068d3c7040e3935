"""
Statistics helpers for the monitoring core.

Pure-Python implementations so the pipeline does not need numpy for the
small windows it works on (hundreds of points at most).
"""

import math
from dataclasses import dataclass
from statistics import NormalDist
from typing import List, Optional, Sequence


@dataclass
class RegressionResult:
    """Ordinary least squares fit of ``y = slope * x + intercept``."""
    slope: float
    intercept: float
    r_squared: float
    residual_std: float
    n: int

    def predict(self, x: float) -> float:
        return self.slope * x + self.intercept


class StatisticsCalculator:
    """Statistical computation utilities."""

    @staticmethod
    def mean(values: Sequence[float]) -> float:
        """Calculate arithmetic mean."""
        if not values:
            return 0.0
        return sum(values) / len(values)

    @staticmethod
    def variance(values: Sequence[float], sample: bool = False) -> float:
        """Calculate variance (population by default)."""
        divisor = len(values) - 1 if sample else len(values)
        if divisor <= 0:
            return 0.0
        mean_val = StatisticsCalculator.mean(values)
        return sum((x - mean_val) ** 2 for x in values) / divisor

    @staticmethod
    def standard_deviation(values: Sequence[float], sample: bool = False) -> float:
        """Calculate standard deviation (population by default)."""
        return math.sqrt(StatisticsCalculator.variance(values, sample=sample))

    @staticmethod
    def quantile(values: Sequence[float], q: float) -> float:
        """
        Quantile with linear interpolation between closest ranks.

        Args:
            values: Input values (any order)
            q: Quantile in [0, 1]

        Returns:
            Interpolated quantile, 0.0 for empty input
        """
        if not values:
            return 0.0
        if not 0.0 <= q <= 1.0:
            raise ValueError(f"Quantile must be within [0, 1], got {q}")

        ordered = sorted(values)
        position = (len(ordered) - 1) * q
        lower = math.floor(position)
        upper = math.ceil(position)
        if lower == upper:
            return ordered[lower]
        weight = position - lower
        return ordered[lower] * (1 - weight) + ordered[upper] * weight

    @staticmethod
    def median(values: Sequence[float]) -> float:
        return StatisticsCalculator.quantile(values, 0.5)

    @staticmethod
    def zscore(value: float, mean: float, std: float) -> float:
        """Calculate z-score."""
        if std == 0:
            return 0.0
        return (value - mean) / std

    @staticmethod
    def linear_regression(x: Sequence[float], y: Sequence[float]) -> RegressionResult:
        """Perform ordinary least squares linear regression."""
        n = len(x)
        if n < 2 or len(y) != n:
            return RegressionResult(
                slope=0.0,
                intercept=StatisticsCalculator.mean(y),
                r_squared=0.0,
                residual_std=0.0,
                n=n,
            )

        mean_x = StatisticsCalculator.mean(x)
        mean_y = StatisticsCalculator.mean(y)

        numerator = sum((x[i] - mean_x) * (y[i] - mean_y) for i in range(n))
        denominator = sum((x[i] - mean_x) ** 2 for i in range(n))

        if denominator == 0:
            return RegressionResult(
                slope=0.0,
                intercept=mean_y,
                r_squared=0.0,
                residual_std=StatisticsCalculator.standard_deviation(y),
                n=n,
            )

        slope = numerator / denominator
        intercept = mean_y - slope * mean_x

        ss_res = sum((y[i] - (slope * x[i] + intercept)) ** 2 for i in range(n))
        ss_tot = sum((y[i] - mean_y) ** 2 for i in range(n))

        r_squared = 1 - (ss_res / ss_tot) if ss_tot != 0 else 0.0
        r_squared = max(0.0, min(1.0, r_squared))  # Clamp to [0, 1]

        residual_std = math.sqrt(ss_res / (n - 2)) if n > 2 else 0.0

        return RegressionResult(
            slope=slope,
            intercept=intercept,
            r_squared=r_squared,
            residual_std=residual_std,
            n=n,
        )

    @staticmethod
    def z_for_confidence(confidence: float) -> float:
        """Two-sided normal critical value, e.g. 1.96 for 0.95."""
        if not 0.0 < confidence < 1.0:
            raise ValueError(f"Confidence must be within (0, 1), got {confidence}")
        return NormalDist().inv_cdf(0.5 + confidence / 2)

    @staticmethod
    def median_interval(timestamps: Sequence[int]) -> Optional[int]:
        """Median spacing of an ordered timestamp sequence."""
        if len(timestamps) < 2:
            return None
        gaps = [b - a for a, b in zip(timestamps, timestamps[1:])]
        return int(StatisticsCalculator.median(gaps))


def is_finite_number(value) -> bool:
    """True for int/float values that are not NaN or infinite (bool excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
