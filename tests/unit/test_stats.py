"""
Unit tests for perfwatch.stats

Tests cover:
- Mean, population variance and standard deviation
- Interpolated quantiles
- Linear regression fit quality
- Confidence critical values
"""

import math

import pytest

from perfwatch.stats import StatisticsCalculator, is_finite_number


class TestStatisticsCalculator:
    """Test statistics helpers."""

    def test_mean_and_empty_mean(self):
        """Mean of values, zero for no values."""
        assert StatisticsCalculator.mean([1, 2, 3, 4]) == 2.5
        assert StatisticsCalculator.mean([]) == 0.0

    def test_population_standard_deviation(self):
        """Population std is the default."""
        values = [2, 4, 4, 4, 5, 5, 7, 9]

        assert StatisticsCalculator.standard_deviation(values) == pytest.approx(2.0)
        assert StatisticsCalculator.standard_deviation(values, sample=True) == pytest.approx(2.138, abs=1e-3)

    def test_quantile_interpolates(self):
        """Quantiles interpolate between ranks."""
        values = [4, 1, 3, 2]

        assert StatisticsCalculator.quantile(values, 0.0) == 1
        assert StatisticsCalculator.quantile(values, 1.0) == 4
        assert StatisticsCalculator.quantile(values, 0.5) == pytest.approx(2.5)
        assert StatisticsCalculator.quantile(values, 0.25) == pytest.approx(1.75)

    def test_quantile_out_of_range(self):
        """Quantile outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            StatisticsCalculator.quantile([1, 2], 1.5)

    def test_zscore_zero_std(self):
        """Zero std gives a zero z-score."""
        assert StatisticsCalculator.zscore(10, 5, 0) == 0.0
        assert StatisticsCalculator.zscore(10, 5, 2.5) == 2.0

    def test_perfect_linear_fit(self):
        """A straight line fits with r-squared 1."""
        x = list(range(10))
        y = [3 * v + 1 for v in x]

        fit = StatisticsCalculator.linear_regression(x, y)

        assert fit.slope == pytest.approx(3.0)
        assert fit.intercept == pytest.approx(1.0)
        assert fit.r_squared == pytest.approx(1.0)
        assert fit.predict(20) == pytest.approx(61.0)

    def test_constant_series_has_zero_r_squared(self):
        """Flat data has no explained variance."""
        fit = StatisticsCalculator.linear_regression([0, 1, 2, 3], [5, 5, 5, 5])

        assert fit.slope == 0.0
        assert fit.r_squared == 0.0

    def test_single_point_regression(self):
        """Fewer than two points yields a flat fit at the mean."""
        fit = StatisticsCalculator.linear_regression([0], [7])

        assert fit.slope == 0.0
        assert fit.intercept == 7

    def test_z_for_confidence(self):
        """0.95 confidence is about 1.96."""
        assert StatisticsCalculator.z_for_confidence(0.95) == pytest.approx(1.96, abs=1e-2)
        with pytest.raises(ValueError):
            StatisticsCalculator.z_for_confidence(1.0)

    def test_median_interval(self):
        """Median spacing of timestamps."""
        assert StatisticsCalculator.median_interval([0, 10, 20, 50]) == 10
        assert StatisticsCalculator.median_interval([0]) is None


@pytest.mark.parametrize("value,expected", [
    (1, True),
    (1.5, True),
    (True, False),
    ("1", False),
    (None, False),
    (math.nan, False),
    (math.inf, False),
])
def test_is_finite_number(value, expected):
    """Only finite ints and floats count as numbers."""
    assert is_finite_number(value) is expected
