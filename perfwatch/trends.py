"""
Trend fitting and forecasting.

Trends are ordinary least-squares fits of ``(sample index, value)``. The
forecast extrapolates the fitted line at the series' median sampling
cadence. Forecast confidence is the fit's r-squared, which measures how well
the line describes the past rather than how reliable the extrapolation is.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .config.schema import TrendConfig
from .models import ForecastPoint, TrendDirection, TrendFinding, TrendModel
from .stats import StatisticsCalculator

logger = logging.getLogger(__name__)

Point = Tuple[int, float]


def classify_direction(slope: float, epsilon: float) -> TrendDirection:
    if slope > epsilon:
        return TrendDirection.INCREASING
    if slope < -epsilon:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


class TrendAnalyzer:
    """Fits TrendModels and extrapolates them."""

    def __init__(self, config: Optional[TrendConfig] = None, min_data_points: int = 20):
        self.config = config or TrendConfig()
        self.min_data_points = min_data_points

    def fit(self, metric: str, points: Sequence[Point], now: int) -> TrendModel:
        """
        Fit a model on time-ordered points.

        The model is ``trained`` only when at least ``min_data_points`` points
        were available.
        """
        values = [v for _, v in points]
        timestamps = [t for t, _ in points]
        fit = StatisticsCalculator.linear_regression(list(range(len(values))), values)

        return TrendModel(
            metric=metric,
            slope=fit.slope,
            intercept=fit.intercept,
            r2=fit.r_squared,
            direction=classify_direction(fit.slope, self.config.slope_epsilon),
            last_trained=now,
            trained=len(values) >= self.min_data_points,
            sample_count=len(values),
            residual_std=fit.residual_std,
            cadence_ms=StatisticsCalculator.median_interval(timestamps) or 0,
            last_timestamp=timestamps[-1] if timestamps else None,
            last_index=len(values) - 1,
            non_negative=all(v >= 0 for v in values),
        )

    def is_significant(self, model: TrendModel) -> bool:
        return model.trained and model.r2 >= self.config.significance_threshold

    def forecast(
        self,
        model: TrendModel,
        steps: Optional[int] = None,
        confidence_level: Optional[float] = None,
    ) -> List[ForecastPoint]:
        """
        Extrapolate ``steps`` future samples.

        Args:
            model: A fitted model
            steps: Number of future samples (config default otherwise)
            confidence_level: When given, adds a normal prediction band
                from the residual standard deviation

        Returns:
            Forecast points; empty for an untrained model
        """
        if not model.trained or model.last_timestamp is None:
            return []

        steps = min(steps or self.config.forecast_steps, self.config.max_forecast_steps)
        z = StatisticsCalculator.z_for_confidence(confidence_level) if confidence_level else None

        points = []
        for step in range(1, steps + 1):
            index = model.last_index + step
            predicted = model.slope * index + model.intercept
            if model.non_negative:
                predicted = max(0.0, predicted)

            lower = upper = None
            if z is not None:
                margin = z * model.residual_std
                lower = predicted - margin
                upper = predicted + margin
                if model.non_negative:
                    lower = max(0.0, lower)

            points.append(ForecastPoint(
                step=step,
                timestamp=model.last_timestamp + step * model.cadence_ms,
                predicted_value=predicted,
                confidence=model.r2,
                lower=lower,
                upper=upper,
            ))
        return points

    def analyze(
        self,
        series: Mapping[str, Sequence[Point]],
        now: int,
    ) -> Tuple[List[TrendFinding], Dict[str, TrendModel]]:
        """
        Fit every metric with enough points and surface significant trends.

        Returns:
            ``(findings, models)`` where ``models`` holds every trained fit
        """
        findings: List[TrendFinding] = []
        models: Dict[str, TrendModel] = {}

        for metric, points in series.items():
            if len(points) < self.min_data_points:
                continue
            model = self.fit(metric, points, now)
            models[metric] = model
            if not self.is_significant(model):
                continue
            findings.append(TrendFinding(
                metric=metric,
                direction=model.direction,
                slope=model.slope,
                intercept=model.intercept,
                significance=model.r2,
                sample_count=model.sample_count,
                forecast=self.forecast(model),
            ))

        findings.sort(key=lambda f: f.significance, reverse=True)
        return findings, models
