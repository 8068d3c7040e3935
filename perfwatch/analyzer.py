"""
Performance Analyzer

Keeps a bounded per-metric history fed by processed collection results and
analyzes it on demand or on a periodic tick:

- Anomalies, recomputed from the history with the configured detector
- Sustained bottlenecks against the configured thresholds
- Trend models (OLS) with linear forecasts
- A prioritized, costed optimization plan

Lifecycle: stopped -> starting -> running -> stopping -> stopped. Calling
``start``/``stop`` in the wrong state returns a failed OperationResult.
"""

import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .anomaly import StreamingAnomalyDetector
from .bottlenecks import BottleneckDetector
from .config.schema import MonitoringConfig
from .events import EventBus
from .models import (
    AnalysisReport,
    Bottleneck,
    HealthStatus,
    OperationResult,
    ProcessedResult,
    Severity,
    TimeRange,
    TrendDirection,
    TrendModel,
    now_ms,
)
from .optimization import OptimizationPlanner
from .scheduler import PeriodicTask
from .storage import AnalysisStateStore
from .telemetry import PipelineTelemetry
from .trends import TrendAnalyzer

logger = logging.getLogger(__name__)

# Source label of anomalies recomputed from the cross-source metric history
AGGREGATE_SOURCE = "aggregate"

Point = Tuple[int, float]


class AnalyzerState(str, Enum):
    """Analyzer lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class PerformanceAnalyzer:
    """Bottleneck, trend, anomaly and optimization analysis."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        state_store: Optional[AnalysisStateStore] = None,
        telemetry: Optional[PipelineTelemetry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or MonitoringConfig()
        self.state_store = state_store
        self.telemetry = telemetry
        self.clock = clock
        self.events = EventBus("analyzer")

        self.bottleneck_detector = BottleneckDetector(
            self.config.thresholds, self.config.bottleneck.sustained_duration_ms
        )
        self.trend_analyzer = TrendAnalyzer(self.config.trend, self.config.analysis.min_data_points)
        self.planner = OptimizationPlanner(self.config.optimization, self.config.analysis.resource_metrics)
        self.anomaly_scanner = StreamingAnomalyDetector(self.config.anomaly)

        self._state = AnalyzerState.STOPPED
        self._task: Optional[PeriodicTask] = None
        self._history: Dict[str, Deque[Point]] = {}
        self._models: Dict[str, TrendModel] = {}
        self._reports: Deque[AnalysisReport] = deque(maxlen=self.config.analysis.report_history_limit)
        self._recent_anomalies: Deque[Any] = deque(maxlen=self.config.analysis.report_history_limit)
        self._ongoing_bottlenecks: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> AnalyzerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == AnalyzerState.RUNNING

    async def start(self) -> OperationResult:
        """Create untrained models, restore saved state and start the analysis tick."""
        if self._state != AnalyzerState.STOPPED:
            return OperationResult.fail(f"Analyzer is {self._state.value}")

        self._state = AnalyzerState.STARTING
        try:
            for metric in self.config.analysis.tracked_metrics:
                self._models[metric] = TrendModel(metric=metric)
            self._restore_state()

            self._task = PeriodicTask(
                "analysis",
                self.config.analysis.interval_ms / 1000,
                self._periodic_analysis,
            )
            self._task.start()
        except Exception as e:
            self._state = AnalyzerState.STOPPED
            logger.error(f"Analyzer failed to start: {e}", exc_info=True)
            return OperationResult.fail(f"Analyzer failed to start: {e}")

        self._state = AnalyzerState.RUNNING
        logger.info(
            f"Analyzer started tracking {len(self._models)} metric(s), "
            f"interval {self.config.analysis.interval_ms}ms"
        )
        self.events.emit("started", {"timestamp": self.clock(), "metrics": sorted(self._models)})
        return OperationResult.ok(metrics=sorted(self._models))

    async def stop(self) -> OperationResult:
        """Cancel the tick, run a final analysis and persist state."""
        if self._state != AnalyzerState.RUNNING:
            return OperationResult.fail(f"Analyzer is {self._state.value}")

        self._state = AnalyzerState.STOPPING
        if self._task is not None:
            await self._task.stop()
            self._task = None

        final = self.analyze_all()
        self._persist_state(final)

        self._state = AnalyzerState.STOPPED
        logger.info("Analyzer stopped")
        self.events.emit("stopped", {"timestamp": self.clock(), "final_analysis": final})
        return OperationResult.ok(final_analysis=final.to_dict())

    async def _periodic_analysis(self) -> None:
        self.refit_models()
        self.analyze_all(TimeRange.last(self.config.analysis.periodic_range_ms, self.clock()))

    def export_state(self, final: Optional[AnalysisReport] = None) -> Dict[str, Any]:
        return {
            "saved_at": self.clock(),
            "models": {m: model.to_dict() for m, model in self._models.items()},
            "summary": dict(final.summary) if final is not None and final.success else None,
        }

    def _persist_state(self, final: AnalysisReport) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.save_analysis_state(self.export_state(final))
            logger.info(f"Persisted analyzer state ({len(self._models)} model(s))")
        except Exception as e:
            logger.error(f"Failed to persist analyzer state: {e}", exc_info=True)
            if self.telemetry:
                self.telemetry.track_error("analyzer", type(e).__name__)

    def _restore_state(self) -> None:
        if self.state_store is None:
            return
        try:
            state = self.state_store.load_analysis_state()
        except Exception as e:
            logger.warning(f"Could not load analyzer state, starting fresh: {e}")
            return
        if not state:
            return
        for metric, data in (state.get("models") or {}).items():
            self._models[metric] = TrendModel.from_dict(data)
        logger.info(f"Restored {len(state.get('models') or {})} trend model(s)")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record_point(self, metric: str, timestamp: int, value: float) -> bool:
        """
        Append one point to a metric's history.

        Returns:
            False when the point is older than the newest stored point
        """
        history = self._history.get(metric)
        if history is None:
            history = deque(maxlen=self.config.analysis.history_limit)
            self._history[metric] = history
        if history and timestamp < history[-1][0]:
            logger.debug(f"Ignoring out-of-order point for {metric} at {timestamp}")
            return False
        history.append((timestamp, float(value)))
        return True

    def update_metrics(self, processed: ProcessedResult) -> None:
        """
        Feed one processed result into the real-time detectors.

        Records the cross-source average of every metric, refits the
        affected trend models and reports newly sustained bottlenecks.
        Events are dispatched asynchronously.
        """
        if self._state != AnalyzerState.RUNNING:
            logger.debug("Analyzer not running, ignoring metrics update")
            return
        if not processed.success:
            return

        key_metrics = processed.aggregated.get("key_metrics", {})
        updated = [
            metric for metric, stats in key_metrics.items()
            if self.record_point(metric, processed.timestamp, stats["avg"])
        ]

        self._refit_models(updated)
        new_bottlenecks = self._check_ongoing_bottlenecks(updated)

        if processed.anomalies:
            self._recent_anomalies.extend(processed.anomalies)
            self.events.emit("anomalies-detected", list(processed.anomalies))

        if new_bottlenecks:
            for b in new_bottlenecks:
                logger.warning(
                    f"Sustained {b.type} bottleneck ({b.severity.value}): "
                    f"peak {b.max_value:.2f} over {b.duration_ms / 1000:.0f}s"
                )
                if self.telemetry:
                    self.telemetry.track_bottleneck(b.type, b.severity.value)
            self.events.emit("bottlenecks-detected", new_bottlenecks)

    def _tracked(self, metric: str) -> bool:
        return metric in self._models or self.config.analysis.track_discovered_metrics

    def refit_models(self, metrics: Optional[List[str]] = None) -> List[str]:
        """
        Refit live trend models from the most recent history window.

        Args:
            metrics: Restrict to these metrics (every recorded metric by default)

        Returns:
            Names of the metrics whose models are now trained
        """
        names = list(self._history) if metrics is None else [m for m in metrics if m in self._history]
        self._refit_models(names)
        return sorted(m for m in names if m in self._models and self._models[m].trained)

    def _refit_models(self, metrics: List[str]) -> None:
        if not self.config.trend.enabled:
            return
        window = self.config.analysis.window_size
        now = self.clock()
        for metric in metrics:
            if not self._tracked(metric):
                continue
            points = list(self._history[metric])[-window:]
            if len(points) < self.config.analysis.min_data_points:
                model = self._models.setdefault(metric, TrendModel(metric=metric))
                model.sample_count = len(points)
                continue
            self._models[metric] = self.trend_analyzer.fit(metric, points, now)

    def _check_ongoing_bottlenecks(self, metrics: List[str]) -> List[Bottleneck]:
        if not self.config.bottleneck.enabled:
            return []

        found = []
        for metric in metrics:
            threshold = self.config.thresholds.get(metric)
            if threshold is None:
                continue

            tail: List[Point] = []
            for point in reversed(self._history[metric]):
                if point[1] < threshold.warning:
                    break
                tail.append(point)
            tail.reverse()

            bottleneck = self.bottleneck_detector.ongoing(metric, tail)
            if bottleneck is None:
                if not tail:
                    self._ongoing_bottlenecks.pop(metric, None)
                continue
            if self._ongoing_bottlenecks.get(metric) == bottleneck.start_time:
                continue
            self._ongoing_bottlenecks[metric] = bottleneck.start_time
            found.append(bottleneck)
        return found

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _series_in_range(self, time_range: TimeRange) -> Dict[str, List[Point]]:
        series = {}
        for metric, history in self._history.items():
            points = [p for p in history if time_range.contains(p[0])]
            if points:
                series[metric] = points
        return series

    def analyze_all(
        self,
        time_range: Optional[TimeRange] = None,
        include_anomaly: bool = True,
        include_bottleneck: bool = True,
        include_trend: bool = True,
        include_optimization: bool = True,
    ) -> AnalysisReport:
        """
        Full analysis over a time range (last 24 hours by default).

        Never raises: an internal failure yields a report carrying ``error``
        and the requested time range. Trends are fitted for the report only;
        live models change through ``update_metrics`` and ``refit_models``.
        """
        now = self.clock()
        time_range = time_range or TimeRange.last(self.config.analysis.default_range_ms, now)
        report = AnalysisReport(time_range=time_range, timestamp=now)

        try:
            series = self._series_in_range(time_range)

            if include_anomaly and self.config.anomaly.enabled:
                for metric, points in series.items():
                    report.anomalies.extend(self.anomaly_scanner.scan(AGGREGATE_SOURCE, metric, points))

            if include_bottleneck and self.config.bottleneck.enabled:
                report.bottlenecks = self.bottleneck_detector.detect(series)

            if include_trend and self.config.trend.enabled:
                tracked = {m: p for m, p in series.items() if self._tracked(m)}
                report.trends, _ = self.trend_analyzer.analyze(tracked, now)

            if include_optimization and self.config.optimization.enabled:
                report.optimization = self.planner.plan(
                    report.bottlenecks, report.trends, report.anomalies
                )

            report.summary = self._summarize(report, series)
        except Exception as e:
            logger.error(f"Analysis failed: {e}", exc_info=True)
            if self.telemetry:
                self.telemetry.track_error("analyzer", type(e).__name__)
            report = AnalysisReport(time_range=time_range, timestamp=now, error=f"Analysis failed: {e}")

        self._reports.append(report)
        self.events.emit("analysis-completed", report)
        return report

    @staticmethod
    def _summarize(report: AnalysisReport, series: Dict[str, List[Point]]) -> Dict[str, Any]:
        def count(items, severity):
            return sum(1 for item in items if item.severity == severity)

        critical_b = count(report.bottlenecks, Severity.CRITICAL)
        high_b = count(report.bottlenecks, Severity.HIGH)
        medium_b = count(report.bottlenecks, Severity.MEDIUM)
        high_a = count(report.anomalies, Severity.HIGH)
        medium_a = count(report.anomalies, Severity.MEDIUM)

        score = 100 - 20 * critical_b - 10 * high_b - 10 * high_a - 5 * medium_a
        score = max(0, score)

        return {
            "health_score": score,
            "status": HealthStatus.from_score(score).value,
            "metrics_analyzed": len(series),
            "data_points": sum(len(p) for p in series.values()),
            "anomalies": {"total": len(report.anomalies), "high": high_a, "medium": medium_a},
            "bottlenecks": {
                "total": len(report.bottlenecks),
                "critical": critical_b,
                "high": high_b,
                "medium": medium_b,
            },
            "trends": {
                "total": len(report.trends),
                "increasing": sum(1 for t in report.trends if t.direction == TrendDirection.INCREASING),
                "decreasing": sum(1 for t in report.trends if t.direction == TrendDirection.DECREASING),
            },
            "suggestions": len(report.optimization["suggestions"]) if report.optimization else 0,
        }

    def predict_performance(
        self,
        forecast_horizon_ms: Optional[int] = None,
        metrics: Optional[List[str]] = None,
        confidence: float = 0.95,
    ) -> Dict[str, Any]:
        """
        Forecast every trained metric.

        Args:
            forecast_horizon_ms: How far ahead to forecast; defaults to the
                configured number of steps at each metric's cadence
            metrics: Restrict to these metrics
            confidence: Level of the prediction band (0-1)

        Returns:
            ``{success, forecasts: {metric: ...}, summary}`` or ``{success: False, error}``
        """
        try:
            forecasts: Dict[str, Any] = {}
            for metric, model in self._models.items():
                if metrics is not None and metric not in metrics:
                    continue
                if not model.trained:
                    continue

                steps = self.config.trend.forecast_steps
                if forecast_horizon_ms is not None and model.cadence_ms > 0:
                    steps = max(1, forecast_horizon_ms // model.cadence_ms)

                points = self.trend_analyzer.forecast(model, steps, confidence)
                threshold = self.config.thresholds.get(metric)
                crossing = None
                if threshold is not None:
                    crossing = next(
                        (p.timestamp for p in points if p.predicted_value >= threshold.critical),
                        None,
                    )

                forecasts[metric] = {
                    "direction": model.direction.value,
                    "confidence": model.r2,
                    "forecast": [p.to_dict() for p in points],
                    "critical_crossing": crossing,
                }
        except Exception as e:
            logger.error(f"Prediction failed: {e}", exc_info=True)
            return {"success": False, "error": f"Prediction failed: {e}"}

        confidences = [f["confidence"] for f in forecasts.values()]
        return {
            "success": True,
            "horizon_ms": forecast_horizon_ms,
            "confidence_level": confidence,
            "forecasts": forecasts,
            "summary": {
                "metrics": len(forecasts),
                "average_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
                "critical_predictions": sorted(
                    m for m, f in forecasts.items() if f["critical_crossing"] is not None
                ),
            },
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_bottleneck_analysis(self, time_range: Optional[TimeRange] = None) -> Dict[str, Any]:
        time_range = time_range or TimeRange.last(self.config.analysis.default_range_ms, self.clock())
        bottlenecks = self.bottleneck_detector.detect(self._series_in_range(time_range))
        return {
            "time_range": time_range.to_dict(),
            "bottlenecks": [b.to_dict() for b in bottlenecks],
            "summary": self.bottleneck_detector.summarize(bottlenecks),
        }

    def get_trend_models(self) -> Dict[str, Dict[str, Any]]:
        return {m: model.to_dict() for m, model in self._models.items()}

    def get_history(self, metric: str) -> List[Point]:
        return list(self._history.get(metric, ()))

    def get_latest_report(self) -> Optional[AnalysisReport]:
        return self._reports[-1] if self._reports else None

    def get_analysis_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        reports = list(self._reports)
        if limit:
            reports = reports[-limit:]
        return [r.to_dict() for r in reports]

    def get_recent_anomalies(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        anomalies = list(self._recent_anomalies)
        if limit:
            anomalies = anomalies[-limit:]
        return [a.to_dict() for a in anomalies]

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "metrics": len(self._history),
            "data_points": sum(len(h) for h in self._history.values()),
            "trend_models": len(self._models),
            "trained_models": sum(1 for m in self._models.values() if m.trained),
            "reports": len(self._reports),
            "ongoing_bottlenecks": sorted(self._ongoing_bottlenecks),
        }
