"""
Data Processor

Consumes collection results and, per source:

1. Cleans values (coercion, non-finite removal, clamping to metric bounds)
2. Derives secondary metrics (resource utilization, health score)
3. Grades data quality by the fraction of fields that survived cleaning
4. Rolls values into aligned minute/hour/day buckets
5. Runs streaming anomaly detection per metric

``process`` never raises: a failure while handling one source becomes a
``{success: False, error}`` entry for that source.
"""

import logging
import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .anomaly import StreamingAnomalyDetector
from .config.schema import MonitoringConfig
from .events import EventBus
from .models import (
    AggregationBucket,
    Anomaly,
    CollectionResult,
    DataQuality,
    Granularity,
    HOUR_MS,
    OperationResult,
    ProcessedResult,
    ProcessedSource,
    Severity,
    SourceResult,
    now_ms,
)
from .stats import StatisticsCalculator
from .telemetry import PipelineTelemetry

logger = logging.getLogger(__name__)

MIN_PATTERN_POINTS = 10
PATTERN_SLOPE_THRESHOLD = 0.1
STRONG_PATTERN_SLOPE = 0.5
SPIKE_SIGMA = 3.0
PATTERN_TYPES = ("trend", "seasonal", "cyclical", "spike")


def derived_health_score(metrics: Dict[str, float]) -> float:
    """
    100 minus penalties for hot resources, clamped to [0, 100].

    cpu/memory above 80 cost 2 points per point, disk above 90 costs 5 per
    point, latency above 1000ms costs up to 50, each percent of errors costs 5.
    """
    score = 100.0
    cpu = metrics.get("cpu")
    if cpu is not None and cpu > 80:
        score -= (cpu - 80) * 2
    memory = metrics.get("memory")
    if memory is not None and memory > 80:
        score -= (memory - 80) * 2
    disk = metrics.get("disk")
    if disk is not None and disk > 90:
        score -= (disk - 90) * 5
    latency = metrics.get("latency")
    if latency is not None and latency > 1000:
        score -= min(50.0, (latency - 1000) / 100)
    error_rate = metrics.get("errorRate")
    if error_rate is not None:
        score -= error_rate * 5
    return max(0.0, min(100.0, score))


HEALTH_INPUTS = ("cpu", "memory", "disk", "latency", "errorRate")


class DataProcessor:
    """Cleans, buckets and anomaly-tags collection results."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        telemetry: Optional[PipelineTelemetry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or MonitoringConfig()
        self.telemetry = telemetry
        self.clock = clock
        self.events = EventBus("processor")
        self.anomaly_detector = StreamingAnomalyDetector(self.config.anomaly)

        self._granularities = [Granularity(g) for g in self.config.aggregation.granularities]
        self._buckets: Dict[Tuple[str, Granularity], Deque[AggregationBucket]] = {}
        self._recent: Deque[ProcessedResult] = deque(maxlen=self.config.processing.stream_buffer_size)
        self._running = False
        self._stats = {
            "processed": 0,
            "source_errors": 0,
            "anomalies_detected": 0,
            "late_samples": 0,
            "total_processing_ms": 0.0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> OperationResult:
        if self._running:
            return OperationResult.fail("Processor already running")
        self._running = True
        logger.info(
            f"Processor started (granularities={[g.value for g in self._granularities]}, "
            f"anomaly={self.anomaly_detector.algorithm})"
        )
        self.events.emit("started", {"timestamp": self.clock()})
        return OperationResult.ok()

    async def stop(self) -> OperationResult:
        if not self._running:
            return OperationResult.fail("Processor not running")
        self._running = False
        logger.info(f"Processor stopped after {self._stats['processed']} result(s)")
        self.events.emit("stopped", {"timestamp": self.clock(), "stats": self.get_stats()})
        return OperationResult.ok(stats=self.get_stats())

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, collection: CollectionResult) -> ProcessedResult:
        """
        Process one collection result.

        Args:
            collection: Output of ``TelemetryCollector.collect_all``

        Returns:
            ProcessedResult with per-source entries, tick aggregates,
            anomalies and insights
        """
        started = time.perf_counter()

        if not collection.success:
            return ProcessedResult(
                timestamp=collection.timestamp,
                success=False,
                error=collection.error or "Collection failed",
            )

        result = ProcessedResult(timestamp=collection.timestamp)

        for name, source_result in collection.sources.items():
            if not source_result.success:
                result.sources[name] = ProcessedSource(
                    source=name,
                    success=False,
                    timestamp=source_result.timestamp,
                    error=source_result.error,
                )
                continue

            try:
                processed = self._clean_source(source_result)
                # buckets only take sources that made it through detection
                anomalies = self._detect_anomalies(processed)
                self._add_to_buckets(processed)
                result.anomalies.extend(anomalies)
            except Exception as e:
                self._stats["source_errors"] += 1
                logger.error(f"Failed to process source '{name}': {e}", exc_info=True)
                if self.telemetry:
                    self.telemetry.track_error("processor", type(e).__name__)
                processed = ProcessedSource(
                    source=name,
                    success=False,
                    timestamp=source_result.timestamp,
                    error=f"Processing failed: {e}",
                )
            result.sources[name] = processed

        result.aggregated = self._aggregate_tick(result)
        result.insights = self._generate_insights(result)

        elapsed_ms = (time.perf_counter() - started) * 1000
        result.processing_time_ms = elapsed_ms
        self._stats["processed"] += 1
        self._stats["total_processing_ms"] += elapsed_ms
        self._recent.append(result)

        if self.telemetry:
            self.telemetry.track_processing(elapsed_ms / 1000)

        for anomaly in result.anomalies:
            self.events.emit("anomaly-detected", anomaly)

        return result

    def _clean_source(self, source_result: SourceResult) -> ProcessedSource:
        cleaned: Dict[str, float] = {}
        dropped: List[str] = []

        for key, raw in source_result.values.items():
            value = self._coerce(raw)
            if value is None:
                dropped.append(key)
                continue
            bounds = self.config.processing.bounds.get(key)
            if bounds is not None:
                value = min(max(value, bounds.min), bounds.max)
            cleaned[key] = value

        total = len(source_result.values)
        ratio = len(cleaned) / total if total else 0.0

        if dropped:
            logger.debug(f"Dropped {len(dropped)} field(s) from '{source_result.source}': {dropped}")

        if self.config.processing.derive_metrics:
            cleaned.update(self._derive(cleaned))

        return ProcessedSource(
            source=source_result.source,
            success=True,
            timestamp=source_result.timestamp,
            metrics=cleaned,
            quality=DataQuality.from_ratio(ratio),
            quality_ratio=ratio,
            dropped_fields=dropped,
        )

    @staticmethod
    def _coerce(raw: Any) -> Optional[float]:
        """bool -> 0/1, finite numbers and numeric strings -> float, anything else -> None."""
        if isinstance(raw, bool):
            return 1.0 if raw else 0.0
        if isinstance(raw, (int, float)):
            value = float(raw)
        elif isinstance(raw, str):
            try:
                value = float(raw.strip())
            except ValueError:
                return None
        else:
            return None
        return value if math.isfinite(value) else None

    @staticmethod
    def _derive(metrics: Dict[str, float]) -> Dict[str, float]:
        derived: Dict[str, float] = {}
        if "cpu" in metrics and "memory" in metrics:
            derived["resourceUtilization"] = (metrics["cpu"] + metrics["memory"]) / 2
        if any(key in metrics for key in HEALTH_INPUTS):
            derived["healthScore"] = derived_health_score(metrics)
        return derived

    def _add_to_buckets(self, processed: ProcessedSource) -> None:
        limit = self.config.aggregation.bucket_limit
        for granularity in self._granularities:
            window = granularity.window_ms
            bucket_start = (processed.timestamp // window) * window
            buckets = self._buckets.setdefault(
                (processed.source, granularity), deque(maxlen=limit)
            )

            if buckets and bucket_start < buckets[-1].bucket_start:
                # Window already closed
                self._stats["late_samples"] += 1
                logger.debug(
                    f"Late sample for '{processed.source}' at {processed.timestamp} "
                    f"ignored for {granularity.value} buckets"
                )
                continue

            if not buckets or buckets[-1].bucket_start != bucket_start:
                buckets.append(AggregationBucket(
                    source=processed.source,
                    granularity=granularity,
                    bucket_start=bucket_start,
                    window_ms=window,
                ))
            buckets[-1].add(processed.metrics)

    def _detect_anomalies(self, processed: ProcessedSource) -> List[Anomaly]:
        if not self.config.anomaly.enabled:
            return []

        anomalies = []
        for metric, value in processed.metrics.items():
            anomaly = self.anomaly_detector.observe(processed.source, metric, value, processed.timestamp)
            if anomaly is None:
                continue
            anomalies.append(anomaly)
            self._stats["anomalies_detected"] += 1
            if self.telemetry:
                self.telemetry.track_anomaly(anomaly.algorithm, anomaly.severity.value)
            logger.info(
                f"Anomaly on {anomaly.source}.{anomaly.metric}: value={anomaly.value:.2f} "
                f"deviation={anomaly.deviation_score:.2f} severity={anomaly.severity.value}"
            )
        return anomalies

    def _aggregate_tick(self, result: ProcessedResult) -> Dict[str, Any]:
        successful = [p for p in result.sources.values() if p.success]

        per_metric: Dict[str, List[float]] = {}
        for processed in successful:
            for metric, value in processed.metrics.items():
                per_metric.setdefault(metric, []).append(value)

        key_metrics = {
            metric: {
                "avg": sum(values) / len(values),
                "min": min(values),
                "max": max(values),
                "count": len(values),
            }
            for metric, values in per_metric.items()
        }

        health_values = per_metric.get("healthScore", [])
        return {
            "total_sources": len(result.sources),
            "successful_sources": len(successful),
            "failed_sources": len(result.sources) - len(successful),
            "overall_health": (sum(health_values) / len(health_values)) if health_values else None,
            "average_quality": (
                sum(p.quality_ratio for p in successful) / len(successful) if successful else 0.0
            ),
            "key_metrics": key_metrics,
        }

    def _generate_insights(self, result: ProcessedResult) -> Dict[str, Any]:
        alerts: List[Dict[str, Any]] = []
        recommendations: List[str] = []

        overall = result.aggregated.get("overall_health")
        if overall is not None and overall < self.config.processing.health_alert_threshold:
            alerts.append({
                "type": "health",
                "severity": "critical" if overall < 50 else "warning",
                "message": f"Overall health score is {overall:.1f}",
            })

        for anomaly in result.anomalies:
            if anomaly.severity == Severity.HIGH:
                alerts.append({
                    "type": "anomaly",
                    "severity": "high",
                    "message": (
                        f"{anomaly.metric} on {anomaly.source} is {anomaly.value:.2f}, "
                        f"expected {anomaly.expected_range[0]:.2f}..{anomaly.expected_range[1]:.2f}"
                    ),
                })

        for name, processed in result.sources.items():
            if not processed.success:
                recommendations.append(f"Investigate failing source '{name}': {processed.error}")
            elif processed.quality == DataQuality.POOR:
                recommendations.append(
                    f"Improve data quality for '{name}' "
                    f"({len(processed.dropped_fields)} field(s) dropped)"
                )

        return {
            "data_quality": {
                name: p.quality.value for name, p in result.sources.items() if p.success
            },
            "overall_health": overall,
            "alerts": alerts,
            "recommendations": recommendations,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_buckets(self, source: str, granularity: str = "minute") -> List[AggregationBucket]:
        buckets = self._buckets.get((source, Granularity(granularity)), ())
        return [b.copy() for b in buckets]

    def get_aggregated_data(
        self,
        start_time: int,
        end_time: int,
        interval: str = "hour",
        sources: Optional[List[str]] = None,
        metrics: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Time-bucketed series per source.

        Args:
            start_time: Range start (epoch ms)
            end_time: Range end (epoch ms)
            interval: minute, hour or day
            sources: Restrict to these sources
            metrics: Restrict bucket stats to these metrics

        Returns:
            ``{interval, start_time, end_time, data: {source: [bucket, ...]}}``
            or ``{error}`` for an unknown interval
        """
        try:
            granularity = Granularity(interval)
        except ValueError:
            return {"success": False, "error": f"Unknown interval '{interval}'"}

        if granularity not in self._granularities:
            return {"success": False, "error": f"Interval '{interval}' is not aggregated"}

        data: Dict[str, List[Dict[str, Any]]] = {}
        for (source, bucket_granularity), buckets in self._buckets.items():
            if bucket_granularity != granularity:
                continue
            if sources is not None and source not in sources:
                continue
            data[source] = [
                b.to_dict(metrics)
                for b in buckets
                if b.bucket_end > start_time and b.bucket_start <= end_time
            ]

        return {
            "success": True,
            "interval": granularity.value,
            "start_time": start_time,
            "end_time": end_time,
            "data": data,
        }

    def detect_patterns(
        self,
        time_range_ms: int = HOUR_MS,
        sources: Optional[List[str]] = None,
        pattern_types: Optional[List[str]] = None,
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Best-effort pattern search over bucket averages.

        ``trend`` and ``spike`` are implemented; ``seasonal`` and
        ``cyclical`` are accepted and always yield no findings.
        """
        end = now if now is not None else self.clock()
        start = end - time_range_ms
        types = set(pattern_types or PATTERN_TYPES)
        names = sources if sources is not None else sorted({s for s, _ in self._buckets})

        patterns: List[Dict[str, Any]] = []
        for source in names:
            for metric, points in self._bucket_series(source, start, end).items():
                if len(points) < MIN_PATTERN_POINTS:
                    continue
                values = [v for _, v in points]
                if "trend" in types:
                    trend = self._trend_pattern(source, metric, values)
                    if trend:
                        patterns.append(trend)
                if "spike" in types:
                    patterns.extend(self._spike_patterns(source, metric, points))

        by_type: Dict[str, int] = {}
        for pattern in patterns:
            by_type[pattern["type"]] = by_type.get(pattern["type"], 0) + 1

        total = len(patterns)
        if total > 10:
            significance = "high"
        elif total > 3:
            significance = "medium"
        else:
            significance = "low"

        return {
            "time_range": {"start": start, "end": end},
            "patterns": patterns,
            "summary": {"total": total, "by_type": by_type, "significance": significance},
        }

    def _bucket_series(self, source: str, start: int, end: int) -> Dict[str, List[Tuple[int, float]]]:
        """Average per metric from the finest granularity with enough buckets."""
        series: Dict[str, List[Tuple[int, float]]] = {}
        for granularity in sorted(self._granularities, key=lambda g: g.window_ms):
            buckets = [
                b for b in self._buckets.get((source, granularity), ())
                if start <= b.bucket_start <= end
            ]
            if len(buckets) < MIN_PATTERN_POINTS:
                continue
            for bucket in buckets:
                for metric, stats in bucket.metrics.items():
                    series.setdefault(metric, []).append((bucket.bucket_start, stats.avg))
            break
        return series

    @staticmethod
    def _trend_pattern(source: str, metric: str, values: List[float]) -> Optional[Dict[str, Any]]:
        fit = StatisticsCalculator.linear_regression(list(range(len(values))), values)
        if abs(fit.slope) <= PATTERN_SLOPE_THRESHOLD:
            return None
        return {
            "type": "trend",
            "source": source,
            "metric": metric,
            "direction": "increasing" if fit.slope > 0 else "decreasing",
            "slope": fit.slope,
            "strength": fit.r_squared,
            "significance": "high" if abs(fit.slope) > STRONG_PATTERN_SLOPE else "medium",
        }

    @staticmethod
    def _spike_patterns(source: str, metric: str, points: List[Tuple[int, float]]) -> List[Dict[str, Any]]:
        values = [v for _, v in points]
        mean = StatisticsCalculator.mean(values)
        std = StatisticsCalculator.standard_deviation(values)
        if std == 0:
            return []
        limit = mean + SPIKE_SIGMA * std
        return [
            {
                "type": "spike",
                "source": source,
                "metric": metric,
                "timestamp": timestamp,
                "value": value,
                "threshold": limit,
                "magnitude": (value - mean) / std,
            }
            for timestamp, value in points
            if value > limit
        ]

    def get_recent(self, limit: Optional[int] = None) -> List[ProcessedResult]:
        results = list(self._recent)
        return results[-limit:] if limit else results

    def cleanup(self, now: Optional[int] = None) -> int:
        """Drop buckets whose window ended before the retention cutoff."""
        cutoff = (now if now is not None else self.clock()) - self.config.processing.retention_period_ms
        removed = 0
        for buckets in self._buckets.values():
            while buckets and buckets[0].bucket_end <= cutoff:
                buckets.popleft()
                removed += 1
        if removed:
            logger.info(f"Removed {removed} expired aggregation bucket(s)")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        processed = self._stats["processed"]
        return {
            "running": self._running,
            "processed": processed,
            "source_errors": self._stats["source_errors"],
            "anomalies_detected": self._stats["anomalies_detected"],
            "late_samples": self._stats["late_samples"],
            "average_processing_ms": (
                self._stats["total_processing_ms"] / processed if processed else 0.0
            ),
            "buckets": sum(len(b) for b in self._buckets.values()),
            "anomaly_algorithm": self.anomaly_detector.algorithm,
        }
