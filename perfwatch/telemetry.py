"""
Internal telemetry for the perfwatch pipeline.

Tracks:
- Collection ticks and per-source collection latency/outcome
- Anomalies, bottlenecks and alerts produced
- Component errors
- Enabled source count and overall health
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)


class PipelineTelemetry:
    """
    Prometheus metrics describing the monitoring pipeline itself.

    Each instance owns a private registry, so several pipelines (or tests)
    can coexist in one process.
    """

    def __init__(
        self,
        enable_http_server: bool = False,
        port: int = 9102,
        registry: Optional[CollectorRegistry] = None,
    ):
        """
        Initialize pipeline telemetry.

        Args:
            enable_http_server: Expose the registry over HTTP
            port: Port for the Prometheus metrics server
            registry: Registry to use (a new private one by default)
        """
        self.port = port
        self.registry = registry or CollectorRegistry()

        self.collection_ticks_total = Counter(
            'perfwatch_collection_ticks_total',
            'Collection ticks executed',
            ['status'],
            registry=self.registry,
        )

        self.source_collections_total = Counter(
            'perfwatch_source_collections_total',
            'Per-source collection attempts',
            ['source', 'status'],
            registry=self.registry,
        )

        self.source_collection_duration = Histogram(
            'perfwatch_source_collection_duration_seconds',
            'Per-source collect() duration',
            ['source'],
            registry=self.registry,
        )

        self.processing_duration = Histogram(
            'perfwatch_processing_duration_seconds',
            'Time spent processing one collection result',
            registry=self.registry,
        )

        self.anomalies_total = Counter(
            'perfwatch_anomalies_total',
            'Anomalies detected',
            ['algorithm', 'severity'],
            registry=self.registry,
        )

        self.bottlenecks_total = Counter(
            'perfwatch_bottlenecks_total',
            'Sustained bottlenecks detected',
            ['metric', 'severity'],
            registry=self.registry,
        )

        self.alerts_total = Counter(
            'perfwatch_alerts_total',
            'Threshold alerts triggered',
            ['severity'],
            registry=self.registry,
        )

        self.error_total = Counter(
            'perfwatch_error_total',
            'Errors recovered inside the pipeline',
            ['component', 'error_type'],
            registry=self.registry,
        )

        self.enabled_sources = Gauge(
            'perfwatch_enabled_sources',
            'Metric sources currently enabled',
            registry=self.registry,
        )

        self.health_score = Gauge(
            'perfwatch_health_score',
            'Overall health score of the last collection',
            registry=self.registry,
        )

        if enable_http_server:
            self._start_http_server()

    def track_source_collection(self, source: str, duration_seconds: float, success: bool):
        status = "success" if success else "error"
        self.source_collection_duration.labels(source=source).observe(duration_seconds)
        self.source_collections_total.labels(source=source, status=status).inc()

    def track_tick(self, success: bool):
        self.collection_ticks_total.labels(status="success" if success else "error").inc()

    def track_processing(self, duration_seconds: float):
        self.processing_duration.observe(duration_seconds)

    def track_anomaly(self, algorithm: str, severity: str):
        self.anomalies_total.labels(algorithm=algorithm, severity=severity).inc()

    def track_bottleneck(self, metric: str, severity: str):
        self.bottlenecks_total.labels(metric=metric, severity=severity).inc()

    def track_alert(self, severity: str):
        self.alerts_total.labels(severity=severity).inc()

    def track_error(self, component: str, error_type: str):
        """
        Track a recovered error.

        Args:
            component: Component where the error occurred
            error_type: Exception class name or error category
        """
        self.error_total.labels(component=component, error_type=error_type).inc()

    def set_enabled_sources(self, count: int):
        self.enabled_sources.set(count)

    def set_health_score(self, score: float):
        self.health_score.set(score)

    def render(self) -> bytes:
        """Registry contents in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def _start_http_server(self):
        """Start Prometheus metrics HTTP server."""
        try:
            start_http_server(self.port, registry=self.registry)
            logger.info(f"Prometheus metrics server started on port {self.port}")
        except OSError as e:
            logger.error(f"Failed to start Prometheus server on port {self.port}: {e}")
