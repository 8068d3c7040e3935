"""
Monitoring Orchestrator

Composes collector, processor, analyzer and alert manager into one
pipeline:

    collect_all -> process -> alert check -> analyzer update -> metrics-collected

Start order is registry init, processor, analyzer, collector, then the
collection and cleanup ticks; stop runs in reverse. A failing step during
``start`` is reported as ``{success: False, error}`` and already started
components are left running until ``stop`` is called, which tears down
whatever did start.

Component events are re-emitted on the orchestrator's own bus, so callers
subscribe in one place.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .alerts import AlertManager
from .analyzer import PerformanceAnalyzer
from .collector import MetricSource, TelemetryCollector
from .config.schema import MonitoringConfig
from .events import Event, EventBus
from .models import (
    CollectionResult,
    HOUR_MS,
    OperationResult,
    ProcessedResult,
    TimeRange,
    now_ms,
)
from .processor import DataProcessor
from .scheduler import PeriodicTask
from .storage import AnalysisStateStore, SnapshotStore
from .telemetry import PipelineTelemetry

logger = logging.getLogger(__name__)


class MonitoringOrchestrator:
    """Lifecycle and query surface of the monitoring pipeline."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        sources: Optional[Mapping[str, MetricSource]] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        state_store: Optional[AnalysisStateStore] = None,
        telemetry: Optional[PipelineTelemetry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Monitoring configuration (defaults when omitted)
            sources: Sources registered when the orchestrator starts
            snapshot_store: Durable store for raw snapshots
            state_store: Durable store for analyzer state
            telemetry: Pipeline telemetry; created from config when omitted
            clock: Epoch-millisecond clock
        """
        self.config = config or MonitoringConfig()
        self.clock = clock
        if telemetry is None and self.config.telemetry.enabled:
            telemetry = PipelineTelemetry(
                enable_http_server=self.config.telemetry.enable_http_server,
                port=self.config.telemetry.port,
            )
        self.telemetry = telemetry
        self.events = EventBus("orchestrator")

        self.collector = TelemetryCollector(self.config, snapshot_store, telemetry, clock)
        self.processor = DataProcessor(self.config, telemetry, clock)
        self.analyzer = PerformanceAnalyzer(self.config, state_store, telemetry, clock)
        self.alerts = AlertManager(self.config, telemetry, clock)

        self._initial_sources: Dict[str, MetricSource] = dict(sources or {})
        self._running = False
        self._started_components: List[str] = []
        self._started_at: Optional[int] = None
        self._collection_task: Optional[PeriodicTask] = None
        self._cleanup_task: Optional[PeriodicTask] = None
        self._last_processed: Optional[ProcessedResult] = None

        self._wire_events()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _wire_events(self) -> None:
        self.collector.events.subscribe("collector-registered", self._forward)
        self.collector.events.subscribe("collector-disabled", self._forward)
        self.collector.events.subscribe("collector-enabled", self._forward)
        self.processor.events.subscribe("anomaly-detected", self._forward)
        self.analyzer.events.subscribe("bottlenecks-detected", self._forward_bottlenecks)
        self.analyzer.events.subscribe("analysis-completed", self._forward)
        self.alerts.events.subscribe("alert-triggered", self._forward)
        self.alerts.events.subscribe("alert-updated", self._forward)
        self.alerts.events.subscribe("alert-resolved", self._forward)

    def _forward(self, event: Event) -> None:
        self.events.emit(event.name, event.payload)

    def _forward_bottlenecks(self, event: Event) -> None:
        for bottleneck in event.payload:
            self.events.emit("bottleneck-detected", bottleneck)

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> Callable[[], None]:
        return self.events.subscribe(event_name, handler)

    # ------------------------------------------------------------------
    # Registry and lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def register_collector(
        self,
        name: str,
        source: MetricSource,
        weight: Optional[float] = None,
        category: Optional[str] = None,
    ) -> OperationResult:
        return self.collector.register(name, source, weight=weight, category=category)

    async def start(self) -> OperationResult:
        """Start every component and the periodic ticks."""
        if self._running:
            return OperationResult.fail("Monitoring already running")
        if self._started_components:
            return OperationResult.fail(
                f"Monitoring partially started ({', '.join(self._started_components)}); call stop() first"
            )

        logger.info("Starting monitoring pipeline")

        for name, source in self._initial_sources.items():
            if self.collector.get_registration(name) is None:
                result = self.collector.register(name, source)
                if not result.success:
                    return OperationResult.fail(f"Failed to register '{name}': {result.error}")

        steps = (
            ("processor", self.processor.start),
            ("analyzer", self.analyzer.start),
            ("collector", lambda: self.collector.start(schedule=False)),
        )
        for component, start in steps:
            try:
                result = await start()
            except Exception as e:
                logger.error(f"Failed to start {component}: {e}", exc_info=True)
                return OperationResult.fail(f"Failed to start {component}: {e}")
            if not result.success:
                logger.error(f"Failed to start {component}: {result.error}")
                return OperationResult.fail(f"Failed to start {component}: {result.error}")
            self._started_components.append(component)

        self._collection_task = PeriodicTask(
            "collection", self.config.collection.interval_ms / 1000, self.collect_metrics
        )
        self._cleanup_task = PeriodicTask(
            "cleanup", self.config.cleanup.interval_ms / 1000, self._cleanup
        )
        self._collection_task.start()
        self._cleanup_task.start()

        self._running = True
        self._started_at = self.clock()
        collectors = list(self.collector.get_registrations())
        logger.info(f"Monitoring started with {len(collectors)} collector(s)")
        self.events.emit("started", {"timestamp": self._started_at, "collectors": collectors})
        return OperationResult.ok(collectors=collectors)

    async def stop(self) -> OperationResult:
        """
        Stop ticks and every started component in reverse start order.

        Also cleans up after a ``start`` that failed partway.
        """
        if not self._running and not self._started_components:
            return OperationResult.fail("Monitoring not running")

        logger.info("Stopping monitoring pipeline")
        self._running = False

        for task in (self._cleanup_task, self._collection_task):
            if task is not None:
                await task.stop()
        self._collection_task = None
        self._cleanup_task = None

        stops = {
            "collector": self.collector.stop,
            "analyzer": self.analyzer.stop,
            "processor": self.processor.stop,
        }
        started = list(reversed(self._started_components))
        self._started_components = []

        errors: List[str] = []
        final_analysis = None
        for component in started:
            stop = stops[component]
            try:
                result = await stop()
            except Exception as e:
                logger.error(f"Failed to stop {component}: {e}", exc_info=True)
                errors.append(f"{component}: {e}")
                continue
            if not result.success:
                errors.append(f"{component}: {result.error}")
            elif component == "analyzer":
                final_analysis = result.data.get("final_analysis")

        self.events.emit("stopped", {"timestamp": self.clock()})
        if errors:
            logger.warning(f"Monitoring stopped with errors: {errors}")
            return OperationResult.fail("; ".join(errors), final_analysis=final_analysis)

        logger.info("Monitoring stopped")
        return OperationResult.ok(final_analysis=final_analysis)

    async def _cleanup(self) -> None:
        now = self.clock()
        self.collector.prune(now - self.config.collection.retention_period_ms)
        self.processor.cleanup(now)
        self.alerts.cleanup()

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect_metrics(self) -> CollectionResult:
        """One full tick: collect, process, check alerts, update analyzer."""
        if not self._running:
            return CollectionResult(timestamp=self.clock(), success=False, error="Monitoring not running")

        collection = await self.collector.collect_all()
        if not collection.success:
            if self.telemetry:
                self.telemetry.track_tick(success=False)
            return collection

        processed = self.processor.process(collection)
        self._last_processed = processed
        self.alerts.check_metrics(collection)
        self.analyzer.update_metrics(processed)

        self.events.emit("metrics-collected", {"collection": collection, "processed": processed})
        return collection

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_metrics(self) -> Dict[str, Any]:
        """Latest snapshot per source plus the last tick's aggregates and health."""
        last = self.collector.get_last_result()
        return {
            "timestamp": last.timestamp if last else None,
            "sources": {
                name: snapshot.to_dict() for name, snapshot in self.collector.get_latest().items()
            },
            "aggregated": last.to_dict()["aggregated"] if last else {},
            "health": last.health.to_dict() if last and last.health else None,
            "processed": self._last_processed.to_dict() if self._last_processed else None,
        }

    def get_historical_metrics(
        self,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        collectors: Optional[List[str]] = None,
        aggregation: str = "raw",
    ) -> Dict[str, Any]:
        """
        Historical metrics per collector.

        Args:
            start_time: Range start (default one hour ago)
            end_time: Range end (default now)
            collectors: Restrict to these collectors
            aggregation: raw, minute, hour or day
        """
        end = end_time if end_time is not None else self.clock()
        start = start_time if start_time is not None else end - HOUR_MS
        if aggregation not in ("raw", "minute", "hour", "day"):
            return {"success": False, "error": f"Unknown aggregation '{aggregation}'"}
        return {
            "success": True,
            "start_time": start,
            "end_time": end,
            "aggregation": aggregation,
            "data": self.collector.get_history(start, end, collectors, aggregation),
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Composed read-only view for dashboards."""
        now = self.clock()
        last = self.collector.get_last_result()
        status = self.collector.get_source_status()
        latest_report = self.analyzer.get_latest_report()
        stats = self.collector.get_stats()

        return {
            "timestamp": now,
            "health": last.health.to_dict() if last and last.health else None,
            "metrics": self.get_current_metrics()["sources"],
            "trends": self._recent_trends(now),
            "alerts": self.alerts.get_active_alerts(),
            "collectors": status,
            "analysis": latest_report.summary if latest_report and latest_report.success else None,
            "summary": {
                "running": self._running,
                "uptime_ms": (now - self._started_at) if self._running and self._started_at else 0,
                "total_collectors": len(status),
                "active_collectors": sum(1 for s in status.values() if s["enabled"]),
                "active_alerts": len(self.alerts.get_active_alerts()),
                "data_points": stats["snapshots_retained"],
                "ticks": stats["ticks"],
            },
        }

    def _recent_trends(self, now: int) -> Dict[str, Dict[str, Any]]:
        """Percent change of each numeric field over the last hour, per source."""
        trends: Dict[str, Dict[str, Any]] = {}
        history = self.collector.get_history(now - HOUR_MS, now)
        for source, points in history.items():
            if len(points) < 2:
                continue
            first, last = points[0]["values"], points[-1]["values"]
            changes = {}
            for key, value in last.items():
                previous = first.get(key)
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                if isinstance(previous, bool) or not isinstance(previous, (int, float)) or previous == 0:
                    continue
                change = (value - previous) / abs(previous) * 100
                changes[key] = {
                    "change_percent": round(change, 2),
                    "direction": "up" if change > 0 else "down" if change < 0 else "flat",
                }
            trends[source] = changes
        return trends

    def analyze_performance(
        self,
        time_range: Optional[TimeRange] = None,
        include_anomaly: bool = True,
        include_bottleneck: bool = True,
        include_trend: bool = True,
        include_optimization: bool = True,
    ) -> Dict[str, Any]:
        """Analyzer report plus active alerts and recommendations."""
        report = self.analyzer.analyze_all(
            time_range=time_range,
            include_anomaly=include_anomaly,
            include_bottleneck=include_bottleneck,
            include_trend=include_trend,
            include_optimization=include_optimization,
        )
        result = report.to_dict()
        result["alerts"] = self.alerts.get_active_alerts()

        recommendations: List[str] = []
        if report.optimization:
            recommendations.extend(s["title"] for s in report.optimization["suggestions"])
        if self._last_processed is not None:
            recommendations.extend(self._last_processed.insights.get("recommendations", []))
        result["recommendations"] = recommendations
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "started_at": self._started_at,
            "collector": self.collector.get_stats(),
            "processor": self.processor.get_stats(),
            "analyzer": self.analyzer.get_status(),
            "alerts": self.alerts.get_statistics(),
        }
