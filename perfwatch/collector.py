"""
Telemetry Collector

Owns the registry of named metric sources, runs collection ticks, isolates
per-source failures, keeps a bounded MetricSeries per source, and computes
weighted cross-source aggregates plus a health score for every tick.

Source adapter contract:
    Any object with a ``collect()`` method (plain or ``async``) returning a
    mapping of field name to number/bool/string. A payload wrapped as
    ``{"values": {...}}`` is unwrapped and nested mappings are flattened
    with dotted keys. An optional ``close()`` is called on ``stop()``.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from .config.schema import MonitoringConfig, ThresholdConfig
from .errors import OutOfOrderSnapshotError, SourceCollectionError, StorageError
from .events import EventBus
from .models import (
    CollectionResult,
    CollectorRegistration,
    ComponentHealth,
    Granularity,
    HealthScore,
    HealthStatus,
    MetricSeries,
    MetricSnapshot,
    OperationResult,
    SourceResult,
    now_ms,
)
from .scheduler import PeriodicTask
from .stats import is_finite_number
from .storage import SnapshotStore
from .telemetry import PipelineTelemetry

logger = logging.getLogger(__name__)

# Score at the warning threshold; falls linearly to 0 at the critical threshold
WARNING_BAND_START_SCORE = 75.0


@runtime_checkable
class MetricSource(Protocol):
    """A pluggable metric source."""

    def collect(self) -> Any:
        ...


# ============================================================================
# Health scoring
# ============================================================================

def score_component(value: float, threshold: ThresholdConfig) -> float:
    """
    Penalty curve for one resource.

    100 below warning, linear from 75 down to 0 between warning and
    critical, 0 at or above critical.
    """
    if value < threshold.warning:
        return 100.0
    if value >= threshold.critical:
        return 0.0
    span = threshold.critical - threshold.warning
    return WARNING_BAND_START_SCORE * (threshold.critical - value) / span


def component_status(value: float, threshold: ThresholdConfig) -> HealthStatus:
    if value >= threshold.critical:
        return HealthStatus.CRITICAL
    if value >= threshold.warning:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def compute_health(
    aggregated: Mapping[str, Mapping[str, float]],
    config: MonitoringConfig,
) -> HealthScore:
    """
    Score every configured health component present in ``aggregated``.

    Components whose metric (or threshold) is missing are left out of the
    average; with no components at all the system is reported healthy.
    """
    components: Dict[str, ComponentHealth] = {}

    for name, component in config.health.components.items():
        threshold = config.thresholds.get(component.metric)
        if threshold is None:
            continue

        value: Optional[float] = None
        if component.category is not None:
            value = aggregated.get(component.category, {}).get(component.metric)
        else:
            for category_values in aggregated.values():
                if component.metric in category_values:
                    value = category_values[component.metric]
                    break

        if value is None:
            continue

        components[name] = ComponentHealth(
            name=name,
            metric=component.metric,
            value=value,
            score=score_component(value, threshold),
            status=component_status(value, threshold),
            warning=threshold.warning,
            critical=threshold.critical,
        )

    if components:
        overall = sum(c.score for c in components.values()) / len(components)
    else:
        overall = 100.0

    return HealthScore(value=overall, status=HealthStatus.from_score(overall), components=components)


def flatten_values(values: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dotted keys."""
    flat: Dict[str, Any] = {}
    for key, value in values.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_values(value, name))
        else:
            flat[name] = value
    return flat


# ============================================================================
# Collector
# ============================================================================

class TelemetryCollector:
    """
    Registry and scheduler for metric sources.

    The collector is the single writer of its registrations and series. All
    query methods return copies.
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        store: Optional[SnapshotStore] = None,
        telemetry: Optional[PipelineTelemetry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or MonitoringConfig()
        self.store = store
        self.telemetry = telemetry
        self.clock = clock
        self.events = EventBus("collector")

        self._registry: Dict[str, CollectorRegistration] = {}
        self._series: Dict[str, MetricSeries] = {}
        self._recent: Deque[CollectionResult] = deque(
            maxlen=self.config.collection.result_buffer_size
        )
        self._active = False
        self._started_at: Optional[int] = None
        self._last_tick_timestamp = 0
        self._schedule: Optional[PeriodicTask] = None
        self._tick_count = 0
        self._snapshot_count = 0

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        source: MetricSource,
        weight: Optional[float] = None,
        category: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> OperationResult:
        """
        Register (or replace) a named source.

        Args:
            name: Unique source name
            source: Object exposing ``collect()``
            weight: Weight in cross-source averages (config default otherwise)
            category: Aggregation category (config default otherwise)
            enabled: Initial enabled flag (config default otherwise)

        Returns:
            OperationResult carrying the registration
        """
        if not callable(getattr(source, "collect", None)):
            return OperationResult.fail(f"Source '{name}' does not provide collect()")

        if name in self._registry:
            logger.warning(f"Collector '{name}' already registered, replacing it")

        source_config = self.config.sources.get(name)
        registration = CollectorRegistration(
            name=name,
            source=source,
            weight=weight if weight is not None else self.config.source_weight(name),
            category=category or self.config.source_category(name),
            enabled=enabled if enabled is not None else (source_config.enabled if source_config else True),
            registered_at=self.clock(),
        )
        self._registry[name] = registration
        if name not in self._series:
            self._series[name] = MetricSeries(name, self.config.collection.retention_limit)

        logger.info(
            f"Registered collector '{name}' "
            f"(weight={registration.weight}, category={registration.category})"
        )
        self._update_enabled_gauge()
        self.events.emit("collector-registered", registration.to_dict())
        return OperationResult.ok(registration=registration.to_dict())

    def enable(self, name: str) -> OperationResult:
        """Re-enable a source and reset its consecutive failure count."""
        registration = self._registry.get(name)
        if registration is None:
            return OperationResult.fail(f"Unknown collector '{name}'")
        registration.enabled = True
        registration.consecutive_failures = 0
        registration.disabled_at = None
        logger.info(f"Collector '{name}' enabled")
        self._update_enabled_gauge()
        self.events.emit("collector-enabled", registration.to_dict())
        return OperationResult.ok(registration=registration.to_dict())

    def disable(self, name: str) -> OperationResult:
        registration = self._registry.get(name)
        if registration is None:
            return OperationResult.fail(f"Unknown collector '{name}'")
        self._disable(registration, reason="disabled by operator")
        return OperationResult.ok(registration=registration.to_dict())

    def _disable(self, registration: CollectorRegistration, reason: str) -> None:
        if not registration.enabled:
            return
        registration.enabled = False
        registration.disabled_at = self.clock()
        logger.warning(f"Collector '{registration.name}' disabled: {reason}")
        self._update_enabled_gauge()
        self.events.emit("collector-disabled", {**registration.to_dict(), "reason": reason})

    def _update_enabled_gauge(self) -> None:
        if self.telemetry:
            self.telemetry.set_enabled_sources(sum(1 for r in self._registry.values() if r.enabled))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    async def start(self, schedule: bool = True) -> OperationResult:
        """
        Start collecting.

        Args:
            schedule: Run the collector's own periodic tick. The orchestrator
                passes False and drives ``collect_all`` itself.
        """
        if self._active:
            return OperationResult.fail("Collection already active")

        self._active = True
        self._started_at = self.clock()

        if schedule:
            self._schedule = PeriodicTask(
                "collection",
                self.config.collection.interval_ms / 1000,
                self.collect_all,
            )
            self._schedule.start()

        logger.info(
            f"Collector started with {len(self._registry)} source(s), "
            f"interval {self.config.collection.interval_ms}ms"
        )
        self.events.emit("started", {"timestamp": self._started_at, "sources": list(self._registry)})
        return OperationResult.ok(sources=list(self._registry))

    async def stop(self) -> OperationResult:
        """Cancel the schedule and close sources that expose ``close()``."""
        if not self._active:
            return OperationResult.fail("Collection not active")

        self._active = False
        if self._schedule is not None:
            await self._schedule.stop()
            self._schedule = None

        for registration in self._registry.values():
            close = getattr(registration.source, "close", None)
            if not callable(close):
                continue
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Failed to close collector '{registration.name}': {e}", exc_info=True)

        logger.info(f"Collector stopped after {self._tick_count} tick(s)")
        self.events.emit("stopped", {"timestamp": self.clock(), "ticks": self._tick_count})
        return OperationResult.ok(ticks=self._tick_count)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect_all(self) -> CollectionResult:
        """
        Run one collection tick over every enabled source.

        Returns:
            CollectionResult; ``success`` is False only when the collector is
            not active (or was stopped while the tick was in flight).
        """
        timestamp = max(self.clock(), self._last_tick_timestamp)

        if not self._active:
            return CollectionResult(timestamp=timestamp, success=False, error="Collection not active")

        self._last_tick_timestamp = timestamp
        enabled = [r for r in self._registry.values() if r.enabled]

        outcomes = await asyncio.gather(
            *(self._collect_source(r, timestamp) for r in enabled)
        )

        if not self._active:
            logger.info("Discarding collection results that completed after stop()")
            return CollectionResult(
                timestamp=timestamp, success=False, error="Collection stopped during tick"
            )

        result = CollectionResult(timestamp=timestamp)
        for registration, outcome in zip(enabled, outcomes):
            result.sources[registration.name] = self._record_outcome(registration, outcome)

        result.aggregated = self._aggregate(result.sources)
        result.health = compute_health(result.aggregated, self.config)

        self._tick_count += 1
        self._recent.append(result)

        if self.telemetry:
            self.telemetry.track_tick(success=True)
            self.telemetry.set_health_score(result.health.value)

        failed = result.failed_sources
        if failed:
            logger.warning(
                f"Collection tick: {len(result.successful_sources)} ok, "
                f"{len(failed)} failed ({', '.join(failed)})"
            )
        else:
            logger.debug(f"Collection tick: {len(result.sources)} source(s) ok")

        self.events.emit("metrics-collected", result)
        return result

    async def _collect_source(self, registration: CollectorRegistration, timestamp: int) -> SourceResult:
        """Invoke one adapter. Never raises."""
        start = time.perf_counter()
        try:
            raw = await self._invoke(registration)
            values = self._normalize_payload(registration.name, raw)
            duration_ms = (time.perf_counter() - start) * 1000
            return SourceResult(
                source=registration.name,
                success=True,
                timestamp=timestamp,
                values=values,
                duration_ms=duration_ms,
                weight=registration.weight,
                category=registration.category,
            )
        except asyncio.TimeoutError:
            error = f"Timed out after {self.config.collection.source_timeout_seconds}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        duration_ms = (time.perf_counter() - start) * 1000
        return SourceResult(
            source=registration.name,
            success=False,
            timestamp=timestamp,
            error=error,
            duration_ms=duration_ms,
            weight=registration.weight,
            category=registration.category,
        )

    async def _invoke(self, registration: CollectorRegistration) -> Any:
        collect = registration.source.collect
        if inspect.iscoroutinefunction(collect):
            call = collect()
        else:
            call = self._call_sync(collect)

        timeout = self.config.collection.source_timeout_seconds
        if timeout is not None:
            return await asyncio.wait_for(call, timeout=timeout)
        return await call

    @staticmethod
    async def _call_sync(collect: Callable[[], Any]) -> Any:
        result = await asyncio.to_thread(collect)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _normalize_payload(name: str, raw: Any) -> Dict[str, Any]:
        if not isinstance(raw, Mapping):
            raise SourceCollectionError(name, f"collect() returned {type(raw).__name__}, expected a mapping")
        if "values" in raw and isinstance(raw["values"], Mapping):
            raw = raw["values"]
        return flatten_values(raw)

    def _record_outcome(self, registration: CollectorRegistration, outcome: SourceResult) -> SourceResult:
        """Update registry and series with a source outcome (tick is the only writer)."""
        registration.last_collection_time = outcome.timestamp

        if self.telemetry:
            self.telemetry.track_source_collection(
                registration.name, outcome.duration_ms / 1000, outcome.success
            )

        if not outcome.success:
            registration.error_count += 1
            registration.consecutive_failures += 1
            registration.last_error = outcome.error
            logger.error(
                f"Collector '{registration.name}' failed "
                f"({registration.consecutive_failures} consecutive): {outcome.error}"
            )
            if registration.consecutive_failures > self.config.collection.failure_threshold:
                self._disable(
                    registration,
                    reason=f"{registration.consecutive_failures} consecutive failures",
                )
            return outcome

        registration.consecutive_failures = 0
        snapshot = MetricSnapshot(
            source=registration.name,
            timestamp=outcome.timestamp,
            values=outcome.values,
            duration_ms=outcome.duration_ms,
        )
        series = self._series.setdefault(
            registration.name,
            MetricSeries(registration.name, self.config.collection.retention_limit),
        )
        try:
            series.append(snapshot)
            self._snapshot_count += 1
        except OutOfOrderSnapshotError as e:
            logger.warning(f"Dropping snapshot for '{registration.name}': {e}")

        if self.store is not None:
            try:
                self.store.append(snapshot)
            except StorageError as e:
                logger.error(f"Snapshot store rejected '{registration.name}': {e}")
                if self.telemetry:
                    self.telemetry.track_error("collector", type(e).__name__)

        return outcome

    def _aggregate(self, sources: Mapping[str, SourceResult]) -> Dict[str, Dict[str, float]]:
        """Weighted average of numeric fields, keyed by category then field."""
        totals: Dict[str, Dict[str, List[float]]] = {}

        for result in sources.values():
            if not result.success:
                continue
            category = totals.setdefault(result.category, {})
            for key, value in result.values.items():
                if not is_finite_number(value):
                    continue
                acc = category.setdefault(key, [0.0, 0.0])
                acc[0] += value * result.weight
                acc[1] += result.weight

        return {
            category: {
                key: weighted / weight
                for key, (weighted, weight) in fields.items()
                if weight > 0
            }
            for category, fields in totals.items()
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_registrations(self) -> Dict[str, Dict[str, Any]]:
        return {name: r.to_dict() for name, r in self._registry.items()}

    def get_registration(self, name: str) -> Optional[Dict[str, Any]]:
        registration = self._registry.get(name)
        return registration.to_dict() if registration else None

    def get_series(self, source: str) -> List[MetricSnapshot]:
        series = self._series.get(source)
        return series.snapshots() if series else []

    def get_latest(self) -> Dict[str, MetricSnapshot]:
        return {
            name: series.latest()
            for name, series in self._series.items()
            if series.latest() is not None
        }

    def get_recent_results(self, limit: Optional[int] = None) -> List[CollectionResult]:
        results = list(self._recent)
        return results[-limit:] if limit else results

    def get_last_result(self) -> Optional[CollectionResult]:
        return self._recent[-1] if self._recent else None

    def get_history(
        self,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        sources: Optional[List[str]] = None,
        aggregation: str = "raw",
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Historical values per source.

        Args:
            start_time: Inclusive start (epoch ms)
            end_time: Inclusive end (epoch ms)
            sources: Restrict to these sources (all by default)
            aggregation: ``raw`` or a granularity (minute/hour/day) to average into

        Returns:
            Mapping of source name to a list of ``{timestamp, values}`` points
        """
        names = sources if sources is not None else list(self._series)
        history: Dict[str, List[Dict[str, Any]]] = {}

        for name in names:
            series = self._series.get(name)
            if series is None:
                continue
            snapshots = series.window(start_time, end_time)
            if aggregation == "raw":
                history[name] = [
                    {"timestamp": s.timestamp, "values": dict(s.values)} for s in snapshots
                ]
            else:
                history[name] = self._average_snapshots(snapshots, Granularity(aggregation))

        return history

    @staticmethod
    def _average_snapshots(snapshots: List[MetricSnapshot], granularity: Granularity) -> List[Dict[str, Any]]:
        window = granularity.window_ms
        buckets: Dict[int, Dict[str, List[float]]] = {}
        for snapshot in snapshots:
            start = (snapshot.timestamp // window) * window
            bucket = buckets.setdefault(start, {})
            for key, value in snapshot.values.items():
                if is_finite_number(value):
                    bucket.setdefault(key, []).append(value)

        return [
            {
                "timestamp": start,
                "values": {key: sum(vals) / len(vals) for key, vals in fields.items()},
                "samples": max((len(vals) for vals in fields.values()), default=0),
            }
            for start, fields in sorted(buckets.items())
        ]

    def get_source_status(self) -> Dict[str, Dict[str, Any]]:
        """Registration plus series size for every source."""
        status = {}
        for name, registration in self._registry.items():
            series = self._series.get(name)
            latest = series.latest() if series else None
            status[name] = {
                **registration.to_dict(),
                "data_points": len(series) if series else 0,
                "last_snapshot": latest.timestamp if latest else None,
            }
        return status

    def prune(self, cutoff: int) -> int:
        """Drop snapshots older than ``cutoff`` from every series."""
        removed = sum(series.prune_before(cutoff) for series in self._series.values())
        if removed:
            logger.info(f"Pruned {removed} snapshot(s) older than {cutoff}")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active": self._active,
            "uptime_ms": (self.clock() - self._started_at) if self._active and self._started_at else 0,
            "ticks": self._tick_count,
            "snapshots_collected": self._snapshot_count,
            "snapshots_retained": sum(len(s) for s in self._series.values()),
            "sources": len(self._registry),
            "enabled_sources": sum(1 for r in self._registry.values() if r.enabled),
        }
