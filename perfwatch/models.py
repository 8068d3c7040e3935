"""
Data model for the perfwatch monitoring core.

All timestamps are integer milliseconds since the Unix epoch. Every object
that crosses a component boundary has a ``to_dict`` so query results can be
serialised without reaching into internals.
"""

import copy
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Deque, Dict, Iterator, List, Mapping, Optional, Tuple

from .errors import OutOfOrderSnapshotError


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


# ============================================================================
# Enums
# ============================================================================

class Granularity(str, Enum):
    """Aggregation window sizes."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def window_ms(self) -> int:
        return {
            Granularity.MINUTE: MINUTE_MS,
            Granularity.HOUR: HOUR_MS,
            Granularity.DAY: DAY_MS,
        }[self]


class HealthStatus(str, Enum):
    """Health classification of a score."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "HealthStatus":
        if score >= 80:
            return cls.HEALTHY
        if score >= 60:
            return cls.WARNING
        return cls.CRITICAL


class Severity(str, Enum):
    """Severity of anomalies, bottlenecks, alerts and suggestion priorities."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {
            Severity.LOW: 1,
            Severity.MEDIUM: 2,
            Severity.HIGH: 3,
            Severity.CRITICAL: 4,
        }[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank


class TrendDirection(str, Enum):
    """Direction of a fitted trend line."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class DataQuality(str, Enum):
    """Quality grade for a cleaned snapshot."""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @classmethod
    def from_ratio(cls, ratio: float) -> "DataQuality":
        if ratio >= 0.9:
            return cls.EXCELLENT
        if ratio >= 0.7:
            return cls.GOOD
        if ratio >= 0.5:
            return cls.FAIR
        return cls.POOR


# ============================================================================
# Generic results
# ============================================================================

@dataclass
class OperationResult:
    """Outcome of a lifecycle or registry operation."""
    success: bool
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data: Any) -> "OperationResult":
        return cls(success=False, error=error, data=data)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            result["error"] = self.error
        result.update(self.data)
        return result


@dataclass(frozen=True)
class TimeRange:
    """Closed time interval ``[start, end]`` in epoch milliseconds."""
    start: int
    end: int

    @classmethod
    def last(cls, duration_ms: int, now: Optional[int] = None) -> "TimeRange":
        end = now if now is not None else now_ms()
        return cls(start=end - duration_ms, end=end)

    @property
    def duration_ms(self) -> int:
        return self.end - self.start

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp <= self.end

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}


# ============================================================================
# Snapshots and series
# ============================================================================

@dataclass(frozen=True)
class MetricSnapshot:
    """One timestamped read of every field from a single source."""
    source: str
    timestamp: int
    values: Mapping[str, Any]
    duration_ms: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "timestamp": self.timestamp,
            "values": dict(self.values),
            "_meta": {
                "duration_ms": self.duration_ms,
                "timestamp": self.timestamp,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetricSnapshot":
        meta = data.get("_meta", {})
        return cls(
            source=data["source"],
            timestamp=int(data["timestamp"]),
            values=data.get("values", {}),
            duration_ms=float(meta.get("duration_ms", 0.0)),
        )


class MetricSeries:
    """
    Ordered, bounded sequence of snapshots for a single source.

    Insertion order is time order. Once ``retention_limit`` snapshots are
    held the oldest one is evicted on every append.
    """

    def __init__(self, source: str, retention_limit: int):
        if retention_limit < 1:
            raise ValueError("retention_limit must be at least 1")
        self.source = source
        self.retention_limit = retention_limit
        self._snapshots: Deque[MetricSnapshot] = deque(maxlen=retention_limit)

    def append(self, snapshot: MetricSnapshot) -> None:
        if snapshot.source != self.source:
            raise ValueError(
                f"Snapshot for '{snapshot.source}' appended to series '{self.source}'"
            )
        latest = self.latest()
        if latest is not None and snapshot.timestamp < latest.timestamp:
            raise OutOfOrderSnapshotError(
                f"Snapshot at {snapshot.timestamp} is older than {latest.timestamp} "
                f"in series '{self.source}'"
            )
        self._snapshots.append(snapshot)

    def latest(self) -> Optional[MetricSnapshot]:
        return self._snapshots[-1] if self._snapshots else None

    def snapshots(self) -> List[MetricSnapshot]:
        return list(self._snapshots)

    def window(self, start: Optional[int] = None, end: Optional[int] = None) -> List[MetricSnapshot]:
        return [
            s for s in self._snapshots
            if (start is None or s.timestamp >= start) and (end is None or s.timestamp <= end)
        ]

    def prune_before(self, cutoff: int) -> int:
        """Drop snapshots older than ``cutoff``. Returns how many were removed."""
        removed = 0
        while self._snapshots and self._snapshots[0].timestamp < cutoff:
            self._snapshots.popleft()
            removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[MetricSnapshot]:
        return iter(list(self._snapshots))


# ============================================================================
# Aggregation buckets
# ============================================================================

@dataclass
class BucketStats:
    """Running statistics of one metric inside one bucket."""
    sum: float = 0.0
    count: int = 0
    min: float = float("inf")
    max: float = float("-inf")
    avg: float = 0.0

    def add(self, value: float) -> None:
        self.sum += value
        self.count += 1
        if value < self.min:
            self.min = value
        if value > self.max:
            self.max = value
        self.avg = self.sum / self.count

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class AggregationBucket:
    """Aggregated statistics of a source over one aligned time window."""
    source: str
    granularity: Granularity
    bucket_start: int
    window_ms: int
    count: int = 0
    metrics: Dict[str, BucketStats] = field(default_factory=dict)

    @property
    def bucket_end(self) -> int:
        return self.bucket_start + self.window_ms

    def add(self, values: Mapping[str, float]) -> None:
        self.count += 1
        for name, value in values.items():
            self.metrics.setdefault(name, BucketStats()).add(value)

    def copy(self) -> "AggregationBucket":
        return copy.deepcopy(self)

    def to_dict(self, metrics: Optional[List[str]] = None) -> Dict[str, Any]:
        return {
            "source": self.source,
            "granularity": self.granularity.value,
            "bucket_start": self.bucket_start,
            "bucket_end": self.bucket_end,
            "count": self.count,
            "metrics": {
                name: stats.to_dict()
                for name, stats in self.metrics.items()
                if metrics is None or name in metrics
            },
        }


# ============================================================================
# Analysis findings
# ============================================================================

@dataclass
class Anomaly:
    """A single value that deviates from its recent window."""
    timestamp: int
    source: str
    metric: str
    value: float
    expected_range: Tuple[float, float]
    deviation_score: float
    severity: Severity
    algorithm: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "source": self.source,
            "metric": self.metric,
            "value": self.value,
            "expected_range": list(self.expected_range),
            "deviation_score": round(self.deviation_score, 4),
            "severity": self.severity.value,
            "algorithm": self.algorithm,
        }


@dataclass
class Bottleneck:
    """A sustained threshold breach on one metric."""
    type: str
    severity: Severity
    start_time: int
    end_time: int
    max_value: float
    avg_value: float
    threshold: float
    critical_threshold: float
    sample_count: int

    @property
    def duration_ms(self) -> int:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "max_value": self.max_value,
            "avg_value": round(self.avg_value, 4),
            "threshold": self.threshold,
            "critical_threshold": self.critical_threshold,
            "sample_count": self.sample_count,
        }


@dataclass
class TrendModel:
    """Fitted linear relationship between sample index and metric value."""
    metric: str
    slope: float = 0.0
    intercept: float = 0.0
    r2: float = 0.0
    direction: TrendDirection = TrendDirection.STABLE
    last_trained: Optional[int] = None
    trained: bool = False
    sample_count: int = 0
    residual_std: float = 0.0
    cadence_ms: int = 0
    last_timestamp: Optional[int] = None
    last_index: int = 0
    non_negative: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrendModel":
        values = dict(data)
        values["direction"] = TrendDirection(values.get("direction", "stable"))
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class ForecastPoint:
    """One extrapolated value of a trend line."""
    step: int
    timestamp: int
    predicted_value: float
    confidence: float
    lower: Optional[float] = None
    upper: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrendFinding:
    """A significant trend surfaced by an analysis run."""
    metric: str
    direction: TrendDirection
    slope: float
    intercept: float
    significance: float
    sample_count: int
    forecast: List[ForecastPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "direction": self.direction.value,
            "slope": self.slope,
            "intercept": self.intercept,
            "significance": self.significance,
            "sample_count": self.sample_count,
            "forecast": [p.to_dict() for p in self.forecast],
        }


# ============================================================================
# Health
# ============================================================================

@dataclass
class ComponentHealth:
    """Health of one resource measured against its thresholds."""
    name: str
    metric: str
    value: float
    score: float
    status: HealthStatus
    warning: float
    critical: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class HealthScore:
    """Composite 0-100 health derived from per-resource penalties."""
    value: float
    status: HealthStatus
    components: Dict[str, ComponentHealth] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": round(self.value, 2),
            "status": self.status.value,
            "components": {k: c.to_dict() for k, c in self.components.items()},
        }


# ============================================================================
# Collection
# ============================================================================

@dataclass
class CollectorRegistration:
    """Registry entry for a named metric source."""
    name: str
    source: Any = field(repr=False, compare=False)
    weight: float = 1.0
    category: str = "system"
    enabled: bool = True
    error_count: int = 0
    consecutive_failures: int = 0
    last_collection_time: Optional[int] = None
    last_error: Optional[str] = None
    registered_at: int = field(default_factory=now_ms)
    disabled_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "weight": self.weight,
            "category": self.category,
            "enabled": self.enabled,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_collection_time": self.last_collection_time,
            "last_error": self.last_error,
            "registered_at": self.registered_at,
            "disabled_at": self.disabled_at,
        }


@dataclass
class SourceResult:
    """Per-source outcome of one collection tick."""
    source: str
    success: bool
    timestamp: int
    values: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: float = 0.0
    weight: float = 1.0
    category: str = "system"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "timestamp": self.timestamp,
            "duration_ms": round(self.duration_ms, 3),
            "weight": self.weight,
            "category": self.category,
        }
        if self.success:
            data["values"] = dict(self.values)
        else:
            data["error"] = self.error
        return data


@dataclass
class CollectionResult:
    """Outcome of one collection tick across every enabled source."""
    timestamp: int
    success: bool = True
    error: Optional[str] = None
    sources: Dict[str, SourceResult] = field(default_factory=dict)
    aggregated: Dict[str, Dict[str, float]] = field(default_factory=dict)
    health: Optional[HealthScore] = None

    @property
    def successful_sources(self) -> List[str]:
        return [name for name, r in self.sources.items() if r.success]

    @property
    def failed_sources(self) -> List[str]:
        return [name for name, r in self.sources.items() if not r.success]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "timestamp": self.timestamp}
        if self.error is not None:
            data["error"] = self.error
        data["sources"] = {k: r.to_dict() for k, r in self.sources.items()}
        data["aggregated"] = copy.deepcopy(self.aggregated)
        data["health"] = self.health.to_dict() if self.health else None
        return data


# ============================================================================
# Processing
# ============================================================================

@dataclass
class ProcessedSource:
    """Cleaned and enriched values of one source for one tick."""
    source: str
    success: bool
    timestamp: int
    metrics: Dict[str, float] = field(default_factory=dict)
    quality: DataQuality = DataQuality.POOR
    quality_ratio: float = 0.0
    dropped_fields: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "timestamp": self.timestamp, "error": self.error}
        return {
            "success": True,
            "timestamp": self.timestamp,
            "metrics": dict(self.metrics),
            "quality": self.quality.value,
            "quality_ratio": round(self.quality_ratio, 4),
            "dropped_fields": list(self.dropped_fields),
        }


@dataclass
class ProcessedResult:
    """Output of the processor for one collection result."""
    timestamp: int
    success: bool = True
    error: Optional[str] = None
    sources: Dict[str, ProcessedSource] = field(default_factory=dict)
    aggregated: Dict[str, Any] = field(default_factory=dict)
    anomalies: List[Anomaly] = field(default_factory=list)
    insights: Dict[str, Any] = field(default_factory=dict)
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "timestamp": self.timestamp}
        if self.error is not None:
            data["error"] = self.error
        data.update({
            "sources": {k: s.to_dict() for k, s in self.sources.items()},
            "aggregated": copy.deepcopy(self.aggregated),
            "anomalies": [a.to_dict() for a in self.anomalies],
            "insights": copy.deepcopy(self.insights),
            "processing_time_ms": round(self.processing_time_ms, 3),
        })
        return data


# ============================================================================
# Analysis
# ============================================================================

@dataclass
class AnalysisReport:
    """Result of a full analysis run over a time range."""
    time_range: TimeRange
    timestamp: int = field(default_factory=now_ms)
    anomalies: List[Anomaly] = field(default_factory=list)
    bottlenecks: List[Bottleneck] = field(default_factory=list)
    trends: List[TrendFinding] = field(default_factory=list)
    optimization: Optional[Dict[str, Any]] = None
    summary: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {
                "success": False,
                "error": self.error,
                "time_range": self.time_range.to_dict(),
                "timestamp": self.timestamp,
            }
        return {
            "success": True,
            "time_range": self.time_range.to_dict(),
            "timestamp": self.timestamp,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
            "trends": [t.to_dict() for t in self.trends],
            "optimization": copy.deepcopy(self.optimization),
            "summary": copy.deepcopy(self.summary),
        }
