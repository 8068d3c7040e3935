"""
Configuration Schema Definitions for perfwatch

Uses Pydantic for validation and type safety. Every section has working
defaults, so ``MonitoringConfig()`` is a valid configuration.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AnomalyAlgorithm(str, Enum):
    """Streaming anomaly detection algorithms."""
    ZSCORE = "zscore"
    IQR = "iqr"
    ISOLATION = "isolation"


class ThresholdConfig(BaseModel):
    """Warning/critical levels for one metric (higher values are worse)."""

    warning: float = Field(description="Value at which a metric enters warning")
    critical: float = Field(description="Value at which a metric becomes critical")

    @model_validator(mode="after")
    def check_order(self) -> "ThresholdConfig":
        if self.critical < self.warning:
            raise ValueError(
                f"critical ({self.critical}) must be >= warning ({self.warning})"
            )
        return self


class BoundsConfig(BaseModel):
    """Clamp range applied to a metric during cleaning."""

    min: float = Field(default=float("-inf"))
    max: float = Field(default=float("inf"))

    @model_validator(mode="after")
    def check_order(self) -> "BoundsConfig":
        if self.max < self.min:
            raise ValueError(f"max ({self.max}) must be >= min ({self.min})")
        return self


class SourceConfig(BaseModel):
    """Static settings of a named metric source."""

    enabled: bool = Field(default=True, description="Register the source as enabled")
    weight: float = Field(default=1.0, gt=0, description="Weight in cross-source averages")
    category: Optional[str] = Field(
        default=None,
        description="Aggregation category (system/performance/network/...)"
    )


class CollectionConfig(BaseModel):
    """Collection tick and raw retention."""

    interval_ms: int = Field(default=5000, gt=0, description="Collection interval (ms)")
    retention_limit: int = Field(
        default=10000, ge=1,
        description="Snapshots kept per source (oldest evicted first)"
    )
    retention_period_ms: int = Field(
        default=24 * 60 * 60 * 1000, gt=0,
        description="Maximum age of raw snapshots, enforced by the cleanup tick"
    )
    failure_threshold: int = Field(
        default=5, ge=0,
        description="Consecutive failures tolerated before a source is disabled"
    )
    source_timeout_seconds: Optional[float] = Field(
        default=None, gt=0,
        description="Optional per-source timeout; a timeout counts as a failure"
    )
    result_buffer_size: int = Field(
        default=100, ge=1,
        description="Recent collection results kept for dashboards"
    )
    default_weight: float = Field(default=1.0, gt=0)
    default_category: str = Field(default="system")
    categories: Dict[str, str] = Field(
        default_factory=lambda: {
            "system": "system",
            "process": "performance",
            "network": "network",
            "cli": "cli",
            "git": "performance",
        },
        description="Source name -> aggregation category"
    )


class HealthComponentConfig(BaseModel):
    """A resource scored by the collector's health check."""

    metric: str
    category: Optional[str] = Field(
        default=None,
        description="Aggregation category to read; any category when omitted"
    )


class HealthConfig(BaseModel):
    """Per-resource health components."""

    components: Dict[str, HealthComponentConfig] = Field(
        default_factory=lambda: {
            "cpu": HealthComponentConfig(metric="cpu", category="system"),
            "memory": HealthComponentConfig(metric="memory", category="system"),
            "disk": HealthComponentConfig(metric="disk", category="system"),
            "network": HealthComponentConfig(metric="latency", category="network"),
            "errors": HealthComponentConfig(metric="errorRate"),
        }
    )


class AggregationConfig(BaseModel):
    """Time bucketing."""

    granularities: List[Literal["minute", "hour", "day"]] = Field(
        default_factory=lambda: ["minute", "hour", "day"]
    )
    bucket_limit: int = Field(
        default=1000, ge=1,
        description="Buckets kept per source and granularity"
    )


class ProcessingConfig(BaseModel):
    """Cleaning and processor bookkeeping."""

    bounds: Dict[str, BoundsConfig] = Field(
        default_factory=lambda: {
            "cpu": BoundsConfig(min=0, max=100),
            "memory": BoundsConfig(min=0, max=100),
            "disk": BoundsConfig(min=0, max=100),
            "latency": BoundsConfig(min=0, max=60000),
            "errorRate": BoundsConfig(min=0, max=100),
        }
    )
    derive_metrics: bool = Field(default=True)
    retention_period_ms: int = Field(
        default=30 * 24 * 60 * 60 * 1000, gt=0,
        description="Maximum age of aggregation buckets"
    )
    stream_buffer_size: int = Field(default=1000, ge=1)
    health_alert_threshold: float = Field(
        default=70.0,
        description="Overall derived health below which an insight alert is raised"
    )


class AnomalyConfig(BaseModel):
    """Streaming anomaly detection."""

    enabled: bool = Field(default=True)
    algorithm: AnomalyAlgorithm = Field(default=AnomalyAlgorithm.ZSCORE)
    z_threshold: float = Field(default=2.5, gt=0)
    z_high_threshold: float = Field(default=3.0, gt=0)
    iqr_multiplier: float = Field(default=1.5, gt=0)
    iqr_high_multiplier: float = Field(default=3.0, gt=0)
    isolation_threshold: float = Field(default=0.7, gt=0)
    isolation_high_threshold: float = Field(default=0.9, gt=0)
    window_size: int = Field(default=100, ge=2)
    min_data_points: int = Field(default=20, ge=2)

    @model_validator(mode="after")
    def check_window(self) -> "AnomalyConfig":
        if self.min_data_points > self.window_size:
            raise ValueError("min_data_points cannot exceed window_size")
        return self


class BottleneckConfig(BaseModel):
    """Sustained bottleneck detection."""

    enabled: bool = Field(default=True)
    sustained_duration_ms: int = Field(default=5 * 60 * 1000, ge=0)


class TrendConfig(BaseModel):
    """Trend fitting and forecasting."""

    enabled: bool = Field(default=True)
    significance_threshold: float = Field(default=0.7, ge=0, le=1)
    slope_epsilon: float = Field(default=0.1, ge=0)
    forecast_steps: int = Field(default=24, ge=1)
    max_forecast_steps: int = Field(default=1000, ge=1)


class AnalysisConfig(BaseModel):
    """Analyzer scheduling and history."""

    interval_ms: int = Field(default=30000, gt=0)
    default_range_ms: int = Field(default=24 * 60 * 60 * 1000, gt=0)
    periodic_range_ms: int = Field(default=15 * 60 * 1000, gt=0)
    min_data_points: int = Field(default=20, ge=2)
    window_size: int = Field(default=100, ge=2)
    history_limit: int = Field(default=10000, ge=1, description="Points kept per metric")
    report_history_limit: int = Field(default=1000, ge=1)
    tracked_metrics: List[str] = Field(
        default_factory=lambda: ["cpu", "memory", "disk", "responseTime", "errorRate", "throughput"]
    )
    track_discovered_metrics: bool = Field(
        default=True,
        description="Create trend models for metrics seen at runtime"
    )
    resource_metrics: List[str] = Field(
        default_factory=lambda: [
            "cpu", "memory", "disk", "latency", "responseTime", "errorRate", "resourceUtilization",
        ]
    )


class OptimizationConfig(BaseModel):
    """Optimization plan synthesis."""

    enabled: bool = Field(default=True)
    cost_values: Dict[str, float] = Field(
        default_factory=lambda: {"high": 1000, "medium": 500, "low": 100}
    )
    bottleneck_costs: Dict[str, str] = Field(
        default_factory=lambda: {
            "cpu": "high",
            "memory": "medium",
            "disk": "medium",
            "latency": "low",
            "network": "low",
        }
    )


class EscalationConfig(BaseModel):
    """Promotion of long-lived warning alerts to critical."""

    enabled: bool = Field(default=True)
    delay_ms: int = Field(
        default=5 * 60 * 1000,
        gt=0,
        description="How long an alert may stay at warning before it is escalated"
    )


class AlertConfig(BaseModel):
    """Threshold alerting."""

    enabled: bool = Field(default=True)
    history_limit: int = Field(default=10000, ge=1)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)


class CleanupConfig(BaseModel):
    """Retention enforcement tick."""

    interval_ms: int = Field(default=60 * 60 * 1000, gt=0)


class LoggingConfig(BaseModel):
    """Logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    format: Literal["json", "text"] = Field(default="json")
    log_file: Optional[Path] = Field(default=None)

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class TelemetryConfig(BaseModel):
    """Internal Prometheus metrics of the pipeline itself."""

    enabled: bool = Field(default=True)
    enable_http_server: bool = Field(default=False)
    port: int = Field(default=9102, ge=1, le=65535)


class MonitoringConfig(BaseModel):
    """Complete perfwatch configuration."""

    collection: CollectionConfig = Field(default_factory=CollectionConfig)
    sources: Dict[str, SourceConfig] = Field(
        default_factory=lambda: {
            "system": SourceConfig(weight=1.0),
            "process": SourceConfig(weight=1.0),
            "network": SourceConfig(weight=0.8),
            "cli": SourceConfig(weight=0.9),
            "git": SourceConfig(weight=0.7),
        }
    )
    thresholds: Dict[str, ThresholdConfig] = Field(
        default_factory=lambda: {
            "cpu": ThresholdConfig(warning=70, critical=90),
            "memory": ThresholdConfig(warning=75, critical=90),
            "disk": ThresholdConfig(warning=80, critical=95),
            "latency": ThresholdConfig(warning=1000, critical=3000),
            "responseTime": ThresholdConfig(warning=1000, critical=3000),
            "errorRate": ThresholdConfig(warning=1, critical=5),
        }
    )
    health: HealthConfig = Field(default_factory=HealthConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
    bottleneck: BottleneckConfig = Field(default_factory=BottleneckConfig)
    trend: TrendConfig = Field(default_factory=TrendConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    def source_weight(self, name: str) -> float:
        source = self.sources.get(name)
        return source.weight if source else self.collection.default_weight

    def source_category(self, name: str) -> str:
        source = self.sources.get(name)
        if source and source.category:
            return source.category
        return self.collection.categories.get(name, self.collection.default_category)
