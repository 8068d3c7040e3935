"""
perfwatch Configuration

Pydantic schema plus a loader merging defaults, YAML/JSON files,
PERFWATCH_* environment variables and explicit overrides.
"""

from .schema import (
    AggregationConfig,
    AlertConfig,
    AnalysisConfig,
    AnomalyAlgorithm,
    AnomalyConfig,
    BottleneckConfig,
    BoundsConfig,
    CleanupConfig,
    CollectionConfig,
    EscalationConfig,
    HealthComponentConfig,
    HealthConfig,
    LoggingConfig,
    MonitoringConfig,
    OptimizationConfig,
    ProcessingConfig,
    SourceConfig,
    TelemetryConfig,
    ThresholdConfig,
    TrendConfig,
)
from .loader import ConfigLoader, load_config

__all__ = [
    "AggregationConfig",
    "AlertConfig",
    "AnalysisConfig",
    "AnomalyAlgorithm",
    "AnomalyConfig",
    "BottleneckConfig",
    "BoundsConfig",
    "CleanupConfig",
    "CollectionConfig",
    "EscalationConfig",
    "ConfigLoader",
    "HealthComponentConfig",
    "HealthConfig",
    "LoggingConfig",
    "MonitoringConfig",
    "OptimizationConfig",
    "ProcessingConfig",
    "SourceConfig",
    "TelemetryConfig",
    "ThresholdConfig",
    "TrendConfig",
    "load_config",
]
