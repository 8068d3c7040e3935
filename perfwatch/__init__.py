"""
perfwatch - performance monitoring and analytics core.

A pluggable telemetry pipeline: sources are collected on a fixed interval,
cleaned and bucketed, scanned for anomalies, sustained bottlenecks and
trends, and summarized into health scores and an optimization plan.

Quick start:
    >>> from perfwatch import MonitoringOrchestrator, load_config
    >>> orchestrator = MonitoringOrchestrator(load_config())
    >>> orchestrator.register_collector("system", SystemSource())
    >>> await orchestrator.start()
"""

from .__version__ import __version__, __version_info__, get_version_string

from .alerts import Alert, AlertManager, AlertSeverity
from .analyzer import AnalyzerState, PerformanceAnalyzer
from .anomaly import (
    AnomalyDetector,
    IQRDetector,
    IsolationDetector,
    StreamingAnomalyDetector,
    ZScoreDetector,
    create_detector,
)
from .collector import MetricSource, TelemetryCollector, compute_health
from .config import ConfigLoader, MonitoringConfig, load_config
from .errors import (
    ConfigurationError,
    OutOfOrderSnapshotError,
    PerfwatchError,
    SourceCollectionError,
    StorageError,
)
from .events import Event, EventBus
from .logging_config import configure_logging
from .models import (
    AggregationBucket,
    AnalysisReport,
    Anomaly,
    Bottleneck,
    CollectionResult,
    CollectorRegistration,
    Granularity,
    HealthScore,
    HealthStatus,
    MetricSeries,
    MetricSnapshot,
    OperationResult,
    ProcessedResult,
    Severity,
    TimeRange,
    TrendDirection,
    TrendModel,
)
from .orchestrator import MonitoringOrchestrator
from .processor import DataProcessor
from .storage import AnalysisStateStore, InMemorySnapshotStore, JsonlStore, SnapshotStore
from .telemetry import PipelineTelemetry

__all__ = [
    "__version__",
    "__version_info__",
    "get_version_string",
    # Components
    "MonitoringOrchestrator",
    "TelemetryCollector",
    "DataProcessor",
    "PerformanceAnalyzer",
    "AlertManager",
    # Sources and detectors
    "MetricSource",
    "AnomalyDetector",
    "ZScoreDetector",
    "IQRDetector",
    "IsolationDetector",
    "StreamingAnomalyDetector",
    "create_detector",
    "compute_health",
    # Data model
    "AggregationBucket",
    "Alert",
    "AlertSeverity",
    "AnalysisReport",
    "AnalyzerState",
    "Anomaly",
    "Bottleneck",
    "CollectionResult",
    "CollectorRegistration",
    "Granularity",
    "HealthScore",
    "HealthStatus",
    "MetricSeries",
    "MetricSnapshot",
    "OperationResult",
    "ProcessedResult",
    "Severity",
    "TimeRange",
    "TrendDirection",
    "TrendModel",
    # Infrastructure
    "ConfigLoader",
    "MonitoringConfig",
    "load_config",
    "configure_logging",
    "Event",
    "EventBus",
    "PipelineTelemetry",
    "SnapshotStore",
    "AnalysisStateStore",
    "InMemorySnapshotStore",
    "JsonlStore",
    # Errors
    "PerfwatchError",
    "ConfigurationError",
    "OutOfOrderSnapshotError",
    "SourceCollectionError",
    "StorageError",
]
