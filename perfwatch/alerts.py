"""
Threshold Alert Manager

Evaluates every successful source of a collection result against the
configured per-metric thresholds and maintains one active alert per
(source, metric):

- a new breach triggers an alert (``alert-triggered``)
- a severity change updates it, flagging escalations (``alert-updated``)
- a value back under the warning level resolves it (``alert-resolved``)
- a warning left active longer than the escalation delay is promoted to
  critical (``alert-updated``, message prefixed with ``ESCALATED:``)

Manual alerts can be raised by callers and are resolved like any other.
Suppression rules silence matching (source, metric) pairs until a deadline.
Delivery (log, webhook, chat) is left to event subscribers.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from .config.schema import MonitoringConfig, ThresholdConfig
from .events import EventBus
from .models import CollectionResult, OperationResult, now_ms
from .stats import is_finite_number
from .telemetry import PipelineTelemetry

logger = logging.getLogger(__name__)

ANY = "*"


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return 2 if self is AlertSeverity.CRITICAL else 1


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


@dataclass
class Alert:
    """A threshold breach on one metric of one source."""
    source: str
    metric: str
    value: float
    threshold: float
    severity: AlertSeverity
    triggered_at: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: AlertStatus = AlertStatus.ACTIVE
    updated_at: Optional[int] = None
    resolved_at: Optional[int] = None
    escalated: bool = False
    escalated_at: Optional[int] = None
    manual: bool = False
    note: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.source}:{self.metric}"

    @property
    def message(self) -> str:
        text = self.note or (
            f"{self.severity.value.upper()}: {self.metric} on {self.source} is "
            f"{self.value:g} (threshold: {self.threshold:g})"
        )
        if self.escalated_at is not None:
            return f"ESCALATED: {text}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "source": self.source,
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "severity": self.severity.value,
            "status": self.status.value,
            "message": self.message,
            "triggered_at": self.triggered_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
            "escalated": self.escalated,
            "escalated_at": self.escalated_at,
            "manual": self.manual,
        }


@dataclass
class SuppressionRule:
    """Silences alerts for a source/metric pair (``*`` matches anything)."""
    source: str
    metric: str
    until: int
    reason: str = ""

    @property
    def key(self) -> str:
        return f"{self.source}|{self.metric}"

    def matches(self, source: str, metric: str, now: int) -> bool:
        return (
            now < self.until
            and self.source in (ANY, source)
            and self.metric in (ANY, metric)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "metric": self.metric, "until": self.until, "reason": self.reason}


class AlertManager:
    """Owns active alerts, alert history and suppression rules."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        telemetry: Optional[PipelineTelemetry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or MonitoringConfig()
        self.telemetry = telemetry
        self.clock = clock
        self.events = EventBus("alerts")

        self.thresholds: Dict[str, ThresholdConfig] = dict(self.config.thresholds)
        self._active: Dict[str, Alert] = {}
        self._history: Deque[Alert] = deque(maxlen=self.config.alerts.history_limit)
        self._suppressions: Dict[str, SuppressionRule] = {}
        self._suppressed_count = 0

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _severity_for(self, value: float, threshold: ThresholdConfig) -> Optional[AlertSeverity]:
        if value >= threshold.critical:
            return AlertSeverity.CRITICAL
        if value >= threshold.warning:
            return AlertSeverity.WARNING
        return None

    def check_metrics(self, collection: CollectionResult) -> List[Alert]:
        """
        Evaluate a collection result.

        Returns:
            Alerts that were triggered, updated or resolved by this result
        """
        if not self.config.alerts.enabled or not collection.success:
            return []

        changed: List[Alert] = []
        for source_name, source_result in collection.sources.items():
            if not source_result.success:
                continue
            for metric, value in source_result.values.items():
                if metric not in self.thresholds or not is_finite_number(value):
                    continue
                alert = self.evaluate(source_name, metric, float(value), collection.timestamp)
                if alert is not None:
                    changed.append(alert)
        escalated = [a for a in self.check_escalations(collection.timestamp) if a not in changed]
        changed.extend(escalated)
        return changed

    def evaluate(self, source: str, metric: str, value: float, timestamp: int) -> Optional[Alert]:
        """Evaluate one value; returns the alert if its state changed."""
        threshold = self.thresholds.get(metric)
        if threshold is None:
            return None

        key = f"{source}:{metric}"
        severity = self._severity_for(value, threshold)
        existing = self._active.get(key)

        if severity is None:
            if existing is None:
                return None
            return self._resolve(existing, timestamp, value=value)

        limit = threshold.critical if severity == AlertSeverity.CRITICAL else threshold.warning

        if existing is not None:
            existing.value = value
            if existing.severity == severity:
                return None
            # time-escalated alerts stay critical until resolved
            if existing.escalated_at is not None:
                return None
            existing.escalated = severity.rank > existing.severity.rank
            existing.severity = severity
            existing.threshold = limit
            existing.updated_at = timestamp
            logger.warning(f"Alert updated: {existing.message}")
            self.events.emit("alert-updated", existing)
            return existing

        if self._is_suppressed(source, metric, timestamp):
            self._suppressed_count += 1
            logger.debug(f"Alert for {key} suppressed")
            return None

        alert = Alert(
            source=source,
            metric=metric,
            value=value,
            threshold=limit,
            severity=severity,
            triggered_at=timestamp,
        )
        self._active[key] = alert
        self._history.append(alert)
        if self.telemetry:
            self.telemetry.track_alert(severity.value)
        logger.warning(f"Alert triggered: {alert.message}")
        self.events.emit("alert-triggered", alert)
        return alert

    def _resolve(self, alert: Alert, timestamp: int, value: Optional[float] = None) -> Alert:
        if value is not None:
            alert.value = value
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = timestamp
        self._active.pop(alert.key, None)
        logger.info(f"Alert resolved: {alert.metric} on {alert.source}")
        self.events.emit("alert-resolved", alert)
        return alert

    def resolve(self, key: str) -> OperationResult:
        """Manually resolve an active alert by ``source:metric`` key or id."""
        alert = self._active.get(key) or next(
            (a for a in self._active.values() if a.id == key), None
        )
        if alert is None:
            return OperationResult.fail(f"No active alert '{key}'")
        self._resolve(alert, self.clock())
        return OperationResult.ok(alert=alert.to_dict())

    def check_escalations(self, now: Optional[int] = None) -> List[Alert]:
        """
        Promote warnings that stayed active past the escalation delay.

        The delay counts from the trigger, or from the last severity change
        for alerts that dropped back to warning. Each alert is escalated at
        most once.

        Returns:
            Alerts escalated by this call
        """
        escalation = self.config.alerts.escalation
        if not self.config.alerts.enabled or not escalation.enabled:
            return []

        now = self.clock() if now is None else now
        escalated: List[Alert] = []
        for alert in list(self._active.values()):
            if alert.severity != AlertSeverity.WARNING or alert.escalated_at is not None:
                continue
            since = alert.updated_at if alert.updated_at is not None else alert.triggered_at
            if now - since < escalation.delay_ms:
                continue

            alert.severity = AlertSeverity.CRITICAL
            alert.escalated = True
            alert.escalated_at = now
            alert.updated_at = now
            logger.warning(f"Alert escalated: {alert.message}")
            self.events.emit("alert-updated", alert)
            escalated.append(alert)
        return escalated

    def trigger_manual_alert(
        self,
        metric: str = "custom",
        value: float = 0.0,
        severity: str = AlertSeverity.WARNING.value,
        message: Optional[str] = None,
        source: str = "manual",
        threshold: float = 0.0,
    ) -> OperationResult:
        """
        Raise an alert that does not come from a threshold breach.

        Manual alerts bypass suppression rules and are resolved with
        ``resolve`` or by a later reading under the warning level.

        Returns:
            ``{success, alert}`` or a failure for an unknown severity or an
            already active alert on the same key
        """
        try:
            level = AlertSeverity(severity)
        except ValueError:
            return OperationResult.fail(f"Unknown severity '{severity}'")

        key = f"{source}:{metric}"
        if key in self._active:
            return OperationResult.fail(f"Alert '{key}' is already active")

        alert = Alert(
            source=source,
            metric=metric,
            value=float(value),
            threshold=float(threshold),
            severity=level,
            triggered_at=self.clock(),
            manual=True,
            note=message or "Manual alert triggered",
        )
        self._active[key] = alert
        self._history.append(alert)
        if self.telemetry:
            self.telemetry.track_alert(level.value)
        logger.warning(f"Manual alert triggered: {alert.message}")
        self.events.emit("alert-triggered", alert)
        return OperationResult.ok(alert=alert.to_dict())

    # ------------------------------------------------------------------
    # Suppression
    # ------------------------------------------------------------------

    def suppress(
        self,
        source: str = ANY,
        metric: str = ANY,
        duration_ms: int = 60 * 60 * 1000,
        reason: str = "",
    ) -> SuppressionRule:
        rule = SuppressionRule(
            source=source, metric=metric, until=self.clock() + duration_ms, reason=reason
        )
        self._suppressions[rule.key] = rule
        logger.info(f"Suppressing alerts for {rule.key} until {rule.until}")
        return rule

    def unsuppress(self, source: str = ANY, metric: str = ANY) -> bool:
        return self._suppressions.pop(f"{source}|{metric}", None) is not None

    def _is_suppressed(self, source: str, metric: str, now: int) -> bool:
        return any(rule.matches(source, metric, now) for rule in self._suppressions.values())

    def get_suppressions(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return [r.to_dict() for r in self._suppressions.values() if r.until > now]

    # ------------------------------------------------------------------
    # Maintenance and queries
    # ------------------------------------------------------------------

    def update_thresholds(self, thresholds: Mapping[str, Any]) -> OperationResult:
        """Merge new thresholds; values may be ThresholdConfig or plain dicts."""
        try:
            parsed = {
                metric: value if isinstance(value, ThresholdConfig) else ThresholdConfig(**value)
                for metric, value in thresholds.items()
            }
        except (TypeError, ValueError) as e:
            return OperationResult.fail(f"Invalid thresholds: {e}")
        self.thresholds.update(parsed)
        logger.info(f"Updated alert thresholds for {sorted(parsed)}")
        return OperationResult.ok(metrics=sorted(parsed))

    def cleanup(self) -> int:
        """Escalate overdue warnings and drop expired suppression rules."""
        now = self.clock()
        self.check_escalations(now)
        expired = [k for k, r in self._suppressions.items() if r.until <= now]
        for key in expired:
            del self._suppressions[key]
        return len(expired)

    def get_active_alerts(self) -> List[Dict[str, Any]]:
        alerts = sorted(
            self._active.values(),
            key=lambda a: (-a.severity.rank, a.triggered_at),
        )
        return [a.to_dict() for a in alerts]

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        history = list(self._history)
        if limit:
            history = history[-limit:]
        return [a.to_dict() for a in history]

    def get_statistics(self, since: Optional[int] = None) -> Dict[str, Any]:
        alerts = [a for a in self._history if since is None or a.triggered_at >= since]
        by_severity: Dict[str, int] = {}
        by_source: Dict[str, int] = {}
        by_metric: Dict[str, int] = {}
        for a in alerts:
            by_severity[a.severity.value] = by_severity.get(a.severity.value, 0) + 1
            by_source[a.source] = by_source.get(a.source, 0) + 1
            by_metric[a.metric] = by_metric.get(a.metric, 0) + 1
        return {
            "total": len(alerts),
            "active": len(self._active),
            "resolved": sum(1 for a in alerts if a.status == AlertStatus.RESOLVED),
            "suppressed": self._suppressed_count,
            "by_severity": by_severity,
            "by_source": by_source,
            "by_metric": by_metric,
        }
