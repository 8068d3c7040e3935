"""
Optimization plan synthesis.

Suggestions come from three independent generators (bottlenecks, trends,
anomalies), are merged, sorted by priority, costed, and bucketed into an
implementation plan.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .config.schema import OptimizationConfig
from .models import Anomaly, Bottleneck, Severity, TrendDirection, TrendFinding

logger = logging.getLogger(__name__)

IMPACT_SCORES = {"high": 3, "medium": 2, "low": 1}
STRONG_TREND_SIGNIFICANCE = 0.8

PLAN_PHASES = {
    "immediate": ("high", "1-2 weeks"),
    "short_term": ("medium", "1-3 months"),
    "long_term": ("low", "3-6 months"),
}

BOTTLENECK_ACTIONS = {
    "cpu": [
        "Profile CPU-intensive code paths",
        "Move blocking work off hot paths or add caching",
        "Scale horizontally or add CPU capacity",
    ],
    "memory": [
        "Check for memory leaks and unbounded caches",
        "Reduce object retention in long-lived processes",
        "Increase available memory",
    ],
    "disk": [
        "Clean up or rotate logs and temporary files",
        "Archive cold data",
        "Expand storage capacity",
    ],
    "latency": [
        "Inspect slow downstream calls",
        "Add connection pooling and timeouts",
    ],
    "responseTime": [
        "Profile slow request handlers",
        "Cache expensive responses",
    ],
    "errorRate": [
        "Inspect recent error logs for the dominant failure",
        "Add retries with backoff for transient failures",
    ],
}
DEFAULT_ACTIONS = ["Investigate the resource driving this metric"]


@dataclass
class Suggestion:
    """A costed optimization recommendation."""
    category: str
    metric: str
    priority: Severity
    title: str
    description: str
    cost: str
    estimated_cost: float
    impact: str
    actions: List[str] = field(default_factory=list)

    @property
    def impact_score(self) -> int:
        return IMPACT_SCORES.get(self.impact, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "metric": self.metric,
            "priority": self.priority.value,
            "title": self.title,
            "description": self.description,
            "cost": self.cost,
            "estimated_cost": self.estimated_cost,
            "impact": self.impact,
            "impact_score": self.impact_score,
            "actions": list(self.actions),
        }


class OptimizationPlanner:
    """Builds prioritized, costed optimization plans."""

    def __init__(self, config: Optional[OptimizationConfig] = None, resource_metrics: Sequence[str] = ()):
        self.config = config or OptimizationConfig()
        self.resource_metrics = set(resource_metrics)

    def _cost(self, level: str) -> float:
        return float(self.config.cost_values.get(level, 0))

    def from_bottlenecks(self, bottlenecks: Sequence[Bottleneck]) -> List[Suggestion]:
        suggestions = []
        for b in bottlenecks:
            priority = Severity.HIGH if b.severity in (Severity.CRITICAL, Severity.HIGH) else b.severity
            cost = self.config.bottleneck_costs.get(b.type, "medium")
            impact = "high" if priority == Severity.HIGH else "medium"
            suggestions.append(Suggestion(
                category="bottleneck",
                metric=b.type,
                priority=priority,
                title=f"Resolve sustained {b.type} bottleneck",
                description=(
                    f"{b.type} stayed at or above {b.threshold:g} for "
                    f"{b.duration_ms / 60000:.1f} min (peak {b.max_value:.2f}, "
                    f"severity {b.severity.value})"
                ),
                cost=cost,
                estimated_cost=self._cost(cost),
                impact=impact,
                actions=list(BOTTLENECK_ACTIONS.get(b.type, DEFAULT_ACTIONS)),
            ))
        return suggestions

    def from_trends(self, trends: Sequence[TrendFinding]) -> List[Suggestion]:
        suggestions = []
        for t in trends:
            if t.direction != TrendDirection.INCREASING or t.metric not in self.resource_metrics:
                continue
            strong = t.significance > STRONG_TREND_SIGNIFICANCE
            suggestions.append(Suggestion(
                category="trend",
                metric=t.metric,
                priority=Severity.HIGH if strong else Severity.MEDIUM,
                title=f"Plan capacity for rising {t.metric}",
                description=(
                    f"{t.metric} grows by {t.slope:.3f} per sample "
                    f"(r²={t.significance:.2f})"
                ),
                cost="medium",
                estimated_cost=self._cost("medium"),
                impact="high" if strong else "medium",
                actions=[
                    f"Review capacity headroom for {t.metric}",
                    "Set up forecasting alerts before the critical threshold is reached",
                ],
            ))
        return suggestions

    def from_anomalies(self, anomalies: Sequence[Anomaly]) -> List[Suggestion]:
        grouped: Dict[str, List[Anomaly]] = {}
        for a in anomalies:
            grouped.setdefault(a.metric, []).append(a)

        suggestions = []
        for metric, items in grouped.items():
            has_high = any(a.severity == Severity.HIGH for a in items)
            sources = sorted({a.source for a in items})
            suggestions.append(Suggestion(
                category="anomaly",
                metric=metric,
                priority=Severity.HIGH if has_high else Severity.MEDIUM,
                title=f"Investigate irregular {metric} behaviour",
                description=(
                    f"{len(items)} anomalous value(s) of {metric} on {', '.join(sources)}"
                ),
                cost="low",
                estimated_cost=self._cost("low"),
                impact="medium",
                actions=[
                    f"Correlate {metric} anomalies with deployments and traffic changes",
                    "Tune anomaly sensitivity if the values are expected",
                ],
            ))
        return suggestions

    def plan(
        self,
        bottlenecks: Sequence[Bottleneck] = (),
        trends: Sequence[TrendFinding] = (),
        anomalies: Sequence[Anomaly] = (),
    ) -> Dict[str, Any]:
        """
        Merge, sort and bucket suggestions.

        Returns:
            ``{suggestions, total_estimated_cost, expected_impact,
            implementation_plan}``
        """
        suggestions = (
            self.from_bottlenecks(bottlenecks)
            + self.from_trends(trends)
            + self.from_anomalies(anomalies)
        )
        # Stable sort keeps generator order inside one priority
        suggestions.sort(key=lambda s: s.priority.rank, reverse=True)

        total_impact = sum(s.impact_score for s in suggestions)
        plan = {
            phase: {
                "timeline": timeline,
                "suggestions": [s.to_dict() for s in suggestions if s.priority.value == priority],
            }
            for phase, (priority, timeline) in PLAN_PHASES.items()
        }

        logger.debug(
            f"Optimization plan: {len(suggestions)} suggestion(s), "
            f"{len(plan['immediate']['suggestions'])} immediate"
        )

        return {
            "suggestions": [s.to_dict() for s in suggestions],
            "total_estimated_cost": sum(s.estimated_cost for s in suggestions),
            "expected_impact": {
                "total_score": total_impact,
                "average_score": total_impact / len(suggestions) if suggestions else 0.0,
                "high_impact_count": sum(1 for s in suggestions if s.impact == "high"),
            },
            "implementation_plan": plan,
        }
