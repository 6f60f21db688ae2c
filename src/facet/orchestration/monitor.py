"""Per-agent performance monitoring, alerting and optimization.

This module records one performance record per agent interaction and turns
the stream of records into:
- Threshold alerts on response time, satisfaction and error rate
- Rolling health status from performance, quality, availability and resources
- Linear regression trends and forward predictions per metric
- Optimization recommendations, of which low-risk ones can be auto-applied
- Reports and a dashboard summary over fixed time ranges
"""

import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import numpy as np
from pydantic import BaseModel, Field

from facet.config.schema import MonitoringConfig
from facet.events import EventEmitter, EventType
from facet.metrics_source import MetricsSource, ProcessMetricsSource

logger = logging.getLogger(__name__)

# Relative change over the regression window that counts as a trend
TREND_THRESHOLD = 0.05
MIN_TREND_POINTS = 2
MIN_PREDICTION_POINTS = 10
ANALYSIS_WINDOW = 100
MIN_ERROR_RATE_SAMPLES = 5

# Metrics where a rising value is a regression
LOWER_IS_BETTER = frozenset({"response_time_ms", "error_rate", "cpu_percent", "memory_mb"})

COMPONENT_SCORES = {"healthy": 100.0, "warning": 60.0, "critical": 20.0}


class AlertSeverity(StrEnum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(StrEnum):
    """What an alert or recommendation is about."""

    PERFORMANCE = "performance"
    QUALITY = "quality"
    AVAILABILITY = "availability"
    RESOURCE = "resource"


class HealthLevel(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"


class TrendDirection(StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Rating(StrEnum):
    """Effort or risk rating of a recommendation."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecommendationStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Timeframe(StrEnum):
    """Report time ranges."""

    HOUR = "1h"
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def seconds(self) -> float:
        return {
            Timeframe.HOUR: 3600.0,
            Timeframe.DAY: 86400.0,
            Timeframe.WEEK: 7 * 86400.0,
            Timeframe.MONTH: 30 * 86400.0,
        }[self]


@dataclass
class PerformanceRecord:
    """Metrics of a single agent interaction."""

    agent_id: str
    timestamp: float
    response_time_ms: float
    success: bool
    user_satisfaction: float | None = None
    cultural_relevance: float | None = None
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    concurrent_sessions: int = 0
    escalated: bool = False

    def value(self, metric: str) -> float | None:
        if metric == "success":
            return 1.0 if self.success else 0.0
        if metric == "error_rate":
            return 0.0 if self.success else 1.0
        value = getattr(self, metric, None)
        return None if value is None else float(value)


class Alert(BaseModel):
    """A threshold violation for one agent metric."""

    id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    agent_id: str
    type: AlertType
    severity: AlertSeverity
    metric: str
    current_value: float
    threshold: float
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    resolved: bool = False
    resolved_at: datetime | None = None
    superseded_by: str | None = None


class OptimizationRecommendation(BaseModel):
    """A proposed action to improve an agent's performance."""

    id: str = Field(default_factory=lambda: f"opt_{uuid.uuid4().hex[:12]}")
    agent_id: str
    category: AlertType
    priority: Priority
    title: str
    description: str
    expected_impact: dict[str, float] = Field(default_factory=dict)
    effort: Rating
    risk: Rating
    timeframe: str
    steps: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    status: RecommendationStatus = RecommendationStatus.PENDING


@dataclass
class HealthStatus:
    """Rolling health of one agent."""

    agent_id: str
    overall: HealthLevel
    score: float
    components: dict[str, HealthLevel]
    active_alerts: int
    last_check: float
    last_incident: float | None = None


@dataclass
class PerformanceTrend:
    agent_id: str
    metric: str
    timeframe: Timeframe
    trend: TrendDirection
    change_rate: float
    confidence: float
    data_points: int


@dataclass
class PerformancePrediction:
    agent_id: str
    metric: str
    hours_ahead: float
    predicted_value: float
    confidence: float
    trend: TrendDirection
    range_min: float
    range_max: float


@dataclass
class OptimizationOutcome:
    """What ``auto_optimize`` applied for one agent."""

    agent_id: str
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    expected_improvements: dict[str, float] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


OptimizationApplier = Callable[[OptimizationRecommendation], Awaitable[None]]


def linear_regression(values: Iterable[float]) -> tuple[float, float, float, float]:
    """Least-squares line over equally spaced points.

    Args:
        values: Observations in time order

    Returns:
        Tuple of (slope, intercept, r_squared, residual_std)
    """
    y = np.asarray(list(values), dtype=float)
    if len(y) < MIN_TREND_POINTS:
        return 0.0, float(y[0]) if len(y) else 0.0, 0.0, 0.0

    x = np.arange(len(y), dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    fitted = slope * x + intercept
    ss_res = float(np.sum((y - fitted) ** 2))
    ss_tot = float(np.sum((y - np.mean(y)) ** 2))
    # A constant series is fitted exactly
    r_squared = 1.0 - ss_res / ss_tot if ss_tot > 0 else 1.0
    dof = max(len(y) - 2, 1)
    residual_std = float(np.sqrt(ss_res / dof))
    return float(slope), float(intercept), max(0.0, r_squared), residual_std


def classify_trend(metric: str, slope: float, values: list[float]) -> TrendDirection:
    """Direction of a regression slope, relative to the metric's scale."""
    scale = abs(float(np.mean(values))) if values else 0.0
    relative = slope * len(values) / scale if scale > 0 else slope
    if abs(relative) <= TREND_THRESHOLD:
        return TrendDirection.STABLE
    rising = relative > 0
    if metric in LOWER_IS_BETTER:
        rising = not rising
    return TrendDirection.IMPROVING if rising else TrendDirection.DECLINING


def _bucket_above(value: float, warning: float, critical: float) -> HealthLevel:
    """Bucket a metric where smaller is healthier."""
    if value < warning:
        return HealthLevel.HEALTHY
    if value < critical:
        return HealthLevel.WARNING
    return HealthLevel.CRITICAL


def _bucket_below(value: float, warning: float, critical: float) -> HealthLevel:
    """Bucket a metric where larger is healthier."""
    if value > warning:
        return HealthLevel.HEALTHY
    if value > critical:
        return HealthLevel.WARNING
    return HealthLevel.CRITICAL


def _mean(values: Iterable[float | None]) -> float | None:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return float(np.mean(present))


class PerformanceMonitor:
    """
    Records agent interactions and derives alerts, health and recommendations.

    Records are kept in a bounded ring buffer per agent. Cleanup of records
    and alerts older than the retention period is left to the caller's
    maintenance loop via ``cleanup_old_data``.
    """

    def __init__(
        self,
        config: MonitoringConfig | None = None,
        events: EventEmitter | None = None,
        metrics_source: MetricsSource | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize monitor.

        Args:
            config: Monitoring thresholds and retention settings
            events: Emitter for alert, health and optimization events
            metrics_source: Resource usage provider, psutil-backed by default
            clock: Wall clock in epoch seconds
        """
        self.config = config or MonitoringConfig()
        self.thresholds = self.config.thresholds
        self.events = events or EventEmitter()
        self.metrics_source = metrics_source or ProcessMetricsSource()
        self._clock = clock
        self._records: dict[str, deque[PerformanceRecord]] = {}
        self._alerts: dict[str, Alert] = {}
        self._health: dict[str, HealthStatus] = {}
        self._recommendations: dict[str, list[OptimizationRecommendation]] = {}
        self._appliers: dict[AlertType, OptimizationApplier] = {}

    # Recording

    def record_interaction(
        self,
        agent_id: str,
        response_time_ms: float,
        success: bool,
        user_satisfaction: float | None = None,
        cultural_relevance: float | None = None,
        concurrent_sessions: int = 0,
        escalated: bool = False,
    ) -> PerformanceRecord:
        """
        Record one interaction and evaluate thresholds.

        Args:
            agent_id: Agent that handled the interaction
            response_time_ms: Time the agent took
            success: Whether the agent produced a response
            user_satisfaction: Satisfaction in [0, 1] when known
            cultural_relevance: Cultural relevance in [0, 1] when known
            concurrent_sessions: Sessions the agent was handling
            escalated: Whether the response required escalation

        Returns:
            The stored record
        """
        resources = self.metrics_source.snapshot()
        record = PerformanceRecord(
            agent_id=agent_id,
            timestamp=self._clock(),
            response_time_ms=response_time_ms,
            success=success,
            user_satisfaction=user_satisfaction,
            cultural_relevance=cultural_relevance,
            cpu_percent=resources.cpu_percent,
            memory_mb=resources.memory_mb,
            concurrent_sessions=concurrent_sessions,
            escalated=escalated,
        )
        buffer = self._records.get(agent_id)
        if buffer is None:
            buffer = deque(maxlen=self.config.max_records)
            self._records[agent_id] = buffer
        buffer.append(record)

        self._check_thresholds(record)
        return record

    def get_records(self, agent_id: str, since: float | None = None) -> list[PerformanceRecord]:
        records = list(self._records.get(agent_id, ()))
        if since is None:
            return records
        return [r for r in records if r.timestamp >= since]

    def recent_records(self, agent_id: str, seconds: float) -> list[PerformanceRecord]:
        """Records of the last ``seconds`` by the monitor's clock."""
        return self.get_records(agent_id, since=self._clock() - seconds)

    @property
    def agent_ids(self) -> list[str]:
        return list(self._records.keys())

    # Alerts

    def _check_thresholds(self, record: PerformanceRecord) -> None:
        response = self.thresholds.response_time_ms
        if record.response_time_ms > response.critical:
            self._raise_alert(
                record.agent_id,
                AlertType.PERFORMANCE,
                AlertSeverity.CRITICAL,
                "response_time_ms",
                record.response_time_ms,
                response.critical,
                f"Response time {record.response_time_ms:.0f}ms exceeds critical "
                f"threshold {response.critical:.0f}ms",
            )
        elif record.response_time_ms > response.warning:
            self._raise_alert(
                record.agent_id,
                AlertType.PERFORMANCE,
                AlertSeverity.WARNING,
                "response_time_ms",
                record.response_time_ms,
                response.warning,
                f"Response time {record.response_time_ms:.0f}ms exceeds warning "
                f"threshold {response.warning:.0f}ms",
            )

        satisfaction = self.thresholds.user_satisfaction
        if record.user_satisfaction is not None:
            if record.user_satisfaction < satisfaction.critical:
                self._raise_alert(
                    record.agent_id,
                    AlertType.QUALITY,
                    AlertSeverity.CRITICAL,
                    "user_satisfaction",
                    record.user_satisfaction,
                    satisfaction.critical,
                    f"User satisfaction {record.user_satisfaction:.2f} below critical "
                    f"threshold {satisfaction.critical:.2f}",
                )
            elif record.user_satisfaction < satisfaction.warning:
                self._raise_alert(
                    record.agent_id,
                    AlertType.QUALITY,
                    AlertSeverity.WARNING,
                    "user_satisfaction",
                    record.user_satisfaction,
                    satisfaction.warning,
                    f"User satisfaction {record.user_satisfaction:.2f} below warning "
                    f"threshold {satisfaction.warning:.2f}",
                )

        window = list(self._records[record.agent_id])[-self.config.error_rate_window :]
        if len(window) < MIN_ERROR_RATE_SAMPLES:
            return
        error_rate = sum(1 for r in window if not r.success) / len(window)
        errors = self.thresholds.error_rate
        if error_rate > errors.critical:
            severity, threshold = AlertSeverity.CRITICAL, errors.critical
        elif error_rate > errors.warning:
            severity, threshold = AlertSeverity.WARNING, errors.warning
        else:
            return
        self._raise_alert(
            record.agent_id,
            AlertType.AVAILABILITY,
            severity,
            "error_rate",
            error_rate,
            threshold,
            f"Error rate {error_rate:.1%} over last {len(window)} interactions exceeds "
            f"{severity.value} threshold {threshold:.1%}",
        )

    def _raise_alert(
        self,
        agent_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        metric: str,
        current_value: float,
        threshold: float,
        message: str,
    ) -> Alert:
        alert = Alert(
            agent_id=agent_id,
            type=alert_type,
            severity=severity,
            metric=metric,
            current_value=current_value,
            threshold=threshold,
            message=message,
            timestamp=datetime.fromtimestamp(self._clock()),
        )
        # One open alert per agent metric
        for existing in self._alerts.values():
            if existing.agent_id == agent_id and existing.metric == metric and not existing.resolved:
                existing.resolved = True
                existing.resolved_at = alert.timestamp
                existing.superseded_by = alert.id

        self._alerts[alert.id] = alert
        health = self._health.get(agent_id)
        if health is not None:
            health.last_incident = self._clock()

        log = logger.error if severity == AlertSeverity.CRITICAL else logger.warning
        log("Alert for %s: %s", agent_id, message)
        self.events.emit(EventType.ALERT_TRIGGERED, alert=alert.model_dump(mode="json"))
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Returns False for unknown or already resolved alerts."""
        alert = self._alerts.get(alert_id)
        if alert is None or alert.resolved:
            return False
        alert.resolved = True
        alert.resolved_at = datetime.fromtimestamp(self._clock())
        return True

    def get_alerts(
        self,
        agent_id: str | None = None,
        include_resolved: bool = False,
        severity: AlertSeverity | None = None,
    ) -> list[Alert]:
        alerts = [
            a
            for a in self._alerts.values()
            if (agent_id is None or a.agent_id == agent_id)
            and (include_resolved or not a.resolved)
            and (severity is None or a.severity == severity)
        ]
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    # Health

    def update_health_status(self, agent_id: str) -> HealthStatus:
        """
        Recompute an agent's health from its most recent records.

        Emits ``health_updated`` with the new status.
        """
        recent = list(self._records.get(agent_id, ()))[-self.config.health_window :]
        now = self._clock()
        previous = self._health.get(agent_id)
        last_incident = previous.last_incident if previous else None
        active_alerts = len(self.get_alerts(agent_id))

        if not recent:
            status = HealthStatus(
                agent_id=agent_id,
                overall=HealthLevel.OFFLINE,
                score=0.0,
                components={},
                active_alerts=active_alerts,
                last_check=now,
                last_incident=last_incident,
            )
        else:
            components = self._health_components(recent)
            score = float(np.mean([COMPONENT_SCORES[c.value] for c in components.values()]))
            if score > 80:
                overall = HealthLevel.HEALTHY
            elif score > 50:
                overall = HealthLevel.WARNING
            else:
                overall = HealthLevel.CRITICAL
            status = HealthStatus(
                agent_id=agent_id,
                overall=overall,
                score=round(score, 1),
                components=components,
                active_alerts=active_alerts,
                last_check=now,
                last_incident=last_incident,
            )

        self._health[agent_id] = status
        self.events.emit(
            EventType.HEALTH_UPDATED,
            agent_id=agent_id,
            overall=status.overall.value,
            score=status.score,
            components={k: v.value for k, v in status.components.items()},
        )
        return status

    def _health_components(self, recent: list[PerformanceRecord]) -> dict[str, HealthLevel]:
        t = self.thresholds
        average_time = float(np.mean([r.response_time_ms for r in recent]))
        satisfaction = _mean(r.user_satisfaction for r in recent)
        error_rate = sum(1 for r in recent if not r.success) / len(recent)
        cpu = float(np.mean([r.cpu_percent for r in recent]))

        return {
            "performance": _bucket_above(
                average_time, t.response_time_ms.warning, t.response_time_ms.critical
            ),
            "quality": (
                HealthLevel.HEALTHY
                if satisfaction is None
                else _bucket_below(
                    satisfaction, t.user_satisfaction.warning, t.user_satisfaction.critical
                )
            ),
            "availability": _bucket_above(error_rate, t.error_rate.warning, t.error_rate.critical),
            "resources": _bucket_above(cpu, t.cpu_percent.warning, t.cpu_percent.critical),
        }

    def get_health_status(self, agent_id: str) -> HealthStatus | None:
        return self._health.get(agent_id)

    def run_health_checks(self) -> dict[str, HealthStatus]:
        """Update health for every agent with records."""
        return {agent_id: self.update_health_status(agent_id) for agent_id in self.agent_ids}

    # Trends and predictions

    def _series(self, agent_id: str, metric: str, since: float | None = None) -> list[float]:
        values = (r.value(metric) for r in self.get_records(agent_id, since))
        return [v for v in values if v is not None]

    def calculate_trend(
        self, agent_id: str, metric: str, timeframe: Timeframe = Timeframe.DAY
    ) -> PerformanceTrend:
        """Linear regression trend of one metric over a time range."""
        since = self._clock() - timeframe.seconds
        values = self._series(agent_id, metric, since)
        slope, _, r_squared, _ = linear_regression(values)
        trend = classify_trend(metric, slope, values)
        return PerformanceTrend(
            agent_id=agent_id,
            metric=metric,
            timeframe=timeframe,
            trend=trend,
            change_rate=slope,
            confidence=r_squared if len(values) >= MIN_TREND_POINTS else 0.0,
            data_points=len(values),
        )

    def analyze_performance_trends(self, agent_id: str, metric: str) -> PerformanceTrend:
        """The trend over whichever time range fits the data best."""
        trends = [self.calculate_trend(agent_id, metric, tf) for tf in Timeframe]
        return max(trends, key=lambda t: t.confidence)

    def predict_performance(
        self, agent_id: str, metric: str, hours_ahead: float
    ) -> PerformancePrediction | None:
        """
        Extrapolate a metric forward along its regression line.

        The horizon is scaled so that 24 hours ahead projects one full
        analysis window past the latest record.

        Args:
            agent_id: Agent to predict for
            metric: Metric name, e.g. ``response_time_ms``
            hours_ahead: Prediction horizon in hours

        Returns:
            Prediction, or None when fewer than 10 data points exist
        """
        values = self._series(agent_id, metric)[-ANALYSIS_WINDOW:]
        if len(values) < MIN_PREDICTION_POINTS:
            return None

        slope, intercept, r_squared, residual_std = linear_regression(values)
        n = len(values)
        future_index = n + (hours_ahead / 24.0) * n
        predicted = slope * future_index + intercept
        margin = 2.0 * residual_std
        return PerformancePrediction(
            agent_id=agent_id,
            metric=metric,
            hours_ahead=hours_ahead,
            predicted_value=predicted,
            confidence=r_squared,
            trend=classify_trend(metric, slope, values),
            range_min=predicted - margin,
            range_max=predicted + margin,
        )

    # Optimization

    def register_applier(self, category: AlertType, applier: OptimizationApplier) -> None:
        """Register the action run when a recommendation of ``category`` is applied."""
        self._appliers[category] = applier

    def generate_optimization_recommendations(
        self, agent_id: str
    ) -> list[OptimizationRecommendation]:
        """
        Recommend actions from the agent's recent averages.

        Replaces any earlier pending recommendations for the agent.
        """
        recent = list(self._records.get(agent_id, ()))[-ANALYSIS_WINDOW:]
        if not recent:
            return []

        t = self.thresholds
        average_time = float(np.mean([r.response_time_ms for r in recent]))
        satisfaction = _mean(r.user_satisfaction for r in recent)
        cpu = float(np.mean([r.cpu_percent for r in recent]))
        error_rate = sum(1 for r in recent if not r.success) / len(recent)
        recommendations: list[OptimizationRecommendation] = []

        if average_time > t.response_time_ms.warning:
            recommendations.append(
                OptimizationRecommendation(
                    agent_id=agent_id,
                    category=AlertType.PERFORMANCE,
                    priority=(
                        Priority.CRITICAL
                        if average_time > t.response_time_ms.critical
                        else Priority.HIGH
                    ),
                    title="Optimize Response Time",
                    description=(
                        f"Average response time {average_time:.0f}ms exceeds "
                        f"{t.response_time_ms.warning:.0f}ms"
                    ),
                    expected_impact={
                        "response_time_ms": -average_time * 0.3,
                        "user_satisfaction": 0.1,
                    },
                    effort=Rating.MEDIUM,
                    risk=Rating.LOW,
                    timeframe="1-2 weeks",
                    steps=[
                        "Cache repeated context lookups",
                        "Reduce prompt and context size",
                        "Route overflow sessions to less loaded agents",
                    ],
                )
            )

        quality_floor = t.user_satisfaction.target - 0.1
        if satisfaction is not None and satisfaction < quality_floor:
            recommendations.append(
                OptimizationRecommendation(
                    agent_id=agent_id,
                    category=AlertType.QUALITY,
                    priority=Priority.CRITICAL if satisfaction < 0.5 else Priority.HIGH,
                    title="Improve User Satisfaction",
                    description=(
                        f"Average satisfaction {satisfaction:.2f} is below {quality_floor:.2f}"
                    ),
                    expected_impact={"user_satisfaction": 0.15},
                    effort=Rating.HIGH,
                    risk=Rating.MEDIUM,
                    timeframe="2-4 weeks",
                    steps=[
                        "Review low rated interactions",
                        "Refine response guidelines for the agent",
                    ],
                )
            )

        if cpu > 80:
            recommendations.append(
                OptimizationRecommendation(
                    agent_id=agent_id,
                    category=AlertType.RESOURCE,
                    priority=Priority.MEDIUM,
                    title="Optimize Resource Usage",
                    description=f"Average CPU usage {cpu:.0f}% is above 80%",
                    expected_impact={"cpu_percent": -20.0},
                    effort=Rating.LOW,
                    risk=Rating.LOW,
                    timeframe="1 week",
                    steps=["Lower the agent's concurrency limit", "Release idle sessions sooner"],
                )
            )

        if len(recent) >= MIN_ERROR_RATE_SAMPLES and error_rate > t.error_rate.warning:
            recommendations.append(
                OptimizationRecommendation(
                    agent_id=agent_id,
                    category=AlertType.AVAILABILITY,
                    priority=(
                        Priority.CRITICAL if error_rate > t.error_rate.critical else Priority.HIGH
                    ),
                    title="Reduce Error Rate",
                    description=f"Error rate {error_rate:.1%} exceeds {t.error_rate.warning:.1%}",
                    expected_impact={"error_rate": -error_rate * 0.5},
                    effort=Rating.LOW,
                    risk=Rating.LOW,
                    timeframe="1 week",
                    steps=["Inspect recent agent failures", "Shift traffic to healthy agents"],
                )
            )

        self._recommendations[agent_id] = recommendations
        return recommendations

    def get_recommendations(self, agent_id: str) -> list[OptimizationRecommendation]:
        return list(self._recommendations.get(agent_id, []))

    async def auto_optimize(self, agent_id: str) -> OptimizationOutcome:
        """
        Apply every low-risk recommendation that is not low priority.

        Recommendations without a registered applier are marked completed
        as advisory. A failing applier rejects that recommendation only.

        Returns:
            Outcome listing applied and failed recommendation titles
        """
        outcome = OptimizationOutcome(agent_id=agent_id)
        for rec in self.generate_optimization_recommendations(agent_id):
            if rec.risk != Rating.LOW or rec.priority == Priority.LOW:
                continue

            rec.status = RecommendationStatus.IN_PROGRESS
            applier = self._appliers.get(rec.category)
            try:
                if applier is not None:
                    await applier(rec)
            except Exception as e:
                rec.status = RecommendationStatus.REJECTED
                outcome.failed.append(rec.title)
                logger.error("Optimization %r failed for %s: %s", rec.title, agent_id, e)
                continue

            rec.status = RecommendationStatus.COMPLETED
            outcome.applied.append(rec.title)
            for metric, impact in rec.expected_impact.items():
                outcome.expected_improvements[metric] = (
                    outcome.expected_improvements.get(metric, 0.0) + impact
                )

        if outcome.applied or outcome.failed:
            logger.info("Auto-optimized %s: applied %s", agent_id, outcome.applied)
        self.events.emit(
            EventType.OPTIMIZATION_COMPLETED,
            agent_id=agent_id,
            applied=outcome.applied,
            failed=outcome.failed,
            expected_improvements=outcome.expected_improvements,
        )
        return outcome

    # Maintenance

    def cleanup_old_data(self) -> int:
        """Drop records and alerts older than the retention period.

        Returns:
            Number of records removed
        """
        cutoff = self._clock() - self.config.retention_days * 86400
        removed = 0
        for buffer in self._records.values():
            while buffer and buffer[0].timestamp < cutoff:
                buffer.popleft()
                removed += 1

        cutoff_time = datetime.fromtimestamp(cutoff)
        stale = [a.id for a in self._alerts.values() if a.timestamp < cutoff_time]
        for alert_id in stale:
            del self._alerts[alert_id]

        if removed or stale:
            logger.debug("Cleaned %d records and %d alerts", removed, len(stale))
        return removed

    # Reporting

    def _summary(self, records: list[PerformanceRecord]) -> dict[str, Any]:
        if not records:
            return {"interactions": 0}
        return {
            "interactions": len(records),
            "success_rate": sum(1 for r in records if r.success) / len(records),
            "average_response_time_ms": float(np.mean([r.response_time_ms for r in records])),
            "p95_response_time_ms": float(
                np.percentile([r.response_time_ms for r in records], 95)
            ),
            "average_satisfaction": _mean(r.user_satisfaction for r in records),
            "average_cultural_relevance": _mean(r.cultural_relevance for r in records),
            "escalations": sum(1 for r in records if r.escalated),
        }

    def generate_performance_report(
        self, agent_id: str | None = None, timeframe: Timeframe = Timeframe.DAY
    ) -> dict[str, Any]:
        """
        Summary, trends, alerts and recommendations over a time range.

        Args:
            agent_id: Single agent, or every monitored agent when None
            timeframe: Time range of the report

        Returns:
            Report keyed by agent id plus the overall summary
        """
        since = self._clock() - timeframe.seconds
        agent_ids = [agent_id] if agent_id else self.agent_ids
        agents: dict[str, Any] = {}
        all_records: list[PerformanceRecord] = []

        for aid in agent_ids:
            records = self.get_records(aid, since)
            all_records.extend(records)
            health = self._health.get(aid)
            agents[aid] = {
                "summary": self._summary(records),
                "trends": {
                    metric: self.calculate_trend(aid, metric, timeframe).trend.value
                    for metric in ("response_time_ms", "user_satisfaction", "success")
                },
                "health": health.overall.value if health else None,
                "alerts": [a.model_dump(mode="json") for a in self.get_alerts(aid)],
                "recommendations": [
                    r.model_dump(mode="json") for r in self.get_recommendations(aid)
                ],
            }

        return {
            "timeframe": timeframe.value,
            "generated_at": datetime.now().isoformat(),
            "summary": self._summary(all_records),
            "agents": agents,
        }

    def get_performance_dashboard(self) -> dict[str, Any]:
        """Current health, alert counts and last-hour activity for every agent."""
        alerts = self.get_alerts()
        last_hour = self._clock() - Timeframe.HOUR.seconds
        return {
            "agents": {
                agent_id: {
                    "health": status.overall.value,
                    "score": status.score,
                    "active_alerts": status.active_alerts,
                }
                for agent_id, status in self._health.items()
            },
            "alerts": {
                "total": len(alerts),
                "critical": sum(1 for a in alerts if a.severity == AlertSeverity.CRITICAL),
                "warning": sum(1 for a in alerts if a.severity == AlertSeverity.WARNING),
            },
            "last_hour": self._summary(
                [r for aid in self.agent_ids for r in self.get_records(aid, last_hour)]
            ),
        }
