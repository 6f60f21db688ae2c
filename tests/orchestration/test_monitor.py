"""Tests for performance monitoring, alerting and optimization."""

import numpy as np
import pytest

from facet.config.schema import MonitoringConfig
from facet.events import EventEmitter, EventType
from facet.orchestration.monitor import (
    AlertSeverity,
    AlertType,
    HealthLevel,
    PerformanceMonitor,
    PerformanceRecord,
    Priority,
    RecommendationStatus,
    Timeframe,
    TrendDirection,
    classify_trend,
    linear_regression,
)


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def monitor(clock, events, metrics_source):
    return PerformanceMonitor(MonitoringConfig(), events, metrics_source, clock)


def captured(events, event_type):
    received = []
    events.on(event_type, received.append)
    return received


def record_many(monitor, clock, agent_id, values, step=60.0, **fields):
    for value in values:
        monitor.record_interaction(agent_id, value, True, **fields)
        clock.advance(step)


class TestRegression:
    def test_linear_series(self):
        slope, intercept, r_squared, residual_std = linear_regression([1, 3, 5, 7])

        assert slope == pytest.approx(2.0)
        assert intercept == pytest.approx(1.0)
        assert r_squared == pytest.approx(1.0)
        assert residual_std == pytest.approx(0.0, abs=1e-9)

    def test_constant_series_is_a_perfect_fit(self):
        slope, _, r_squared, _ = linear_regression([5, 5, 5])

        assert slope == pytest.approx(0.0, abs=1e-12)
        assert r_squared == 1.0

    def test_too_few_points(self):
        assert linear_regression([4.0]) == (0.0, 4.0, 0.0, 0.0)
        assert linear_regression([]) == (0.0, 0.0, 0.0, 0.0)

    def test_classify_trend_respects_metric_direction(self):
        rising = [100.0, 200.0, 300.0]

        assert classify_trend("response_time_ms", 100.0, rising) == TrendDirection.DECLINING
        assert classify_trend("user_satisfaction", 100.0, rising) == TrendDirection.IMPROVING
        assert classify_trend("response_time_ms", 0.1, rising) == TrendDirection.STABLE


def test_record_value_accessor():
    """Test derived metrics on a record."""
    record = PerformanceRecord("a", 0.0, 1200.0, success=False, user_satisfaction=0.7)

    assert record.value("response_time_ms") == 1200.0
    assert record.value("success") == 0.0
    assert record.value("error_rate") == 1.0
    assert record.value("cultural_relevance") is None


def test_records_are_bounded(clock, events, metrics_source):
    """Test the per-agent ring buffer keeps the newest records."""
    monitor = PerformanceMonitor(MonitoringConfig(max_records=10), events, metrics_source, clock)
    record_many(monitor, clock, "a", range(25))

    records = monitor.get_records("a")
    assert len(records) == 10
    assert records[0].response_time_ms == 15


def test_record_captures_resources(monitor, metrics_source):
    """Test resource usage comes from the metrics source."""
    metrics_source.cpu_percent = 42.0

    record = monitor.record_interaction("a", 100, True, concurrent_sessions=3)

    assert record.cpu_percent == 42.0
    assert record.memory_mb == 128.0
    assert record.concurrent_sessions == 3


class TestAlerts:
    def test_response_time_severity(self, monitor, events):
        alerts = captured(events, EventType.ALERT_TRIGGERED)

        monitor.record_interaction("a", 1000, True)
        assert alerts == []

        monitor.record_interaction("a", 6000, True)
        monitor.record_interaction("b", 12000, True)

        assert [e.payload["alert"]["severity"] for e in alerts] == ["warning", "critical"]
        critical = monitor.get_alerts("b")[0]
        assert critical.type == AlertType.PERFORMANCE
        assert critical.threshold == 10000
        assert critical.id.startswith("alert_")

    def test_new_alert_supersedes_open_alert(self, monitor, clock):
        monitor.record_interaction("a", 6000, True)
        clock.advance(1)
        monitor.record_interaction("a", 12000, True)

        open_alerts = monitor.get_alerts("a")
        all_alerts = monitor.get_alerts("a", include_resolved=True)
        assert len(open_alerts) == 1
        assert open_alerts[0].severity == AlertSeverity.CRITICAL
        superseded = [a for a in all_alerts if a.resolved]
        assert superseded[0].superseded_by == open_alerts[0].id

    def test_satisfaction_alerts_only_when_rated(self, monitor):
        monitor.record_interaction("a", 100, True)
        monitor.record_interaction("a", 100, True, user_satisfaction=0.5)

        alerts = monitor.get_alerts("a")
        assert len(alerts) == 1
        assert alerts[0].metric == "user_satisfaction"
        assert alerts[0].severity == AlertSeverity.WARNING

    def test_error_rate_needs_minimum_samples(self, monitor):
        for _ in range(4):
            monitor.record_interaction("a", 100, False)
        assert monitor.get_alerts("a") == []

        monitor.record_interaction("a", 100, False)
        alerts = monitor.get_alerts("a")
        assert alerts[0].metric == "error_rate"
        assert alerts[0].type == AlertType.AVAILABILITY
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].current_value == 1.0

    def test_resolve_alert(self, monitor):
        monitor.record_interaction("a", 6000, True)
        alert = monitor.get_alerts("a")[0]

        assert monitor.resolve_alert(alert.id) is True
        assert monitor.resolve_alert(alert.id) is False
        assert monitor.resolve_alert("alert_unknown") is False
        assert monitor.get_alerts("a") == []
        assert monitor.get_alerts("a", include_resolved=True)[0].resolved_at is not None

    def test_filter_by_severity(self, monitor):
        monitor.record_interaction("a", 6000, True)
        monitor.record_interaction("b", 12000, True)

        critical = monitor.get_alerts(severity=AlertSeverity.CRITICAL)
        assert [a.agent_id for a in critical] == ["b"]


class TestHealth:
    def test_offline_without_records(self, monitor, events):
        updates = captured(events, EventType.HEALTH_UPDATED)

        status = monitor.update_health_status("ghost")

        assert status.overall == HealthLevel.OFFLINE
        assert status.score == 0.0
        assert updates[0].payload["overall"] == "offline"

    def test_healthy_agent(self, monitor, clock):
        record_many(monitor, clock, "a", [500] * 10, user_satisfaction=0.9)

        status = monitor.update_health_status("a")

        assert status.overall == HealthLevel.HEALTHY
        assert status.score == 100.0
        assert set(status.components) == {"performance", "quality", "availability", "resources"}

    def test_degraded_agent(self, monitor, clock):
        for _ in range(10):
            monitor.record_interaction("a", 12000, False, user_satisfaction=0.3)
            clock.advance(1)

        status = monitor.update_health_status("a")

        assert status.overall == HealthLevel.CRITICAL
        assert status.components["performance"] == HealthLevel.CRITICAL
        assert status.components["availability"] == HealthLevel.CRITICAL
        assert status.components["resources"] == HealthLevel.HEALTHY
        assert status.score == pytest.approx((20 * 3 + 100) / 4)
        assert status.active_alerts > 0

    def test_warning_level(self, monitor, clock):
        record_many(monitor, clock, "a", [6000] * 5)

        status = monitor.update_health_status("a")

        assert status.components["performance"] == HealthLevel.WARNING
        assert status.overall == HealthLevel.HEALTHY
        assert status.score == pytest.approx(90.0)

    def test_run_health_checks(self, monitor):
        monitor.record_interaction("a", 100, True)
        monitor.record_interaction("b", 100, True)

        statuses = monitor.run_health_checks()

        assert set(statuses) == {"a", "b"}
        assert monitor.get_health_status("a") is statuses["a"]


class TestTrends:
    def test_rising_response_time_is_declining(self, monitor, clock):
        record_many(monitor, clock, "a", np.linspace(1000, 3000, 20))

        trend = monitor.calculate_trend("a", "response_time_ms", Timeframe.DAY)

        assert trend.trend == TrendDirection.DECLINING
        assert trend.change_rate > 0
        assert trend.confidence == pytest.approx(1.0)
        assert trend.data_points == 20

    def test_flat_series_is_stable(self, monitor, clock):
        record_many(monitor, clock, "a", [1500] * 10)

        trend = monitor.calculate_trend("a", "response_time_ms")

        assert trend.trend == TrendDirection.STABLE

    def test_timeframe_limits_records(self, monitor, clock):
        record_many(monitor, clock, "a", [1000] * 5, step=3600)

        trend = monitor.calculate_trend("a", "response_time_ms", Timeframe.HOUR)

        assert trend.data_points == 1
        assert trend.confidence == 0.0

    def test_analyze_picks_most_confident_range(self, monitor, clock):
        record_many(monitor, clock, "a", np.linspace(0.9, 0.5, 12), step=3600)

        trend = monitor.analyze_performance_trends("a", "response_time_ms")

        assert trend.data_points >= 2
        assert trend.confidence == pytest.approx(1.0)


class TestPrediction:
    def test_needs_ten_points(self, monitor, clock):
        record_many(monitor, clock, "a", [1000] * 9)

        assert monitor.predict_performance("a", "response_time_ms", 24) is None

    def test_projects_along_regression_line(self, monitor, clock):
        values = [1000 + 100 * i for i in range(10)]
        record_many(monitor, clock, "a", values)

        prediction = monitor.predict_performance("a", "response_time_ms", 24)

        # 24h ahead projects one window past the last point: index 20
        assert prediction.predicted_value == pytest.approx(1000 + 100 * 20)
        assert prediction.trend == TrendDirection.DECLINING
        assert prediction.confidence == pytest.approx(1.0)
        assert prediction.range_min == pytest.approx(prediction.predicted_value, abs=1e-6)

    def test_noisy_series_widens_range(self, monitor, clock):
        record_many(monitor, clock, "a", [1000, 1400] * 6)

        prediction = monitor.predict_performance("a", "response_time_ms", 12)

        assert prediction.range_max - prediction.range_min > 0
        assert prediction.confidence < 0.5


class TestOptimization:
    def test_recommendations_from_averages(self, monitor, clock, metrics_source):
        metrics_source.cpu_percent = 85.0
        for _ in range(10):
            monitor.record_interaction("a", 7000, False, user_satisfaction=0.4)
            clock.advance(1)

        recommendations = monitor.generate_optimization_recommendations("a")

        titles = [r.title for r in recommendations]
        assert titles == [
            "Optimize Response Time",
            "Improve User Satisfaction",
            "Optimize Resource Usage",
            "Reduce Error Rate",
        ]
        assert recommendations[0].priority == Priority.HIGH
        assert recommendations[1].priority == Priority.CRITICAL
        assert recommendations[3].priority == Priority.CRITICAL
        assert monitor.get_recommendations("a") == recommendations

    def test_no_recommendations_for_healthy_agent(self, monitor, clock):
        record_many(monitor, clock, "a", [500] * 10, user_satisfaction=0.95)

        assert monitor.generate_optimization_recommendations("a") == []
        assert monitor.generate_optimization_recommendations("ghost") == []

    @pytest.mark.asyncio
    async def test_auto_optimize_applies_low_risk(self, monitor, clock, events):
        completed = captured(events, EventType.OPTIMIZATION_COMPLETED)
        applied = []

        async def apply_performance(rec):
            applied.append(rec.title)

        monitor.register_applier(AlertType.PERFORMANCE, apply_performance)
        for _ in range(10):
            monitor.record_interaction("a", 7000, True, user_satisfaction=0.4)
            clock.advance(1)

        outcome = await monitor.auto_optimize("a")

        # Satisfaction work is medium risk and stays pending
        assert outcome.applied == ["Optimize Response Time"]
        assert outcome.success
        assert applied == ["Optimize Response Time"]
        assert outcome.expected_improvements["response_time_ms"] == pytest.approx(-2100)
        statuses = {r.title: r.status for r in monitor.get_recommendations("a")}
        assert statuses["Optimize Response Time"] == RecommendationStatus.COMPLETED
        assert statuses["Improve User Satisfaction"] == RecommendationStatus.PENDING
        assert completed[0].payload["applied"] == ["Optimize Response Time"]

    @pytest.mark.asyncio
    async def test_failing_applier_rejects_recommendation(self, monitor, clock):
        async def broken(rec):
            raise RuntimeError("cannot reconfigure")

        monitor.register_applier(AlertType.AVAILABILITY, broken)
        for _ in range(10):
            monitor.record_interaction("a", 100, False)
            clock.advance(1)

        outcome = await monitor.auto_optimize("a")

        assert outcome.failed == ["Reduce Error Rate"]
        assert not outcome.success
        assert monitor.get_recommendations("a")[0].status == RecommendationStatus.REJECTED


def test_cleanup_old_data(clock, events, metrics_source):
    """Test records and alerts past retention are dropped."""
    monitor = PerformanceMonitor(MonitoringConfig(retention_days=1), events, metrics_source, clock)
    monitor.record_interaction("a", 6000, True)
    monitor.record_interaction("a", 100, True)
    clock.advance(86400 + 1)
    monitor.record_interaction("a", 100, True)

    removed = monitor.cleanup_old_data()

    assert removed == 2
    assert len(monitor.get_records("a")) == 1
    assert monitor.get_alerts("a", include_resolved=True) == []


def test_performance_report(monitor, clock):
    """Test the report summarizes each agent over the timeframe."""
    record_many(monitor, clock, "a", [1000, 2000, 3000], user_satisfaction=0.8)
    monitor.record_interaction("b", 500, False)
    monitor.update_health_status("a")

    report = monitor.generate_performance_report(timeframe=Timeframe.DAY)

    assert report["timeframe"] == "24h"
    assert report["summary"]["interactions"] == 4
    agent_a = report["agents"]["a"]
    assert agent_a["summary"]["average_response_time_ms"] == pytest.approx(2000)
    assert agent_a["summary"]["average_satisfaction"] == pytest.approx(0.8)
    assert agent_a["trends"]["response_time_ms"] == "declining"
    assert agent_a["health"] == "healthy"
    assert report["agents"]["b"]["summary"]["success_rate"] == 0.0

    single = monitor.generate_performance_report("b", Timeframe.HOUR)
    assert list(single["agents"]) == ["b"]


def test_dashboard(monitor):
    """Test the dashboard counts alerts and recent activity."""
    monitor.record_interaction("a", 6000, True)
    monitor.record_interaction("b", 12000, True)
    monitor.run_health_checks()

    dashboard = monitor.get_performance_dashboard()

    assert dashboard["alerts"] == {"total": 2, "critical": 1, "warning": 1}
    assert set(dashboard["agents"]) == {"a", "b"}
    assert dashboard["last_hour"]["interactions"] == 2
