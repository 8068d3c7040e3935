"""
Unit tests for perfwatch.analyzer

Tests cover:
- Lifecycle state transitions
- On-demand analysis: bottlenecks, trends, anomalies, optimization, summary
- Real-time updates and bottleneck events
- Predictions and state persistence
"""

import pytest

from perfwatch.analyzer import AGGREGATE_SOURCE, AnalyzerState, PerformanceAnalyzer
from perfwatch.models import HOUR_MS, MINUTE_MS, Anomaly, ProcessedResult, Severity, TimeRange, TrendDirection
from perfwatch.storage import InMemorySnapshotStore
from tests.helpers import BASE_TIME, drain_events, normal_values

NOISE = [0.5, -0.3, 0.2, -0.4, 0.1, -0.2, 0.3, -0.1, 0.4, -0.5]


def record(analyzer, metric, values, start=BASE_TIME):
    for i, value in enumerate(values):
        analyzer.record_point(metric, start + i * MINUTE_MS, value)


def processed(timestamp, **averages):
    return ProcessedResult(
        timestamp=timestamp,
        aggregated={"key_metrics": {m: {"avg": v, "min": v, "max": v, "count": 1} for m, v in averages.items()}},
    )


def window(count):
    return TimeRange(BASE_TIME, BASE_TIME + count * MINUTE_MS)


# ============================================================================
# Analysis
# ============================================================================

class TestAnalyzeAll:
    """Test full analysis runs."""

    def test_sustained_cpu_bottleneck(self, config, clock):
        """Seven minutes at 95 is one critical bottleneck and costs 20 health points."""
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [50, 50] + [95] * 7 + [50, 50])

        report = analyzer.analyze_all(window(11))

        assert report.success is True
        assert [b.severity for b in report.bottlenecks] == [Severity.CRITICAL]
        assert report.anomalies == []
        assert report.trends == []
        assert report.summary["health_score"] == 80
        assert report.summary["status"] == "healthy"
        assert report.summary["bottlenecks"]["critical"] == 1
        assert report.optimization["implementation_plan"]["immediate"]["suggestions"][0]["metric"] == "cpu"

    def test_transient_spike_is_not_a_bottleneck(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [50] + [95] * 3 + [50])

        report = analyzer.analyze_all(window(5))

        assert report.bottlenecks == []
        assert report.summary["health_score"] == 100

    def test_rising_trend(self, config, clock):
        """A clean linear rise is reported with a forecast and a capacity suggestion."""
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "memory", [2 * i + NOISE[i % 10] for i in range(30)])

        report = analyzer.analyze_all(window(30))

        assert len(report.trends) == 1
        assert report.trends[0].direction is TrendDirection.INCREASING
        assert len(report.trends[0].forecast) == 24
        assert report.summary["trends"]["increasing"] == 1
        assert report.optimization["suggestions"][0]["category"] == "trend"

    def test_analysis_leaves_live_models_untouched(self, config, clock):
        """A report over a narrower range does not replace the live fit."""
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "memory", [2 * i + NOISE[i % 10] for i in range(40)])
        assert analyzer.refit_models() == ["memory"]
        before = analyzer.get_trend_models()

        report = analyzer.analyze_all(window(20))

        assert len(report.trends) == 1
        assert analyzer.get_trend_models() == before
        assert before["memory"]["sample_count"] == 40

    def test_refit_models_restricted(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "memory", [2 * i + NOISE[i % 10] for i in range(30)])
        record(analyzer, "cpu", [50.0] * 5)

        assert analyzer.refit_models(["memory", "unknown"]) == ["memory"]
        assert set(analyzer.get_trend_models()) == {"memory"}
        assert analyzer.refit_models() == ["memory"]
        assert analyzer.get_trend_models()["cpu"]["trained"] is False

    def test_anomalies_recomputed_from_history(self, config, clock):
        """A spike in a long steady history is found and costs 10 health points."""
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "latency", normal_values(40) + [75.0] + normal_values(5))

        report = analyzer.analyze_all(window(46))

        assert len(report.anomalies) == 1
        assert report.anomalies[0].source == AGGREGATE_SOURCE
        assert report.anomalies[0].severity is Severity.HIGH
        assert report.summary["health_score"] == 90

    def test_sections_can_be_skipped(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [95] * 7)

        report = analyzer.analyze_all(
            window(7), include_bottleneck=False, include_optimization=False,
        )

        assert report.bottlenecks == []
        assert report.optimization is None

    def test_range_filters_history(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [95] * 7)

        report = analyzer.analyze_all(TimeRange(BASE_TIME + HOUR_MS, BASE_TIME + 2 * HOUR_MS))

        assert report.summary["data_points"] == 0

    def test_failure_becomes_error_report(self, config, clock, monkeypatch):
        """Internal errors never escape analyze_all."""
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [95] * 7)

        def broken(series):
            raise RuntimeError("detector crashed")

        monkeypatch.setattr(analyzer.bottleneck_detector, "detect", broken)
        report = analyzer.analyze_all(window(7))

        assert report.success is False
        assert "detector crashed" in report.error
        assert report.to_dict()["time_range"] == window(7).to_dict()
        assert analyzer.get_latest_report() is report

    def test_out_of_order_points_ignored(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)

        assert analyzer.record_point("cpu", BASE_TIME + MINUTE_MS, 10) is True
        assert analyzer.record_point("cpu", BASE_TIME, 20) is False
        assert analyzer.get_history("cpu") == [(BASE_TIME + MINUTE_MS, 10.0)]

    def test_bottleneck_analysis_query(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [95] * 7)

        analysis = analyzer.get_bottleneck_analysis(window(7))

        assert analysis["summary"]["total"] == 1
        assert analysis["bottlenecks"][0]["severity"] == "critical"


# ============================================================================
# Predictions
# ============================================================================

class TestPredictions:
    """Test forecasts of trained models."""

    def test_predict_with_crossing(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [2 * i + NOISE[i % 10] for i in range(30)])
        analyzer.refit_models()

        prediction = analyzer.predict_performance()

        cpu = prediction["forecasts"]["cpu"]
        assert prediction["success"] is True
        assert cpu["direction"] == "increasing"
        assert len(cpu["forecast"]) == 24
        assert cpu["critical_crossing"] is not None
        assert prediction["summary"]["critical_predictions"] == ["cpu"]

    def test_horizon_sets_steps(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [2 * i + NOISE[i % 10] for i in range(30)])
        analyzer.refit_models()

        prediction = analyzer.predict_performance(forecast_horizon_ms=10 * MINUTE_MS, metrics=["cpu"])

        cpu = prediction["forecasts"]["cpu"]
        assert len(cpu["forecast"]) == 10
        assert cpu["critical_crossing"] is None
        assert cpu["forecast"][0]["lower"] < cpu["forecast"][0]["upper"]

    def test_untrained_models_skipped(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)

        prediction = analyzer.predict_performance()

        assert prediction["forecasts"] == {}
        assert prediction["summary"]["average_confidence"] == 0.0


# ============================================================================
# Lifecycle and real-time updates
# ============================================================================

class TestLifecycle:
    """Test start/stop and streaming updates."""

    @pytest.mark.asyncio
    async def test_state_transitions(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)

        assert (await analyzer.stop()).success is False
        started = await analyzer.start()
        assert started.success is True
        assert analyzer.state is AnalyzerState.RUNNING
        assert "cpu" in started.data["metrics"]
        assert (await analyzer.start()).success is False

        stopped = await analyzer.stop()
        assert stopped.success is True
        assert stopped.data["final_analysis"]["success"] is True
        assert analyzer.state is AnalyzerState.STOPPED

    @pytest.mark.asyncio
    async def test_updates_ignored_when_stopped(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)

        analyzer.update_metrics(processed(BASE_TIME, cpu=50))

        assert analyzer.get_history("cpu") == []

    @pytest.mark.asyncio
    async def test_bottleneck_event_emitted_once(self, config, clock):
        """A newly sustained breach is published once per period."""
        analyzer = PerformanceAnalyzer(config, clock=clock)
        events = []
        analyzer.events.subscribe("bottlenecks-detected", events.append)
        await analyzer.start()

        for i in range(10):
            analyzer.update_metrics(processed(BASE_TIME + i * MINUTE_MS, cpu=95))
        await drain_events()

        assert len(events) == 1
        assert events[0].payload[0].type == "cpu"
        assert events[0].payload[0].duration_ms == 5 * MINUTE_MS
        assert analyzer.get_status()["ongoing_bottlenecks"] == ["cpu"]

        analyzer.update_metrics(processed(BASE_TIME + 10 * MINUTE_MS, cpu=10))
        assert analyzer.get_status()["ongoing_bottlenecks"] == []
        await analyzer.stop()

    @pytest.mark.asyncio
    async def test_models_refit_on_update(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        await analyzer.start()

        for i in range(25):
            analyzer.update_metrics(processed(BASE_TIME + i * MINUTE_MS, throughput=3 * i))

        model = analyzer.get_trend_models()["throughput"]
        assert model["trained"] is True
        assert model["direction"] == "increasing"
        await analyzer.stop()

    @pytest.mark.asyncio
    async def test_anomalies_forwarded(self, config, clock):

        analyzer = PerformanceAnalyzer(config, clock=clock)
        events = []
        analyzer.events.subscribe("anomalies-detected", events.append)
        await analyzer.start()
        result = processed(BASE_TIME, cpu=50)
        result.anomalies.append(Anomaly(
            timestamp=BASE_TIME, source="system", metric="cpu", value=99,
            expected_range=(40, 60), deviation_score=5, severity=Severity.HIGH, algorithm="zscore",
        ))

        analyzer.update_metrics(result)
        await drain_events()

        assert len(events) == 1
        assert analyzer.get_recent_anomalies()[0]["metric"] == "cpu"
        await analyzer.stop()

    @pytest.mark.asyncio
    async def test_state_persisted_and_restored(self, config, clock):
        """Trend models survive a restart through the state store."""
        store = InMemorySnapshotStore()
        first = PerformanceAnalyzer(config, state_store=store, clock=clock)
        await first.start()
        for i in range(25):
            first.update_metrics(processed(BASE_TIME + i * MINUTE_MS, throughput=3 * i))
        await first.stop()

        saved = store.load_analysis_state()
        assert saved["models"]["throughput"]["trained"] is True

        second = PerformanceAnalyzer(config, state_store=store, clock=clock)
        await second.start()

        assert second.get_trend_models()["throughput"]["slope"] == pytest.approx(3.0)
        assert second.get_history("throughput") == []
        await second.stop()

    def test_analysis_history(self, config, clock):
        analyzer = PerformanceAnalyzer(config, clock=clock)
        record(analyzer, "cpu", [95] * 7)

        analyzer.analyze_all(window(7))
        analyzer.analyze_all(window(3))

        history = analyzer.get_analysis_history()
        assert len(history) == 2
        assert analyzer.get_analysis_history(limit=1) == history[-1:]
        assert history[0]["summary"]["bottlenecks"]["total"] == 1
