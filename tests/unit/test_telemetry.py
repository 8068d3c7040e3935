"""
Unit tests for perfwatch.telemetry

Tests cover:
- Counters, histograms and gauges on a private registry
- Text exposition output
"""

from perfwatch.telemetry import PipelineTelemetry


class TestPipelineTelemetry:
    """Test pipeline metrics."""

    def test_counters(self):
        telemetry = PipelineTelemetry()

        telemetry.track_tick(True)
        telemetry.track_tick(True)
        telemetry.track_tick(False)
        telemetry.track_anomaly("zscore", "high")
        telemetry.track_bottleneck("cpu", "critical")
        telemetry.track_alert("warning")
        telemetry.track_error("collector", "TimeoutError")

        registry = telemetry.registry
        assert registry.get_sample_value("perfwatch_collection_ticks_total", {"status": "success"}) == 2
        assert registry.get_sample_value("perfwatch_collection_ticks_total", {"status": "error"}) == 1
        assert registry.get_sample_value(
            "perfwatch_anomalies_total", {"algorithm": "zscore", "severity": "high"}
        ) == 1
        assert registry.get_sample_value(
            "perfwatch_bottlenecks_total", {"metric": "cpu", "severity": "critical"}
        ) == 1
        assert registry.get_sample_value("perfwatch_alerts_total", {"severity": "warning"}) == 1
        assert registry.get_sample_value(
            "perfwatch_error_total", {"component": "collector", "error_type": "TimeoutError"}
        ) == 1

    def test_durations_and_gauges(self):
        telemetry = PipelineTelemetry()

        telemetry.track_source_collection("system", 0.05, True)
        telemetry.track_source_collection("system", 0.5, False)
        telemetry.track_processing(0.01)
        telemetry.set_enabled_sources(3)
        telemetry.set_health_score(87.5)

        registry = telemetry.registry
        assert registry.get_sample_value(
            "perfwatch_source_collection_duration_seconds_count", {"source": "system"}
        ) == 2
        assert registry.get_sample_value(
            "perfwatch_source_collections_total", {"source": "system", "status": "error"}
        ) == 1
        assert registry.get_sample_value("perfwatch_processing_duration_seconds_count") == 1
        assert registry.get_sample_value("perfwatch_enabled_sources") == 3
        assert registry.get_sample_value("perfwatch_health_score") == 87.5

    def test_instances_are_isolated(self):
        """Two pipelines in one process do not share or clash on metrics."""
        first = PipelineTelemetry()
        second = PipelineTelemetry()

        first.track_alert("critical")

        assert first.registry.get_sample_value("perfwatch_alerts_total", {"severity": "critical"}) == 1
        assert second.registry.get_sample_value("perfwatch_alerts_total", {"severity": "critical"}) is None

    def test_render(self):
        telemetry = PipelineTelemetry()
        telemetry.set_health_score(90)

        output = telemetry.render().decode()

        assert "perfwatch_health_score 90.0" in output
        assert "# TYPE perfwatch_collection_ticks_total counter" in output
