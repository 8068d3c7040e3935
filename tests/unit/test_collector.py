"""
Unit tests for perfwatch.collector

Tests cover:
- Health scoring curve and composite score
- Source registration, enable/disable and auto-disable
- Start/stop lifecycle results
- Collection ticks: isolation, weighting, payload normalisation
- History queries
"""

import asyncio

import pytest

from perfwatch.collector import TelemetryCollector, compute_health, flatten_values, score_component
from perfwatch.config import ThresholdConfig
from perfwatch.models import HealthStatus, MINUTE_MS
from perfwatch.storage import InMemorySnapshotStore
from tests.helpers import AsyncSource, FailingSource, StaticSource, drain_events


# ============================================================================
# Health scoring
# ============================================================================

class TestHealthScoring:
    """Test per-component and composite health."""

    @pytest.mark.parametrize("value,score", [
        (50, 100.0),
        (79.9, 100.0),
        (80, 75.0),
        (85, 37.5),
        (90, 0.0),
        (99, 0.0),
    ])
    def test_score_component(self, value, score):
        """100 below warning, 75 to 0 across the warning band, 0 at critical."""
        threshold = ThresholdConfig(warning=80, critical=90)

        assert score_component(value, threshold) == pytest.approx(score)

    def test_composite_averages_present_components(self, config):
        """Only components with data contribute."""
        health = compute_health({"system": {"cpu": 85, "memory": 50}}, config)

        assert set(health.components) == {"cpu", "memory"}
        assert health.value == pytest.approx((37.5 + 100) / 2)
        assert health.status is HealthStatus.WARNING
        assert health.components["cpu"].status is HealthStatus.WARNING

    def test_no_components_is_healthy(self, config):
        """Nothing to score means a healthy system."""
        health = compute_health({}, config)

        assert health.value == 100.0
        assert health.status is HealthStatus.HEALTHY

    def test_category_free_component(self, config):
        """errorRate is looked up in any category."""
        health = compute_health({"performance": {"errorRate": 5}}, config)

        assert health.components["errors"].score == 0.0
        assert health.status is HealthStatus.CRITICAL

    def test_flatten_values(self):
        """Nested payloads become dotted keys."""
        assert flatten_values({"a": 1, "b": {"c": 2, "d": {"e": 3}}}) == {"a": 1, "b.c": 2, "b.d.e": 3}


# ============================================================================
# Registry
# ============================================================================

class TestRegistry:
    """Test source registration."""

    def test_register_uses_config_defaults(self, config, clock):
        """Weight and category come from configuration."""
        collector = TelemetryCollector(config, clock=clock)

        result = collector.register("network", StaticSource({"latency": 10}))

        assert result.success is True
        registration = collector.get_registration("network")
        assert registration["weight"] == 0.8
        assert registration["category"] == "network"
        assert registration["enabled"] is True
        assert registration["registered_at"] == clock.now

    def test_register_rejects_non_source(self, config, clock):
        """Objects without collect() cannot be registered."""
        collector = TelemetryCollector(config, clock=clock)

        result = collector.register("bad", object())

        assert result.success is False
        assert collector.get_registration("bad") is None

    def test_register_replaces(self, config, clock):
        """Registering a name again replaces the source."""
        collector = TelemetryCollector(config, clock=clock)
        collector.register("app", StaticSource({"x": 1}), weight=1.0)
        collector.register("app", StaticSource({"x": 2}), weight=2.0)

        assert collector.get_registrations()["app"]["weight"] == 2.0

    def test_unknown_source_enable_disable(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)

        assert collector.enable("ghost").success is False
        assert collector.disable("ghost").success is False

    def test_registration_events(self, config, clock):
        """Registration and disabling are published."""
        collector = TelemetryCollector(config, clock=clock)
        names = []
        collector.events.subscribe("*", lambda e: names.append(e.name))

        collector.register("app", StaticSource({"x": 1}))
        collector.disable("app")

        assert names == ["collector-registered", "collector-disabled"]


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:
    """Test start/stop results."""

    @pytest.mark.asyncio
    async def test_start_twice_fails(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)

        assert (await collector.start(schedule=False)).success is True
        second = await collector.start(schedule=False)

        assert second.success is False
        assert second.error == "Collection already active"
        await collector.stop()

    @pytest.mark.asyncio
    async def test_stop_twice_fails_and_restart_works(self, config, clock):
        """Stop when stopped fails; a stopped collector can start again."""
        collector = TelemetryCollector(config, clock=clock)
        await collector.start(schedule=False)

        assert (await collector.stop()).success is True
        second = await collector.stop()
        assert second.success is False
        assert second.error == "Collection not active"

        assert (await collector.start(schedule=False)).success is True
        assert collector.active is True
        await collector.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_sources(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)
        source = StaticSource({"cpu": 10})
        collector.register("system", source)
        await collector.start(schedule=False)

        await collector.stop()

        assert source.closed is True

    @pytest.mark.asyncio
    async def test_collect_when_inactive(self, config, clock):
        """Ticks outside start/stop report failure without collecting."""
        collector = TelemetryCollector(config, clock=clock)
        source = StaticSource({"cpu": 10})
        collector.register("system", source)

        result = await collector.collect_all()

        assert result.success is False
        assert result.error == "Collection not active"
        assert source.calls == 0

    @pytest.mark.asyncio
    async def test_scheduled_ticks(self, config):
        """With scheduling on, the collector ticks by itself."""
        config.collection.interval_ms = 10
        collector = TelemetryCollector(config)
        source = StaticSource({"cpu": 10})
        collector.register("system", source)

        await collector.start()
        await asyncio.sleep(0.06)
        await collector.stop()

        assert source.calls >= 2


# ============================================================================
# Collection
# ============================================================================

class TestCollection:
    """Test collection ticks."""

    @pytest.mark.asyncio
    async def test_failure_isolated(self, config, clock):
        """One failing source does not affect the others."""
        collector = TelemetryCollector(config, clock=clock)
        collector.register("system", StaticSource({"cpu": 40}))
        collector.register("broken", FailingSource("source unavailable"))
        await collector.start(schedule=False)

        result = await collector.collect_all()

        assert result.success is True
        assert result.successful_sources == ["system"]
        assert result.failed_sources == ["broken"]
        assert "source unavailable" in result.sources["broken"].error
        assert result.aggregated == {"system": {"cpu": 40.0}}
        await collector.stop()

    @pytest.mark.asyncio
    async def test_auto_disable_after_threshold(self, config, clock):
        """Six consecutive failures disable a source; the seventh tick skips it."""
        collector = TelemetryCollector(config, clock=clock)
        source = FailingSource()
        collector.register("flaky", source)
        await collector.start(schedule=False)

        for tick in range(6):
            await collector.collect_all()
            clock.advance()
            if tick < 5:
                assert collector.get_registration("flaky")["enabled"] is True

        registration = collector.get_registration("flaky")
        assert registration["enabled"] is False
        assert registration["consecutive_failures"] == 6
        assert registration["disabled_at"] is not None

        result = await collector.collect_all()
        assert "flaky" not in result.sources
        assert source.calls == 6
        await collector.stop()

    @pytest.mark.asyncio
    async def test_enable_resets_failures(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)
        collector.register("flaky", FailingSource())
        await collector.start(schedule=False)
        for _ in range(6):
            await collector.collect_all()

        collector.enable("flaky")

        registration = collector.get_registration("flaky")
        assert registration["enabled"] is True
        assert registration["consecutive_failures"] == 0
        assert registration["error_count"] == 6
        await collector.stop()

    @pytest.mark.asyncio
    async def test_weighted_aggregation(self, config, clock):
        """Fields are averaged by weight within a category; strings are ignored."""
        collector = TelemetryCollector(config, clock=clock)
        collector.register("a", StaticSource({"cpu": 40, "host": "a1"}), weight=1.0, category="system")
        collector.register("b", StaticSource({"cpu": 80}), weight=3.0, category="system")
        collector.register("c", StaticSource({"latency": 100}), weight=1.0, category="network")
        await collector.start(schedule=False)

        result = await collector.collect_all()

        assert result.aggregated["system"] == {"cpu": pytest.approx(70.0)}
        assert result.aggregated["network"] == {"latency": 100.0}
        await collector.stop()

    @pytest.mark.asyncio
    async def test_async_and_wrapped_payloads(self, config, clock):
        """Coroutine sources and {'values': ...} payloads are supported."""
        collector = TelemetryCollector(config, clock=clock)
        collector.register("process", AsyncSource({"rss": {"mb": 120}}))
        await collector.start(schedule=False)

        result = await collector.collect_all()

        assert result.sources["process"].values == {"rss.mb": 120}
        await collector.stop()

    @pytest.mark.asyncio
    async def test_non_mapping_payload_fails(self, config, clock):
        """A source returning a non-mapping is a failure."""
        class ListSource:
            def collect(self):
                return [1, 2, 3]

        collector = TelemetryCollector(config, clock=clock)
        collector.register("odd", ListSource())
        await collector.start(schedule=False)

        result = await collector.collect_all()

        assert result.failed_sources == ["odd"]
        assert "expected a mapping" in result.sources["odd"].error
        await collector.stop()

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, config, clock):
        config.collection.source_timeout_seconds = 0.01
        collector = TelemetryCollector(config, clock=clock)
        collector.register("slow", AsyncSource({"x": 1}, delay=0.2))
        await collector.start(schedule=False)

        result = await collector.collect_all()

        assert result.failed_sources == ["slow"]
        assert "Timed out" in result.sources["slow"].error
        await collector.stop()

    @pytest.mark.asyncio
    async def test_timestamps_never_go_backwards(self, config, clock):
        """A clock step backwards does not produce out-of-order snapshots."""
        collector = TelemetryCollector(config, clock=clock)
        collector.register("system", StaticSource({"cpu": 10}))
        await collector.start(schedule=False)

        first = await collector.collect_all()
        clock.advance(-MINUTE_MS)
        second = await collector.collect_all()

        assert second.timestamp == first.timestamp
        assert len(collector.get_series("system")) == 2
        await collector.stop()

    @pytest.mark.asyncio
    async def test_health_and_store(self, config, clock):
        """Each tick carries a health score and feeds the snapshot store."""
        store = InMemorySnapshotStore()
        collector = TelemetryCollector(config, store=store, clock=clock)
        collector.register("system", StaticSource({"cpu": 95, "memory": 10}))
        await collector.start(schedule=False)

        result = await collector.collect_all()

        assert result.health.components["cpu"].score == 0.0
        assert result.health.value == pytest.approx(50.0)
        assert len(store.query("system")) == 1
        await collector.stop()

    @pytest.mark.asyncio
    async def test_metrics_collected_event(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)
        collector.register("system", StaticSource({"cpu": 10}))
        received = []
        collector.events.subscribe("metrics-collected", received.append)
        await collector.start(schedule=False)

        result = await collector.collect_all()
        await drain_events()

        assert received[0].payload is result
        await collector.stop()


# ============================================================================
# Queries
# ============================================================================

class TestQueries:
    """Test history and status queries."""

    @pytest.mark.asyncio
    async def test_history_raw_and_aggregated(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)
        collector.register("system", StaticSource({"cpu": 10}))
        await collector.start(schedule=False)
        start = clock.now
        for _ in range(3):
            await collector.collect_all()
            clock.advance(20_000)

        raw = collector.get_history(sources=["system"])
        per_minute = collector.get_history(start, clock.now, aggregation="minute")

        assert len(raw["system"]) == 3
        assert raw["system"][0] == {"timestamp": start, "values": {"cpu": 10}}
        assert per_minute["system"] == [{"timestamp": start, "values": {"cpu": 10.0}, "samples": 3}]
        await collector.stop()

    @pytest.mark.asyncio
    async def test_prune_and_stats(self, config, clock):
        collector = TelemetryCollector(config, clock=clock)
        collector.register("system", StaticSource({"cpu": 10}))
        await collector.start(schedule=False)
        await collector.collect_all()
        clock.advance()
        await collector.collect_all()

        assert collector.prune(clock.now) == 1
        stats = collector.get_stats()
        assert stats["ticks"] == 2
        assert stats["snapshots_collected"] == 2
        assert stats["snapshots_retained"] == 1
        assert collector.get_source_status()["system"]["data_points"] == 1
        await collector.stop()
