"""
Tests for cache metrics, alerting and event subscriptions.
"""

import json

import pytest

from krds.shared.caching import (
    AlertSeverity,
    BackendStats,
    CacheMonitor,
    ContentClass,
    MonitorEventType,
    TrendDirection,
)
from krds.shared.config import MonitoringSettings


@pytest.fixture
def monitor(clock):
    return CacheMonitor(MonitoringSettings(hit_rate_min=0.7, alert_hysteresis=0.05), clock=clock)


def _requests(monitor, hits, total, latency_ms=2.0, is_korean=False):
    for i in range(total):
        monitor.record_request(i < hits, latency_ms, is_korean)


class TestMetrics:
    """Test window aggregation."""

    @pytest.mark.asyncio
    async def test_snapshot_aggregates_requests_and_backends(self, monitor):
        _requests(monitor, 3, 4, latency_ms=10.0, is_korean=True)
        _requests(monitor, 0, 1, latency_ms=30.0)
        monitor.record_operation("get", "memory", 1.0, "hit", size_bytes=100)
        monitor.record_operation("get", "remote", 5.0, "miss")
        monitor.record_operation("set", "remote", 7.0, "error")

        snapshot = await monitor.get_current_metrics()

        assert snapshot.requests == 5
        assert snapshot.hit_rate == pytest.approx(0.6)
        assert snapshot.avg_latency_ms == pytest.approx(14.0)
        assert snapshot.p95_latency_ms == 30.0
        assert snapshot.error_rate == pytest.approx(1 / 3)
        assert snapshot.korean_hit_rate == pytest.approx(0.75)
        assert snapshot.latin_hit_rate == 0.0
        assert snapshot.backends["memory"].bytes_transferred == 100
        assert snapshot.backends["remote"].availability == pytest.approx(0.5)
        assert snapshot.backends["remote"].avg_latency_ms == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_collect_closes_window_and_keeps_history(self, monitor, clock):
        _requests(monitor, 1, 1)
        clock.advance(30)
        first = await monitor.collect_metrics()

        assert first.window_seconds == 30
        assert (await monitor.get_current_metrics()).requests == 0
        assert monitor.get_metrics_history() == [first]
        assert monitor.get_metrics_history(since=clock() + 1) == []

    @pytest.mark.asyncio
    async def test_history_pruned_by_retention(self, clock):
        monitor = CacheMonitor(MonitoringSettings(history_retention=100), clock=clock)
        await monitor.collect_metrics()
        clock.advance(150)
        latest = await monitor.collect_metrics()

        assert monitor.get_metrics_history() == [latest]

    @pytest.mark.asyncio
    async def test_memory_utilization_from_stats_provider(self, clock):
        async def stats():
            return {"memory": BackendStats(name="memory", entries=3, bytes_used=50, bytes_limit=200)}

        monitor = CacheMonitor(stats_provider=stats, clock=clock)
        snapshot = await monitor.get_current_metrics()

        assert snapshot.memory_bytes_used == 50
        assert snapshot.memory_utilization == pytest.approx(0.25)
        assert snapshot.backends["memory"].utilization_rate == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_class_hit_rates_from_latest_window(self, monitor):
        assert monitor.get_class_hit_rates() == {ContentClass.KOREAN: None, ContentClass.LATIN: None}

        _requests(monitor, 4, 5, is_korean=True)
        await monitor.collect_metrics()

        rates = monitor.get_class_hit_rates()
        assert rates[ContentClass.KOREAN] == pytest.approx(0.8)
        assert rates[ContentClass.LATIN] is None

    @pytest.mark.asyncio
    async def test_korean_entry_tracking(self, monitor):
        monitor.record_entry_added("a", is_korean=True)
        monitor.record_entry_added("b", is_korean=True)
        monitor.record_entry_added("b", is_korean=False)
        monitor.record_entry_removed("a")

        assert (await monitor.get_current_metrics()).korean_entries == 0


class TestAlerts:
    """Test threshold alerts and hysteresis."""

    @pytest.mark.asyncio
    async def test_hit_rate_alert_raised_once_and_resolved_once(self, monitor):
        subscription = monitor.subscribe([MonitorEventType.ALERT, MonitorEventType.ALERT_RESOLVED])

        _requests(monitor, 2, 10)
        await monitor.collect_metrics()
        events = subscription.drain()
        assert [event.type for event in events] == [MonitorEventType.ALERT]
        alert = events[0].alert
        assert alert.key == "hit_rate"
        assert alert.severity == AlertSeverity.HIGH

        # Still breached: no duplicate
        _requests(monitor, 3, 10)
        await monitor.collect_metrics()
        assert subscription.drain() == []

        # Above the threshold but inside the hysteresis band
        _requests(monitor, 18, 25)
        await monitor.collect_metrics()
        assert subscription.drain() == []
        assert [a.key for a in monitor.get_active_alerts()] == ["hit_rate"]

        _requests(monitor, 10, 10)
        await monitor.collect_metrics()
        events = subscription.drain()
        assert [event.type for event in events] == [MonitorEventType.ALERT_RESOLVED]
        assert events[0].alert.id == alert.id
        assert events[0].alert.resolved_at is not None
        assert monitor.get_active_alerts() == []
        assert monitor.get_alert_history() == [alert]

    @pytest.mark.asyncio
    async def test_availability_alert_per_backend(self, monitor):
        for _ in range(9):
            monitor.record_operation("get", "remote", 1.0, "error")
        monitor.record_operation("get", "remote", 1.0, "miss")
        monitor.record_operation("get", "memory", 1.0, "hit")

        await monitor.collect_metrics()

        alerts = {alert.key: alert for alert in monitor.get_active_alerts()}
        assert "availability:remote" in alerts
        assert "availability:memory" not in alerts
        assert alerts["availability:remote"].severity == AlertSeverity.CRITICAL
        assert "error_rate" in alerts

    @pytest.mark.asyncio
    async def test_backend_error_event(self, monitor):
        subscription = monitor.subscribe([MonitorEventType.BACKEND_ERROR])

        monitor.record_error("get", "remote", ConnectionError("refused"), latency_ms=3.0)

        event = await subscription.get(timeout=1)
        assert event.type == MonitorEventType.BACKEND_ERROR
        assert event.payload == {
            "backend": "remote",
            "operation": "get",
            "error": "refused",
            "error_type": "ConnectionError",
        }
        assert (await monitor.get_current_metrics()).backends["remote"].errors == 1

    @pytest.mark.asyncio
    async def test_no_events_after_stop(self, monitor):
        subscription = monitor.subscribe()
        await monitor.start()
        await monitor.stop()

        monitor.record_error("get", "remote", ConnectionError("refused"))
        _requests(monitor, 0, 10)
        await monitor.collect_metrics()

        assert subscription.closed
        assert subscription.drain() == []
        assert await subscription.get(timeout=0.1) is None
        # Alerts are still tracked, only publishing stops
        assert {a.key for a in monitor.get_active_alerts()} == {"hit_rate", "error_rate", "availability:remote"}

    @pytest.mark.asyncio
    async def test_slow_subscriber_keeps_newest_events(self, monitor):
        subscription = monitor.subscribe(max_queue_size=2)
        for backend in ("memory", "remote", "file"):
            monitor.record_error("get", backend, OSError("boom"))

        events = subscription.drain()
        assert [event.payload["backend"] for event in events] == ["remote", "file"]
        assert subscription.dropped == 1


class TestAnalysis:
    """Test trends, summaries and export."""

    @pytest.mark.asyncio
    async def test_trend_detects_improving_hit_rate(self, monitor, clock):
        _requests(monitor, 4, 10)
        clock.advance(30)
        await monitor.collect_metrics()
        _requests(monitor, 9, 10)
        clock.advance(60)
        await monitor.collect_metrics()

        trends = {trend.metric: trend for trend in monitor.analyze_trends(60)}

        assert trends["hit_rate"].direction == TrendDirection.IMPROVING
        assert trends["hit_rate"].change_percent == pytest.approx(125.0)
        assert trends["avg_latency_ms"].direction == TrendDirection.STABLE
        assert "korean_hit_rate" not in trends

    def test_trend_window_must_be_positive(self, monitor):
        with pytest.raises(ValueError):
            monitor.analyze_trends(0)

    @pytest.mark.asyncio
    async def test_performance_summary_ranks_availability_first(self, monitor):
        _requests(monitor, 5, 10, is_korean=True)
        for _ in range(4):
            monitor.record_operation("get", "remote", 2.0, "error")
        monitor.record_operation("get", "remote", 2.0, "hit")

        summary = await monitor.get_performance_summary()

        assert summary["overall"]["requests"] == 10
        assert summary["recommendations"][0].startswith("Check remote backend connectivity")
        assert "Consider increasing cache TTL or size limits" in summary["recommendations"]
        remote = next(b for b in summary["backends"] if b["name"] == "remote")
        assert "Availability issues" in remote["issues"]
        assert 0.0 <= remote["score"] <= 1.0
        assert summary["korean"]["content_ratio"] == 1.0
        assert summary["digest"].startswith("10 requests, hit rate 50.0%")

    @pytest.mark.asyncio
    async def test_export_metrics(self, monitor, tmp_path):
        _requests(monitor, 1, 10)
        await monitor.collect_metrics()

        path = monitor.export_metrics(tmp_path / "reports" / "metrics.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert len(data["metrics"]) == 1
        assert data["metrics"][0]["requests"] == 10
        assert data["active_alerts"][0]["key"] == "hit_rate"
        assert len(data["alert_history"]) == 1
