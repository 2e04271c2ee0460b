"""
Cache performance monitoring and alerting.

The monitor aggregates per-backend and overall metrics in fixed windows,
keeps a bounded history of closed windows, raises threshold alerts with
hysteresis and delivers events to any number of queue-backed subscribers.
"""

import asyncio
import json
import math
import statistics
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Union

import psutil

from ..config import MonitoringSettings
from ..logging_config import get_logger
from .models import (
    AlertSeverity, AlertType, BackendMetrics, BackendName, BackendStats, ContentClass,
    MetricsSnapshot, MonitorEvent, MonitorEventType, OperationOutcome, PerformanceAlert,
    TrendAnalysis, TrendDirection,
)

StatsProvider = Callable[[], Awaitable[Dict[str, BackendStats]]]

TREND_STABLE_PERCENT = 5.0
MAX_LATENCY_SAMPLES = 10000

# metric name -> higher is better
TREND_METRICS = {
    "hit_rate": True,
    "avg_latency_ms": False,
    "error_rate": False,
    "memory_utilization": False,
    "korean_hit_rate": True,
}

_CLOSED = object()


class MonitorSubscription:
    """Queue-backed stream of monitor events for one consumer."""

    def __init__(self, monitor: "CacheMonitor", event_types: Optional[Iterable[MonitorEventType]] = None,
                 max_queue_size: int = 1000):
        self._monitor = monitor
        self._queue: asyncio.Queue = asyncio.Queue(max_queue_size)
        self.event_types = frozenset(MonitorEventType(t) for t in event_types) if event_types else None
        self.closed = False
        self.dropped = 0

    def wants(self, event: MonitorEvent) -> bool:
        return self.event_types is None or event.type in self.event_types

    def _put(self, item: Any) -> None:
        if self._queue.full():
            # Slow consumer: keep the newest events
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def deliver(self, event: MonitorEvent) -> None:
        if not self.closed and self.wants(event):
            self._put(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[MonitorEvent]:
        """Next event, or None once the subscription is closed (or on timeout)."""
        try:
            item = (
                await asyncio.wait_for(self._queue.get(), timeout) if timeout is not None
                else await self._queue.get()
            )
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> List[MonitorEvent]:
        """All queued events, without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            events.append(item)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._monitor._unsubscribe(self)
        self._put(_CLOSED)

    def __aiter__(self) -> AsyncIterator[MonitorEvent]:
        return self

    async def __anext__(self) -> MonitorEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


@dataclass
class _BackendWindow:
    hits: int = 0
    misses: int = 0
    errors: int = 0
    operations: int = 0
    bytes_transferred: int = 0
    latency_total: float = 0.0


@dataclass
class _Window:
    started_at: float
    requests: int = 0
    hits: int = 0
    korean_requests: int = 0
    korean_hits: int = 0
    latin_requests: int = 0
    latin_hits: int = 0
    latencies: Deque[float] = field(default_factory=lambda: deque(maxlen=MAX_LATENCY_SAMPLES))
    backends: Dict[str, _BackendWindow] = field(default_factory=dict)


@dataclass
class _AlertCheck:
    key: str
    type: AlertType
    value: float
    threshold: float
    lower_bound: bool
    severity: AlertSeverity
    message: str


class CacheMonitor:
    """Metrics windows, alerting and event subscriptions for the cache manager."""

    def __init__(
        self,
        settings: Optional[MonitoringSettings] = None,
        stats_provider: Optional[StatsProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or MonitoringSettings()
        self.stats_provider = stats_provider
        self.clock = clock
        self.logger = get_logger(__name__, 'cache_monitor')

        self.started_at = clock()
        self._lock = threading.Lock()
        self._window = _Window(started_at=self.started_at)
        self._korean_keys: Set[str] = set()

        self._history: Deque[MetricsSnapshot] = deque()
        self._active_alerts: Dict[str, PerformanceAlert] = {}
        self._alert_history: Deque[PerformanceAlert] = deque(maxlen=1000)

        self._subscriptions: List[MonitorSubscription] = []
        self._publishing = True
        self.running = False
        self._metrics_task: Optional[asyncio.Task] = None

    # Recording

    def record_operation(self, operation: str, backend: str, latency_ms: float,
                         outcome: Union[OperationOutcome, str], size_bytes: int = 0) -> None:
        """Record one backend call."""
        outcome = OperationOutcome(outcome)
        with self._lock:
            window = self._window.backends.setdefault(backend, _BackendWindow())
            window.operations += 1
            window.latency_total += latency_ms
            window.bytes_transferred += size_bytes
            if outcome == OperationOutcome.HIT:
                window.hits += 1
            elif outcome == OperationOutcome.MISS:
                window.misses += 1
            elif outcome == OperationOutcome.ERROR:
                window.errors += 1

    def record_request(self, hit: bool, latency_ms: float, is_korean: bool = False) -> None:
        """Record one logical cache lookup as seen by the caller."""
        with self._lock:
            window = self._window
            window.requests += 1
            window.latencies.append(latency_ms)
            if hit:
                window.hits += 1
            if is_korean:
                window.korean_requests += 1
                window.korean_hits += int(hit)
            else:
                window.latin_requests += 1
                window.latin_hits += int(hit)

    def record_error(self, operation: str, backend: str, error: BaseException,
                     latency_ms: float = 0.0) -> None:
        """Record a failed backend call and publish a backend-error event."""
        self.record_operation(operation, backend, latency_ms, OperationOutcome.ERROR)
        self.logger.warning(
            f"Cache backend {backend} failed during {operation}: {error}",
            operation="record_error",
            backend=backend,
            failed_operation=operation,
            error_type=type(error).__name__
        )
        self._publish(MonitorEvent(
            type=MonitorEventType.BACKEND_ERROR,
            timestamp=self.clock(),
            payload={
                "backend": backend,
                "operation": operation,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        ))

    def record_entry_added(self, key: str, is_korean: bool) -> None:
        with self._lock:
            if is_korean:
                self._korean_keys.add(key)
            else:
                self._korean_keys.discard(key)

    def record_entry_removed(self, key: str, is_korean: bool = True) -> None:
        with self._lock:
            self._korean_keys.discard(key)

    # Metrics

    async def _backend_stats(self) -> Dict[str, BackendStats]:
        if self.stats_provider is None:
            return {}
        try:
            return await self.stats_provider()
        except Exception as e:
            self.logger.error(
                f"Failed to collect backend stats: {e}",
                operation="collect_stats",
                error=str(e)
            )
            return {}

    def _build_snapshot(self, now: float, window: _Window, stats: Dict[str, BackendStats]) -> MetricsSnapshot:
        backends: Dict[str, BackendMetrics] = {}
        operations = errors = 0
        for name in set(window.backends) | set(stats):
            counters = window.backends.get(name, _BackendWindow())
            operations += counters.operations
            errors += counters.errors
            backend_stats = stats.get(name)
            backends[name] = BackendMetrics(
                backend=name,
                hits=counters.hits,
                misses=counters.misses,
                errors=counters.errors,
                operations=counters.operations,
                bytes_transferred=counters.bytes_transferred,
                avg_latency_ms=counters.latency_total / counters.operations if counters.operations else 0.0,
                availability=(
                    (counters.operations - counters.errors) / counters.operations
                    if counters.operations else 1.0
                ),
                utilization_rate=backend_stats.utilization if backend_stats else None,
            )

        latencies = sorted(window.latencies)
        memory = stats.get(BackendName.MEMORY.value)

        return MetricsSnapshot(
            timestamp=now,
            window_seconds=max(0.0, now - window.started_at),
            requests=window.requests,
            hits=window.hits,
            misses=window.requests - window.hits,
            hit_rate=window.hits / window.requests if window.requests else None,
            avg_latency_ms=statistics.mean(latencies) if latencies else None,
            p95_latency_ms=latencies[max(0, math.ceil(0.95 * len(latencies)) - 1)] if latencies else None,
            error_rate=errors / operations if operations else None,
            errors=errors,
            memory_bytes_used=memory.bytes_used if memory else 0,
            memory_bytes_limit=memory.bytes_limit if memory else None,
            memory_utilization=memory.utilization if memory else None,
            process_rss_bytes=self._process_rss(),
            backends=backends,
            korean_entries=len(self._korean_keys),
            korean_requests=window.korean_requests,
            korean_hit_rate=window.korean_hits / window.korean_requests if window.korean_requests else None,
            latin_hit_rate=window.latin_hits / window.latin_requests if window.latin_requests else None,
        )

    @staticmethod
    def _process_rss() -> Optional[int]:
        try:
            return psutil.Process().memory_info().rss
        except psutil.Error:
            return None

    async def get_current_metrics(self) -> MetricsSnapshot:
        """Live snapshot of the open window."""
        stats = await self._backend_stats()
        now = self.clock()
        with self._lock:
            return self._build_snapshot(now, self._window, stats)

    async def collect_metrics(self) -> MetricsSnapshot:
        """Close the current window, store it in history and evaluate alerts."""
        stats = await self._backend_stats()
        now = self.clock()
        with self._lock:
            snapshot = self._build_snapshot(now, self._window, stats)
            self._window = _Window(started_at=now)

        self._history.append(snapshot)
        cutoff = now - self.settings.history_retention
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()

        self._evaluate_alerts(snapshot)
        return snapshot

    def get_metrics_history(self, since: Optional[float] = None) -> List[MetricsSnapshot]:
        if since is None:
            return list(self._history)
        return [snapshot for snapshot in self._history if snapshot.timestamp >= since]

    def get_class_hit_rates(self) -> Dict[ContentClass, Optional[float]]:
        """Hit rate per content class in the most recent closed window."""
        if not self._history:
            return {ContentClass.KOREAN: None, ContentClass.LATIN: None}
        latest = self._history[-1]
        return {ContentClass.KOREAN: latest.korean_hit_rate, ContentClass.LATIN: latest.latin_hit_rate}

    # Alerting

    def _alert_checks(self, snapshot: MetricsSnapshot) -> List[_AlertCheck]:
        s = self.settings
        checks = []

        if snapshot.hit_rate is not None:
            checks.append(_AlertCheck(
                key="hit_rate",
                type=AlertType.PERFORMANCE,
                value=snapshot.hit_rate,
                threshold=s.hit_rate_min,
                lower_bound=True,
                severity=AlertSeverity.HIGH if snapshot.hit_rate < 0.5 else AlertSeverity.MEDIUM,
                message=(
                    f"Cache hit rate is {snapshot.hit_rate:.1%}, "
                    f"below threshold of {s.hit_rate_min:.1%}"
                ),
            ))

        if snapshot.avg_latency_ms is not None:
            checks.append(_AlertCheck(
                key="latency",
                type=AlertType.PERFORMANCE,
                value=snapshot.avg_latency_ms,
                threshold=s.latency_max_ms,
                lower_bound=False,
                severity=(
                    AlertSeverity.HIGH if snapshot.avg_latency_ms > s.latency_max_ms * 2
                    else AlertSeverity.MEDIUM
                ),
                message=(
                    f"Average latency is {snapshot.avg_latency_ms:.0f}ms, "
                    f"above threshold of {s.latency_max_ms:.0f}ms"
                ),
            ))

        if snapshot.error_rate is not None:
            checks.append(_AlertCheck(
                key="error_rate",
                type=AlertType.ERROR,
                value=snapshot.error_rate,
                threshold=s.error_rate_max,
                lower_bound=False,
                severity=(
                    AlertSeverity.HIGH if snapshot.error_rate > s.error_rate_max * 2
                    else AlertSeverity.MEDIUM
                ),
                message=(
                    f"Backend error rate is {snapshot.error_rate:.1%}, "
                    f"above threshold of {s.error_rate_max:.1%}"
                ),
            ))

        if snapshot.memory_utilization is not None:
            checks.append(_AlertCheck(
                key="memory_utilization",
                type=AlertType.CAPACITY,
                value=snapshot.memory_utilization,
                threshold=s.memory_utilization_max,
                lower_bound=False,
                severity=(
                    AlertSeverity.CRITICAL if snapshot.memory_utilization > 0.95
                    else AlertSeverity.HIGH
                ),
                message=(
                    f"Memory utilization is {snapshot.memory_utilization:.1%}, "
                    f"above threshold of {s.memory_utilization_max:.1%}"
                ),
            ))

        for name, backend in sorted(snapshot.backends.items()):
            if not backend.operations:
                continue
            checks.append(_AlertCheck(
                key=f"availability:{name}",
                type=AlertType.AVAILABILITY,
                value=backend.availability,
                threshold=s.availability_min,
                lower_bound=True,
                severity=AlertSeverity.CRITICAL if backend.availability < 0.8 else AlertSeverity.HIGH,
                message=(
                    f"Backend {name} availability is {backend.availability:.1%}, "
                    f"below threshold of {s.availability_min:.1%}"
                ),
            ))

        return checks

    def _is_breached(self, check: _AlertCheck) -> bool:
        if check.lower_bound:
            return check.value < check.threshold
        return check.value > check.threshold

    def _is_recovered(self, check: _AlertCheck) -> bool:
        margin = self.settings.alert_hysteresis
        if check.lower_bound:
            # Lower-bound metrics are ratios; recovery can never require more than 100%
            return check.value >= min(1.0, check.threshold * (1 + margin))
        return check.value <= check.threshold * (1 - margin)

    def _evaluate_alerts(self, snapshot: MetricsSnapshot) -> None:
        now = snapshot.timestamp
        for check in self._alert_checks(snapshot):
            active = self._active_alerts.get(check.key)

            if active is None and self._is_breached(check):
                alert = PerformanceAlert(
                    id=str(uuid.uuid4()),
                    key=check.key,
                    type=check.type,
                    severity=check.severity,
                    message=check.message,
                    value=check.value,
                    threshold=check.threshold,
                    first_seen_at=now,
                )
                self._active_alerts[check.key] = alert
                self._alert_history.append(alert)
                self.logger.warning(
                    f"Cache alert: {alert.message}",
                    operation="create_alert",
                    alert_id=alert.id,
                    alert_key=alert.key,
                    severity=alert.severity.value
                )
                self._publish(MonitorEvent(type=MonitorEventType.ALERT, timestamp=now, alert=alert))

            elif active is not None and self._is_recovered(check):
                active.resolve(now)
                del self._active_alerts[check.key]
                self.logger.info(
                    f"Cache alert resolved: {active.key}",
                    operation="resolve_alert",
                    alert_id=active.id,
                    alert_key=active.key,
                    value=check.value
                )
                self._publish(MonitorEvent(type=MonitorEventType.ALERT_RESOLVED, timestamp=now, alert=active))

    def get_active_alerts(self) -> List[PerformanceAlert]:
        return list(self._active_alerts.values())

    def get_alert_history(self, limit: Optional[int] = None) -> List[PerformanceAlert]:
        history = list(self._alert_history)
        return history[-limit:] if limit else history

    # Subscriptions

    def subscribe(self, event_types: Optional[Iterable[Union[MonitorEventType, str]]] = None,
                  max_queue_size: int = 1000) -> MonitorSubscription:
        """Open a new event stream; ``event_types`` filters which events it receives."""
        subscription = MonitorSubscription(self, event_types, max_queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MonitorSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _publish(self, event: MonitorEvent) -> None:
        if not self._publishing:
            return
        for subscription in list(self._subscriptions):
            subscription.deliver(event)

    # Analysis

    def analyze_trends(self, window: float) -> List[TrendAnalysis]:
        """
        Compare the latest ``window`` seconds of history with the window before it.

        Metrics without samples in both windows are left out.
        """
        if window <= 0:
            raise ValueError("Trend window must be positive")

        now = self.clock()
        current = [s for s in self._history if now - window < s.timestamp <= now]
        previous = [s for s in self._history if now - 2 * window < s.timestamp <= now - window]

        trends = []
        for metric, higher_is_better in TREND_METRICS.items():
            current_values = [getattr(s, metric) for s in current if getattr(s, metric) is not None]
            previous_values = [getattr(s, metric) for s in previous if getattr(s, metric) is not None]
            if not current_values or not previous_values:
                continue

            prev_mean = statistics.mean(previous_values)
            curr_mean = statistics.mean(current_values)
            if prev_mean:
                change = (curr_mean - prev_mean) / abs(prev_mean) * 100
            else:
                change = 0.0 if curr_mean == prev_mean else math.copysign(100.0, curr_mean)

            if abs(change) < TREND_STABLE_PERCENT:
                direction = TrendDirection.STABLE
            elif (change > 0) == higher_is_better:
                direction = TrendDirection.IMPROVING
            else:
                direction = TrendDirection.DEGRADING

            trends.append(TrendAnalysis(
                metric=metric,
                previous=prev_mean,
                current=curr_mean,
                change_percent=change,
                direction=direction,
                previous_samples=len(previous_values),
                current_samples=len(current_values),
            ))

        return trends

    def _backend_score(self, metrics: BackendMetrics) -> float:
        hit_rate = metrics.hit_rate if metrics.hit_rate is not None else 0.5
        latency_score = max(0.0, 1 - metrics.avg_latency_ms / self.settings.latency_max_ms)
        score = 0.5 + (hit_rate - 0.5) * 0.4 + latency_score * 0.3 + metrics.availability * 0.3
        return min(1.0, max(0.0, score))

    async def get_performance_summary(self) -> Dict[str, Any]:
        """Digest of the open window with per-backend scores and ranked recommendations."""
        snapshot = await self.get_current_metrics()
        s = self.settings

        backends = []
        ranked: List[tuple] = []
        for name, metrics in sorted(snapshot.backends.items()):
            issues = []
            if metrics.hit_rate is not None and metrics.hit_rate < s.hit_rate_min:
                issues.append("Low hit rate")
            if metrics.avg_latency_ms > s.latency_max_ms:
                issues.append("High latency")
            if metrics.availability < s.availability_min:
                issues.append("Availability issues")
                ranked.append((3, f"Check {name} backend connectivity (availability {metrics.availability:.1%})"))
            backends.append({
                "name": name,
                "score": self._backend_score(metrics),
                "issues": issues,
                "metrics": metrics.to_dict(),
            })

        hit_rate = snapshot.hit_rate
        if hit_rate is not None and hit_rate < 0.8:
            ranked.append((2 if hit_rate < s.hit_rate_min else 1, "Consider increasing cache TTL or size limits"))
        if snapshot.avg_latency_ms is not None and snapshot.avg_latency_ms > 500:
            ranked.append((
                2 if snapshot.avg_latency_ms > s.latency_max_ms else 1,
                "Optimize slow operations or increase memory cache usage",
            ))
        if snapshot.memory_utilization is not None and snapshot.memory_utilization > 0.85:
            ranked.append((
                2 if snapshot.memory_utilization > s.memory_utilization_max else 1,
                "Consider increasing memory limits or implementing better eviction",
            ))
        if snapshot.error_rate is not None and snapshot.error_rate > s.error_rate_max:
            ranked.append((2, f"Investigate backend errors (error rate {snapshot.error_rate:.1%})"))
        if (snapshot.korean_hit_rate is not None and hit_rate is not None
                and snapshot.korean_hit_rate > hit_rate * 1.1):
            ranked.append((
                0,
                "Korean content shows good cache performance - consider Korean-optimized strategies",
            ))
        ranked.sort(key=lambda item: item[0], reverse=True)
        recommendations = [text for _, text in ranked]

        active_alerts = self.get_active_alerts()
        digest = f"{snapshot.requests} requests, "
        if hit_rate is not None:
            digest += f"hit rate {hit_rate:.1%}, "
        if snapshot.avg_latency_ms is not None:
            digest += f"avg latency {snapshot.avg_latency_ms:.1f}ms, "
        digest += f"{len(active_alerts)} active alert(s), {len(recommendations)} recommendation(s)"

        return {
            "overall": {
                "requests": snapshot.requests,
                "hit_rate": hit_rate,
                "avg_latency_ms": snapshot.avg_latency_ms,
                "p95_latency_ms": snapshot.p95_latency_ms,
                "error_rate": snapshot.error_rate,
                "uptime_seconds": self.clock() - self.started_at,
            },
            "backends": backends,
            "korean": {
                "entries": snapshot.korean_entries,
                "content_ratio": snapshot.korean_requests / snapshot.requests if snapshot.requests else None,
                "hit_rate": snapshot.korean_hit_rate,
                "latin_hit_rate": snapshot.latin_hit_rate,
            },
            "active_alerts": [alert.to_dict() for alert in active_alerts],
            "recommendations": recommendations,
            "digest": digest,
        }

    def export_metrics(self, path: Union[str, Path]) -> Path:
        """Write metrics history and alerts to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "exported_at": self.clock(),
            "metrics": [snapshot.to_dict() for snapshot in self._history],
            "active_alerts": [alert.to_dict() for alert in self.get_active_alerts()],
            "alert_history": [alert.to_dict() for alert in self._alert_history],
        }
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        self.logger.info(
            "Exported cache metrics",
            operation="export_metrics",
            path=str(path),
            snapshots=len(data["metrics"])
        )
        return path

    # Lifecycle

    async def start(self):
        """Start the metrics interval task."""
        if self.running:
            return

        self.running = True
        self._publishing = True
        self._metrics_task = asyncio.create_task(self._metrics_loop())
        self.logger.info(
            "Cache monitor started",
            operation="start_monitor",
            interval=self.settings.metrics_interval
        )

    async def stop(self):
        """Stop the metrics task; no events are published afterwards."""
        self._publishing = False
        for subscription in list(self._subscriptions):
            subscription.close()

        if not self.running:
            return
        self.running = False

        if self._metrics_task:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)
            self._metrics_task = None

        self.logger.info("Cache monitor stopped", operation="stop_monitor")

    async def _metrics_loop(self):
        """Background task closing one metrics window per interval."""
        while self.running:
            try:
                await asyncio.sleep(self.settings.metrics_interval)
                await self.collect_metrics()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(
                    f"Error in metrics loop: {e}",
                    operation="metrics_loop"
                )
