"""
Cache data model shared by the manager, the backend adapters, the strategy
engine and the monitor.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class BackendName(str, Enum):
    """Cache backends, fastest first."""
    MEMORY = "memory"
    REMOTE = "remote"
    FILE = "file"


class Priority(str, Enum):
    """Entry priority hint."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class StrategyName(str, Enum):
    """Caching strategies understood by the strategy engine."""
    LRU = "lru"
    LFU = "lfu"
    KOREAN_OPTIMIZED = "korean-optimized"
    ADAPTIVE = "adaptive"


class ContentClass(str, Enum):
    """Content classes used for TTL boosting and adaptive weights."""
    KOREAN = "korean"
    LATIN = "latin"


class TTLTier(str, Enum):
    """TTL tier chosen by the strategy engine."""
    DEFAULT = "default"
    BOOSTED = "boosted"
    LARGE = "large"
    FREQUENT = "frequent"


class OperationOutcome(str, Enum):
    """Outcome of a single backend operation."""
    HIT = "hit"
    MISS = "miss"
    SUCCESS = "success"
    ERROR = "error"


class AlertType(str, Enum):
    PERFORMANCE = "performance"
    AVAILABILITY = "availability"
    CAPACITY = "capacity"
    ERROR = "error"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MonitorEventType(str, Enum):
    ALERT = "alert"
    ALERT_RESOLVED = "alert-resolved"
    BACKEND_ERROR = "backend-error"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    DEGRADING = "degrading"
    STABLE = "stable"


@dataclass
class CacheEntry:
    """A cached value plus the metadata every backend stores with it."""
    key: str
    value: Any
    ttl: float
    created_at: float
    expires_at: float
    tags: FrozenSet[str] = field(default_factory=frozenset)
    size_bytes: int = 0
    priority: Priority = Priority.NORMAL
    backend_hint: Optional[BackendName] = None
    version: int = 0
    content_class: ContentClass = ContentClass.LATIN
    compress: Optional[bool] = None

    def __post_init__(self):
        if self.expires_at < self.created_at:
            raise ValueError(
                f"Entry '{self.key}' expires before it was created "
                f"({self.expires_at} < {self.created_at})"
            )
        self.tags = frozenset(self.tags)

    def is_expired(self, now: float) -> bool:
        """Check if entry is expired at ``now``."""
        return now >= self.expires_at

    def remaining_ttl(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    @property
    def is_korean(self) -> bool:
        return self.content_class == ContentClass.KOREAN

    def to_dict(self) -> Dict[str, Any]:
        """Backend projection of the entry (JSON compatible)."""
        return {
            "key": self.key,
            "value": self.value,
            "ttl": self.ttl,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "tags": sorted(self.tags),
            "size_bytes": self.size_bytes,
            "priority": self.priority.value,
            "backend_hint": self.backend_hint.value if self.backend_hint else None,
            "version": self.version,
            "content_class": self.content_class.value,
            "compress": self.compress,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        hint = data.get("backend_hint")
        return cls(
            key=data["key"],
            value=data["value"],
            ttl=float(data["ttl"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            tags=frozenset(data.get("tags") or ()),
            size_bytes=int(data.get("size_bytes", 0)),
            priority=Priority(data.get("priority", Priority.NORMAL.value)),
            backend_hint=BackendName(hint) if hint else None,
            version=int(data.get("version", 0)),
            content_class=ContentClass(data.get("content_class", ContentClass.LATIN.value)),
            compress=data.get("compress"),
        )


@dataclass
class KeyState:
    """Latest version and logical expiry the manager issued for a key."""
    version: int
    expires_at: float
    # Invalidated: copies below ``version`` must stay invisible until ``expires_at``
    deleted: bool = False
    # Expiry of the current write; ``expires_at`` may be held later by an older, longer write
    entry_expires_at: Optional[float] = None

    def is_live(self, now: float) -> bool:
        if self.deleted:
            return False
        current = self.entry_expires_at if self.entry_expires_at is not None else self.expires_at
        return now < current


@dataclass
class AccessPattern:
    """Read/write history of a key."""
    access_count: int = 0
    last_accessed_at: float = 0.0
    avg_interval: float = 0.0

    def record(self, now: float) -> None:
        if self.access_count > 0:
            gap = max(0.0, now - self.last_accessed_at)
            # Running mean over the (access_count) gaps seen so far
            self.avg_interval += (gap - self.avg_interval) / self.access_count
        self.access_count += 1
        self.last_accessed_at = now


@dataclass
class BackendStats:
    """Point-in-time statistics reported by a backend adapter."""
    name: str
    entries: int = 0
    bytes_used: int = 0
    bytes_limit: Optional[int] = None
    last_cleanup_at: Optional[float] = None
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def utilization(self) -> Optional[float]:
        if not self.bytes_limit:
            return None
        return self.bytes_used / self.bytes_limit

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["utilization"] = self.utilization
        return data


@dataclass
class BackendMetrics:
    """Per-backend figures for one monitoring window."""
    backend: str
    hits: int = 0
    misses: int = 0
    errors: int = 0
    operations: int = 0
    bytes_transferred: int = 0
    avg_latency_ms: float = 0.0
    availability: float = 1.0
    utilization_rate: Optional[float] = None

    @property
    def hit_rate(self) -> Optional[float]:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = self.hit_rate
        return data


@dataclass
class PerformanceAlert:
    """Threshold alert raised by the monitor."""
    id: str
    key: str
    type: AlertType
    severity: AlertSeverity
    message: str
    value: float
    threshold: float
    first_seen_at: float
    resolved_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None

    def resolve(self, now: float) -> None:
        self.resolved_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
            "first_seen_at": self.first_seen_at,
            "resolved_at": self.resolved_at,
        }


@dataclass
class MonitorEvent:
    """Event delivered to monitor subscribers."""
    type: MonitorEventType
    timestamp: float
    alert: Optional[PerformanceAlert] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MetricsSnapshot:
    """Aggregated cache metrics for one monitoring window."""
    timestamp: float
    window_seconds: float
    requests: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: Optional[float] = None
    avg_latency_ms: Optional[float] = None
    p95_latency_ms: Optional[float] = None
    error_rate: Optional[float] = None
    errors: int = 0
    memory_bytes_used: int = 0
    memory_bytes_limit: Optional[int] = None
    memory_utilization: Optional[float] = None
    process_rss_bytes: Optional[int] = None
    backends: Dict[str, BackendMetrics] = field(default_factory=dict)
    korean_entries: int = 0
    korean_requests: int = 0
    korean_hit_rate: Optional[float] = None
    latin_hit_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["backends"] = {name: metrics.to_dict() for name, metrics in self.backends.items()}
        return data


@dataclass
class TrendAnalysis:
    """Comparison of one metric between two adjacent history windows."""
    metric: str
    previous: float
    current: float
    change_percent: float
    direction: TrendDirection
    previous_samples: int
    current_samples: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        return data


@dataclass
class ContentProfile:
    """What the strategy engine knows about a value."""
    size_bytes: int
    is_korean: bool
    is_mixed_script: bool
    content_type: str

    @property
    def content_class(self) -> ContentClass:
        return ContentClass.KOREAN if self.is_korean else ContentClass.LATIN


@dataclass(frozen=True)
class CacheDecision:
    """TTL and placement chosen for a write."""
    ttl: float
    backend: BackendName
    tier: TTLTier
    reasons: List[str] = field(default_factory=list, compare=False, hash=False)
