"""
Multi-tier caching system for KRDS content.

This module provides:
- In-memory LRU cache for hot entries
- Redis cache shared between scraper processes
- File cache for large and long-lived payloads
- Content-aware TTL and placement strategies tuned for Korean text
- Performance monitoring with threshold alerts
"""

from .cache_manager import CacheManager

from .backend import CacheBackend
from .memory_cache import LRUCache, MemoryCache
from .redis_cache import RedisCache
from .file_cache import FileCache

from .cache_strategies import (
    AccessTracker,
    CacheStrategyEngine,
    StrategyRecommendation,
    TagIndex,
    resolve_strategy
)

from .cache_monitor import (
    CacheMonitor,
    MonitorSubscription
)

from .exceptions import (
    AllBackendsUnavailableError,
    BackendUnavailableError,
    CacheError,
    CacheWriteError,
    ConfigurationError,
    EntryTooLargeError,
    SerializationError
)

from .models import (
    AccessPattern,
    AlertSeverity,
    AlertType,
    BackendMetrics,
    BackendName,
    BackendStats,
    CacheDecision,
    CacheEntry,
    ContentClass,
    ContentProfile,
    MetricsSnapshot,
    MonitorEvent,
    MonitorEventType,
    PerformanceAlert,
    Priority,
    StrategyName,
    TrendAnalysis,
    TrendDirection,
    TTLTier
)

from .text import normalize_key, contains_korean

__all__ = [
    # Core classes
    'CacheManager',
    'CacheBackend',
    'LRUCache',
    'MemoryCache',
    'RedisCache',
    'FileCache',

    # Strategies
    'CacheStrategyEngine',
    'StrategyRecommendation',
    'AccessTracker',
    'TagIndex',
    'resolve_strategy',

    # Monitoring
    'CacheMonitor',
    'MonitorSubscription',

    # Errors
    'CacheError',
    'BackendUnavailableError',
    'AllBackendsUnavailableError',
    'SerializationError',
    'ConfigurationError',
    'CacheWriteError',
    'EntryTooLargeError',

    # Data model
    'AccessPattern',
    'AlertSeverity',
    'AlertType',
    'BackendMetrics',
    'BackendName',
    'BackendStats',
    'CacheDecision',
    'CacheEntry',
    'ContentClass',
    'ContentProfile',
    'MetricsSnapshot',
    'MonitorEvent',
    'MonitorEventType',
    'PerformanceAlert',
    'Priority',
    'StrategyName',
    'TrendAnalysis',
    'TrendDirection',
    'TTLTier',

    # Utilities
    'normalize_key',
    'contains_korean'
]
