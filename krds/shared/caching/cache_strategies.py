"""
Content-aware caching strategies.

The strategy engine turns a value and its access history into a TTL and a
backend placement. It performs no I/O and never reads the clock: identical
inputs and an identical adaptive weight snapshot give identical decisions.

Also provides the two shared indexes the cache manager maintains per key:
access patterns and the tag reverse index.
"""

import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from ..config import StrategySettings, TTLSettings
from .exceptions import ConfigurationError
from .models import (
    AccessPattern, BackendName, CacheDecision, ContentClass, ContentProfile,
    StrategyName, TTLTier,
)
from .text import contains_korean, estimate_size, is_mixed_script

WEIGHT_MIN = 0.5
WEIGHT_MAX = 1.5

# Relative value of content types, used when scoring strategies
CONTENT_SCORES = {
    'application/krds-document': 1.0,
    'application/krds-content': 0.9,
    'text/html': 0.8,
    'application/json': 0.7,
    'text/plain': 0.6,
}


@dataclass(frozen=True)
class StrategyRules:
    """Which rules a named strategy enables."""
    korean_boost: bool
    frequency_promotion: bool
    korean_remote: bool
    adaptive_weighting: bool = False


STRATEGY_RULES = {
    StrategyName.LRU: StrategyRules(korean_boost=False, frequency_promotion=False, korean_remote=False),
    StrategyName.LFU: StrategyRules(korean_boost=False, frequency_promotion=True, korean_remote=False),
    StrategyName.KOREAN_OPTIMIZED: StrategyRules(korean_boost=True, frequency_promotion=True, korean_remote=True),
    StrategyName.ADAPTIVE: StrategyRules(
        korean_boost=True, frequency_promotion=True, korean_remote=True, adaptive_weighting=True
    ),
}


@dataclass
class StrategyRecommendation:
    """Best-scoring strategy for a value, with the reasoning behind it."""
    strategy: StrategyName
    confidence: float
    scores: Dict[str, float] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)
    optimizations: List[str] = field(default_factory=list)


def resolve_strategy(name: Union[str, StrategyName]) -> StrategyName:
    """Map a strategy name to ``StrategyName``, rejecting unknown names."""
    try:
        return StrategyName(name)
    except ValueError:
        valid = ", ".join(s.value for s in StrategyName)
        raise ConfigurationError(f"Unknown cache strategy '{name}' (expected one of: {valid})")


def detect_content_type(value: Any) -> str:
    if isinstance(value, str):
        return 'text/plain'
    if isinstance(value, dict):
        if isinstance(value.get('images'), list):
            return 'application/krds-document'
        if isinstance(value.get('content'), str):
            return 'application/krds-content'
        return 'application/json'
    if isinstance(value, (list, tuple)):
        return 'application/json'
    return 'application/unknown'


class CacheStrategyEngine:
    """TTL and placement decisions for cache writes."""

    def __init__(self, ttl_settings: Optional[TTLSettings] = None,
                 strategy_settings: Optional[StrategySettings] = None):
        self.ttl_settings = ttl_settings or TTLSettings()
        self.strategy_settings = strategy_settings or StrategySettings()
        self.default_strategy = resolve_strategy(self.strategy_settings.name)

        self._weights: Mapping[ContentClass, float] = MappingProxyType(
            {content_class: 1.0 for content_class in ContentClass}
        )
        self._weights_lock = threading.Lock()

    def analyze(self, value: Any) -> ContentProfile:
        """Profile a value: serialized size, script and content type."""
        return ContentProfile(
            size_bytes=estimate_size(value),
            is_korean=contains_korean(value),
            is_mixed_script=is_mixed_script(value),
            content_type=detect_content_type(value),
        )

    def decide(
        self,
        value: Any,
        pattern: Optional[AccessPattern] = None,
        strategy: Union[str, StrategyName, None] = None,
        weights: Optional[Mapping[ContentClass, float]] = None,
    ) -> CacheDecision:
        """
        Choose TTL tier and backend for a write.

        Args:
            value: The value, or a ``ContentProfile`` already computed for it
            pattern: Access history of the key, if any
            strategy: Strategy name; the configured default when omitted
            weights: Adaptive weight snapshot; the current table when omitted

        Returns:
            CacheDecision with ttl in seconds, target backend and TTL tier
        """
        profile = value if isinstance(value, ContentProfile) else self.analyze(value)
        name = resolve_strategy(strategy) if strategy is not None else self.default_strategy
        rules = STRATEGY_RULES[name]
        ttl_cfg = self.ttl_settings
        cfg = self.strategy_settings
        reasons = [f"strategy={name.value}"]

        tier = TTLTier.DEFAULT
        ttl = ttl_cfg.default_ttl

        if rules.korean_boost and profile.is_korean:
            tier = TTLTier.BOOSTED
            ttl = ttl_cfg.default_ttl * ttl_cfg.korean_boost
            reasons.append(f"korean content boost x{ttl_cfg.korean_boost}")

        if rules.adaptive_weighting:
            table = weights if weights is not None else self._weights
            weight = table.get(profile.content_class, 1.0)
            ttl *= weight
            reasons.append(f"adaptive weight {weight:.2f} for {profile.content_class.value}")

        # Size shortening wins over content boosts
        if profile.size_bytes > cfg.large_threshold_bytes:
            tier = TTLTier.LARGE
            ttl = ttl_cfg.large_ttl
            reasons.append(f"large payload ({profile.size_bytes} bytes)")

        if (rules.frequency_promotion and pattern is not None
                and pattern.access_count >= cfg.frequent_access_threshold):
            tier = TTLTier.FREQUENT
            ttl = ttl_cfg.frequent_ttl
            reasons.append(f"frequent access ({pattern.access_count} accesses)")

        if profile.size_bytes > cfg.file_threshold_bytes:
            backend = BackendName.FILE
        elif (rules.korean_remote and profile.is_korean
              and profile.size_bytes >= cfg.remote_threshold_bytes):
            backend = BackendName.REMOTE
        else:
            backend = BackendName.MEMORY
        reasons.append(f"placement={backend.value}")

        return CacheDecision(ttl=ttl, backend=backend, tier=tier, reasons=reasons)

    def get_weights(self) -> Mapping[ContentClass, float]:
        """Current adaptive weight snapshot (read-only)."""
        return self._weights

    def update_weights(self, hit_rates: Mapping[ContentClass, Optional[float]]) -> Mapping[ContentClass, float]:
        """
        Re-derive adaptive weights from observed hit rates per content class.

        Classes without a hit rate keep their previous weight. The new table
        replaces the old one in a single assignment; readers holding the old
        snapshot are unaffected.
        """
        with self._weights_lock:
            weights = dict(self._weights)
            for content_class, hit_rate in hit_rates.items():
                if hit_rate is None:
                    continue
                weight = WEIGHT_MIN + hit_rate
                weights[ContentClass(content_class)] = min(WEIGHT_MAX, max(WEIGHT_MIN, weight))
            self._weights = MappingProxyType(weights)
            return self._weights

    def recommend(self, value: Any, pattern: Optional[AccessPattern] = None,
                  now: Optional[float] = None) -> StrategyRecommendation:
        """
        Score every strategy for a value and pick the best one.

        Recency only contributes when ``now`` is supplied, so the result is
        deterministic for a given set of arguments.
        """
        profile = value if isinstance(value, ContentProfile) else self.analyze(value)
        priority = self._content_priority(profile)

        lru = self._score_lru(priority, pattern, now)
        lfu = self._score_lfu(priority, pattern)
        korean = self._score_korean(profile)
        ttl = min(1.0, 0.5 + (0.2 if 'krds' in profile.content_type else 0.0) + priority * 0.3)
        scores = {
            StrategyName.LRU.value: lru,
            StrategyName.LFU.value: lfu,
            StrategyName.KOREAN_OPTIMIZED.value: korean,
            StrategyName.ADAPTIVE.value: (lru + lfu + ttl + korean) / 4,
        }

        best = max(scores, key=lambda name: scores[name])
        reasons = []
        if profile.is_korean:
            reasons.append("Korean content detected")
        if profile.size_bytes > self.strategy_settings.large_threshold_bytes:
            reasons.append("Large content size")
        if pattern is not None and pattern.access_count > self.strategy_settings.frequent_access_threshold:
            reasons.append("High access frequency")
        if 'krds' in profile.content_type:
            reasons.append("KRDS-specific content type")

        optimizations = []
        if best == StrategyName.KOREAN_OPTIMIZED.value:
            optimizations.append("Use Korean text normalization")
            optimizations.append("Enable compression for Hangul-heavy payloads")
        if profile.size_bytes > self.strategy_settings.file_threshold_bytes:
            optimizations.append("Consider file cache backend")
            optimizations.append("Enable compression")
        if pattern is not None and pattern.access_count > 1 and pattern.avg_interval < 300:
            optimizations.append("Use memory cache for fast access")

        return StrategyRecommendation(
            strategy=StrategyName(best),
            confidence=scores[best],
            scores=scores,
            reasons=reasons,
            optimizations=optimizations,
        )

    @staticmethod
    def _content_priority(profile: ContentProfile) -> float:
        priority = 0.5
        if profile.is_korean:
            priority += 0.2
        if 'krds' in profile.content_type:
            priority += 0.3
        priority += CONTENT_SCORES.get(profile.content_type, 0.5) * 0.3
        return min(1.0, priority)

    @staticmethod
    def _score_lru(priority: float, pattern: Optional[AccessPattern], now: Optional[float]) -> float:
        score = 0.5
        if pattern is not None and now is not None:
            window = 24 * 3600.0
            recency = max(0.0, 1 - (now - pattern.last_accessed_at) / window)
            score += recency * 0.3
        return min(1.0, score + priority * 0.2)

    @staticmethod
    def _score_lfu(priority: float, pattern: Optional[AccessPattern]) -> float:
        score = 0.4
        if pattern is not None and pattern.access_count > 5:
            score += min(0.4, pattern.access_count / 50)
        return min(1.0, score + priority * 0.2)

    @staticmethod
    def _score_korean(profile: ContentProfile) -> float:
        score = 0.4
        if profile.is_korean:
            score += 0.4
        if 'krds' in profile.content_type:
            score += 0.2
        return min(1.0, score)


class AccessTracker:
    """Thread-safe store of per-key access patterns."""

    def __init__(self):
        self._patterns: Dict[str, AccessPattern] = {}
        self._lock = threading.Lock()

    def record(self, key: str, now: float) -> AccessPattern:
        """Record an access and return a copy of the updated pattern."""
        with self._lock:
            pattern = self._patterns.get(key)
            if pattern is None:
                pattern = self._patterns[key] = AccessPattern()
            pattern.record(now)
            return replace(pattern)

    def get(self, key: str) -> Optional[AccessPattern]:
        with self._lock:
            pattern = self._patterns.get(key)
            return replace(pattern) if pattern is not None else None

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._patterns.pop(key, None) is not None

    def retain(self, keys: Iterable[str]) -> int:
        """Drop patterns for keys not in ``keys``; returns how many were dropped."""
        keep = set(keys)
        with self._lock:
            stale = [key for key in self._patterns if key not in keep]
            for key in stale:
                del self._patterns[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._patterns.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)


class TagIndex:
    """Many-to-many tag membership with a reverse index for invalidation."""

    def __init__(self):
        self._keys_by_tag: Dict[str, Set[str]] = {}
        self._tags_by_key: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def set_tags(self, key: str, tags: Iterable[str]) -> None:
        """Replace the tags of ``key``."""
        new_tags = set(tags)
        with self._lock:
            self._unlink(key)
            if new_tags:
                self._tags_by_key[key] = new_tags
                for tag in new_tags:
                    self._keys_by_tag.setdefault(tag, set()).add(key)

    def remove(self, key: str) -> None:
        with self._lock:
            self._unlink(key)

    def keys_for_tags(self, tags: Iterable[str]) -> Set[str]:
        with self._lock:
            keys: Set[str] = set()
            for tag in tags:
                keys.update(self._keys_by_tag.get(tag, ()))
            return keys

    def tags_for(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._tags_by_key.get(key, ()))

    def clear(self) -> None:
        with self._lock:
            self._keys_by_tag.clear()
            self._tags_by_key.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys_by_tag)

    def _unlink(self, key: str) -> None:
        for tag in self._tags_by_key.pop(key, ()):
            members = self._keys_by_tag.get(tag)
            if members is None:
                continue
            members.discard(key)
            if not members:
                del self._keys_by_tag[tag]
