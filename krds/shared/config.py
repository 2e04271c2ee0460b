"""
Cache configuration - settings and environment management.

This module provides:
- Environment-based configuration (``KRDS_CACHE_`` prefix, ``__`` nesting)
- Type-safe settings with validation
- Backend priority, size and connection limits
- TTL tiers, strategy thresholds and monitoring thresholds

Settings are built explicitly with ``load_settings`` and handed to the cache
manager; there is no module-level settings instance.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_NAMES = ("memory", "remote", "file")
STRATEGY_NAMES = ("lru", "lfu", "korean-optimized", "adaptive")


class MemorySettings(BaseModel):
    """In-process memory backend limits."""

    max_entries: int = Field(1000, ge=1)
    max_bytes: int = Field(100 * 1024 * 1024, ge=1)
    sweep_interval: float = Field(60.0, gt=0)


class RedisSettings(BaseModel):
    """Remote key-value backend connection settings."""

    host: str = "localhost"
    port: int = 6379
    db: int = Field(0, ge=0)
    username: Optional[str] = None
    password: Optional[str] = None
    key_prefix: str = "krds:cache:"
    max_connections: int = Field(10, ge=1)
    socket_timeout: float = Field(2.0, gt=0)
    compression_enabled: bool = True
    compression_threshold: int = Field(1024, ge=0)
    cluster_nodes: List[str] = Field(default_factory=list)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("cluster_nodes", mode="before")
    @classmethod
    def parse_cluster_nodes(cls, v):
        if isinstance(v, str):
            return [node.strip() for node in v.split(",") if node.strip()]
        return v

    @field_validator("cluster_nodes")
    @classmethod
    def validate_cluster_nodes(cls, v):
        for node in v:
            host, _, port = node.rpartition(":")
            if not host or not port.isdigit():
                raise ValueError(f"Cluster node must look like host:port, got {node!r}")
        return v


class FileSettings(BaseModel):
    """Durable file backend settings."""

    base_dir: Path = Path(".cache/krds")
    max_size_bytes: int = Field(500 * 1024 * 1024, ge=1)
    cleanup_interval: float = Field(300.0, gt=0)
    compression_threshold: int = Field(10 * 1024, ge=0)
    directory_depth: int = Field(2, ge=0, le=8)


class TTLSettings(BaseModel):
    """TTL tiers in seconds."""

    default_ttl: float = Field(3600.0, gt=0)
    large_ttl: float = Field(600.0, gt=0)
    frequent_ttl: float = Field(6 * 3600.0, gt=0)
    korean_boost: float = Field(1.2, ge=1.0, le=2.0)

    @model_validator(mode="after")
    def validate_tiers(self):
        if self.large_ttl > self.default_ttl:
            raise ValueError("large_ttl must not exceed default_ttl")
        if self.frequent_ttl < self.default_ttl * self.korean_boost:
            raise ValueError("frequent_ttl must be the longest tier")
        return self


class StrategySettings(BaseModel):
    """Strategy engine selection and size/frequency thresholds."""

    name: str = "korean-optimized"
    large_threshold_bytes: int = Field(1024 * 1024, ge=1)
    file_threshold_bytes: int = Field(1024 * 1024, ge=1)
    remote_threshold_bytes: int = Field(1024, ge=0)
    frequent_access_threshold: int = Field(10, ge=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip().lower()
        if v not in STRATEGY_NAMES:
            raise ValueError(f"Unknown cache strategy: {v}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self):
        if self.remote_threshold_bytes >= self.file_threshold_bytes:
            raise ValueError("remote_threshold_bytes must be below file_threshold_bytes")
        return self


class MonitoringSettings(BaseModel):
    """Monitor interval and alert thresholds."""

    enabled: bool = True
    metrics_interval: float = Field(30.0, gt=0)
    history_retention: float = Field(24 * 3600.0, gt=0)
    hit_rate_min: float = Field(0.7, ge=0, le=1)
    latency_max_ms: float = Field(1000.0, gt=0)
    error_rate_max: float = Field(0.05, ge=0, le=1)
    memory_utilization_max: float = Field(0.9, gt=0, le=1)
    availability_min: float = Field(0.95, ge=0, le=1)
    alert_hysteresis: float = Field(0.05, ge=0, lt=1)


class CacheSettings(BaseSettings):
    """Main cache settings consumed by the cache manager."""

    backend_priority: List[str] = Field(default_factory=lambda: list(BACKEND_NAMES))
    operation_timeout: float = Field(2.0, gt=0)
    shutdown_timeout: float = Field(5.0, gt=0)
    write_through: bool = False
    retry_attempts: int = Field(2, ge=0, le=10)
    retry_delay: float = Field(0.05, ge=0)

    memory: MemorySettings = Field(default_factory=MemorySettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    file: FileSettings = Field(default_factory=FileSettings)
    ttl: TTLSettings = Field(default_factory=TTLSettings)
    strategy: StrategySettings = Field(default_factory=StrategySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_prefix="KRDS_CACHE_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("backend_priority", mode="before")
    @classmethod
    def parse_backend_priority(cls, v):
        if isinstance(v, str):
            return [backend.strip() for backend in v.split(",") if backend.strip()]
        return v

    @field_validator("backend_priority")
    @classmethod
    def validate_backend_priority(cls, v):
        v = [backend.strip().lower() for backend in v]
        unknown = [backend for backend in v if backend not in BACKEND_NAMES]
        if unknown:
            raise ValueError(f"Unknown cache backends: {unknown}")
        if not v:
            raise ValueError("At least one cache backend is required")
        if len(set(v)) != len(v):
            raise ValueError("Backend priority list contains duplicates")
        return v

    @property
    def primary_backend(self) -> str:
        return self.backend_priority[0]


def load_settings(**overrides: Any) -> CacheSettings:
    """
    Build a fresh settings instance from the environment plus explicit overrides.

    Raises pydantic's ``ValidationError`` on invalid values; the cache manager
    converts that into ``ConfigurationError``.
    """
    return CacheSettings(**overrides)


def get_config_summary(settings: CacheSettings) -> Dict[str, Any]:
    """
    Get a summary of the configuration without sensitive data.

    Returns:
        Dictionary with configuration summary
    """
    return {
        "backend_priority": list(settings.backend_priority),
        "operation_timeout": settings.operation_timeout,
        "write_through": settings.write_through,
        "memory": {
            "max_entries": settings.memory.max_entries,
            "max_bytes": settings.memory.max_bytes,
        },
        "redis": {
            "host": settings.redis.host,
            "port": settings.redis.port,
            "db": settings.redis.db,
            "key_prefix": settings.redis.key_prefix,
            "auth_configured": bool(settings.redis.password),
            "cluster": bool(settings.redis.cluster_nodes),
        },
        "file": {
            "base_dir": str(settings.file.base_dir),
            "max_size_bytes": settings.file.max_size_bytes,
        },
        "ttl": settings.ttl.model_dump(),
        "strategy": settings.strategy.name,
        "monitoring": {
            "enabled": settings.monitoring.enabled,
            "metrics_interval": settings.monitoring.metrics_interval,
        },
    }
