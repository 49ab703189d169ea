"""
Shared Configuration - Cache Settings and Environment Management
Centralized configuration management for QuizCache.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Cache store, invalidation and warming settings
- Logging and monitoring configuration
"""
from typing import Optional, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CacheSettings(BaseSettings):
    """Cache store configuration settings."""

    max_size: int = 1000
    ttl: Optional[float] = 3600.0  # 1 hour
    strategy: str = "lru"
    layer: str = "memory"
    enable_metrics: bool = True

    # Compression and serialization
    compression_enabled: bool = False
    compression_threshold: int = 1024  # bytes
    serialization_format: str = "pickle"

    # Disk layer
    persist_to_disk: bool = False
    disk_path: str = ".cache/quizcache"
    max_spilled_entries: int = 10000

    # Background tasks
    sweep_interval: float = 60.0
    metrics_report_interval: float = 30.0
    factory_timeout: Optional[float] = None

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v):
        if v < 1:
            raise ValueError("Cache max size must be at least 1")
        return v

    @field_validator("ttl", "factory_timeout")
    @classmethod
    def validate_positive_duration(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Durations must be positive")
        return v

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v):
        v = v.lower()
        if v not in ("lru", "lfu", "fifo", "ttl"):
            raise ValueError(f"Unknown eviction strategy: {v}")
        return v

    @field_validator("layer")
    @classmethod
    def validate_layer(cls, v):
        v = v.lower()
        if v not in ("memory", "memory_disk"):
            raise ValueError(f"Unknown cache layer: {v}")
        return v

    @field_validator("serialization_format")
    @classmethod
    def validate_serialization_format(cls, v):
        if v not in ("pickle", "json"):
            raise ValueError("Serialization format must be 'pickle' or 'json'")
        return v

    model_config = SettingsConfigDict(
        env_prefix="CACHE_", env_file=".env", case_sensitive=False, extra="ignore"
    )


class InvalidationSettings(BaseSettings):
    """Cache invalidation configuration settings."""

    enabled: bool = True
    sweep_interval: float = 30.0
    event_history_size: int = 1000
    event_retention: float = 86400.0  # 24 hours

    model_config = SettingsConfigDict(
        env_prefix="INVALIDATION_", env_file=".env", case_sensitive=False, extra="ignore"
    )


class WarmingSettings(BaseSettings):
    """Cache warming configuration settings."""

    enabled: bool = True
    auto_warm_popular_content: bool = True
    auto_warm_delay: float = 5.0
    auto_warm_limit: int = 100

    # Job execution
    max_concurrent_jobs: int = 3
    job_history_size: int = 1000

    # Access pattern learning
    max_access_history: int = 100
    max_tracked_keys: int = 10000
    pattern_retention: float = 604800.0  # 7 days
    pattern_cleanup_interval: float = 3600.0

    @field_validator("max_concurrent_jobs", "max_access_history", "max_tracked_keys")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_prefix="WARMING_", env_file=".env", case_sensitive=False, extra="ignore"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    enabled: bool = True
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "colored"
    log_file: Optional[str] = None

    # psutil process metrics
    system_metrics_enabled: bool = False
    system_metrics_interval: float = 30.0

    model_config = SettingsConfigDict(
        env_prefix="MONITORING_", env_file=".env", case_sensitive=False, extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""

    # Application settings
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    app_name: str = "QuizCache"
    app_version: str = "1.0.0"

    # Component settings
    cache: CacheSettings = Field(default_factory=CacheSettings)
    invalidation: InvalidationSettings = Field(default_factory=InvalidationSettings)
    warming: WarmingSettings = Field(default_factory=WarmingSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if hasattr(info, 'data') and info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings


def get_cache_settings() -> CacheSettings:
    """Get cache store settings."""
    return settings.cache


def get_invalidation_settings() -> InvalidationSettings:
    """Get invalidation settings."""
    return settings.invalidation


def get_warming_settings() -> WarmingSettings:
    """Get warming settings."""
    return settings.warming


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return settings.monitoring


# Configuration validation
def validate_configuration(current: Optional[Settings] = None) -> List[str]:
    """
    Validate the current configuration and return any errors.

    Returns:
        List of validation error messages
    """
    current = current or settings
    errors = []

    cache = current.cache
    if cache.persist_to_disk and not cache.disk_path:
        errors.append("A disk path is required when persist_to_disk is enabled")

    if cache.layer == "memory_disk" and not cache.disk_path:
        errors.append("A disk path is required for the memory_disk layer")

    if current.warming.auto_warm_popular_content and not current.warming.enabled:
        errors.append("Auto-warming popular content requires warming to be enabled")

    if current.is_production():
        if current.debug:
            errors.append("Debug mode should be disabled in production")

        if current.monitoring.log_format != "json":
            errors.append("JSON log format should be used in production")

    return errors


# Configuration summary for debugging
def get_config_summary(current: Optional[Settings] = None) -> dict:
    """
    Get a summary of the current configuration.

    Returns:
        Dictionary with configuration summary
    """
    current = current or settings
    return {
        "environment": current.environment,
        "debug": current.debug,
        "app_name": current.app_name,
        "app_version": current.app_version,
        "cache": {
            "max_size": current.cache.max_size,
            "ttl": current.cache.ttl,
            "strategy": current.cache.strategy,
            "layer": current.cache.layer,
            "compression_enabled": current.cache.compression_enabled,
            "persist_to_disk": current.cache.persist_to_disk,
        },
        "invalidation": {
            "enabled": current.invalidation.enabled,
            "sweep_interval": current.invalidation.sweep_interval,
        },
        "warming": {
            "enabled": current.warming.enabled,
            "auto_warm_popular_content": current.warming.auto_warm_popular_content,
            "max_concurrent_jobs": current.warming.max_concurrent_jobs,
        },
        "monitoring": {
            "enabled": current.monitoring.enabled,
            "log_level": current.monitoring.log_level,
            "system_metrics_enabled": current.monitoring.system_metrics_enabled,
        },
    }
