"""
Application caching system for QuizCache.

This module provides an in-process caching solution with:
- Bounded cache managers with TTL and LRU/LFU/FIFO/TTL eviction
- Optional compression and a disk spill layer
- Rule, event and dependency driven cache invalidation
- Scheduled, explicit and predictive cache warming
- A unified cache service facade
"""

from .errors import (
    CacheError,
    CacheConfigurationError,
    InvalidationDisabledError,
    WarmingDisabledError,
    CacheStoreError,
    CacheWarmingError
)

from .cache_manager import (
    EvictionStrategy,
    CacheLayer,
    CacheConfig,
    CacheEntry,
    CacheManager,
    CacheRegistry
)

from .dependency_graph import DependencyGraph

from .invalidation import (
    InvalidationStrategy,
    InvalidationEventType,
    RuleCondition,
    InvalidationRule,
    InvalidationEvent,
    CacheInvalidator
)

from .access_tracker import AccessRecord, AccessTracker

from .cache_warming import (
    WarmingStrategy,
    WarmingPriority,
    WarmingSchedule,
    RuleRunState,
    JobStatus,
    WarmingRule,
    WarmingJob,
    CacheWarmer
)

from .cache_service import (
    CacheServiceConfig,
    CacheOperationResult,
    CacheService,
    cached,
    get_cache_service,
    initialize_cache,
    shutdown_cache
)

__all__ = [
    # Errors
    'CacheError',
    'CacheConfigurationError',
    'InvalidationDisabledError',
    'WarmingDisabledError',
    'CacheStoreError',
    'CacheWarmingError',

    # Cache store
    'EvictionStrategy',
    'CacheLayer',
    'CacheConfig',
    'CacheEntry',
    'CacheManager',
    'CacheRegistry',

    # Cache invalidation
    'DependencyGraph',
    'InvalidationStrategy',
    'InvalidationEventType',
    'RuleCondition',
    'InvalidationRule',
    'InvalidationEvent',
    'CacheInvalidator',

    # Cache warming
    'AccessRecord',
    'AccessTracker',
    'WarmingStrategy',
    'WarmingPriority',
    'WarmingSchedule',
    'RuleRunState',
    'JobStatus',
    'WarmingRule',
    'WarmingJob',
    'CacheWarmer',

    # Service facade
    'CacheServiceConfig',
    'CacheOperationResult',
    'CacheService',
    'cached',

    # Lifecycle functions
    'get_cache_service',
    'initialize_cache',
    'shutdown_cache'
]
