"""
Unified cache service for QuizCache.

Wires the cache store, invalidation and warming engines behind one
facade that normalises keys, deduplicates concurrent cache-aside loads
and reports every operation as a metric.
"""

import asyncio
import functools
import inspect
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config import Settings, get_settings
from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricType, MetricUnit, get_metrics_collector
from .cache_manager import MISSING, CacheConfig, CacheManager, CacheRegistry
from .cache_warming import CacheWarmer, DataLoader, WarmingJob, WarmingPriority, WarmingRule, WarmingSchedule, WarmingStrategy
from .errors import CacheConfigurationError, InvalidationDisabledError, WarmingDisabledError
from .invalidation import CacheInvalidator, InvalidationRule, InvalidationStrategy
from .access_tracker import AccessTracker
from .patterns import KeyPattern, describe_pattern, normalize_pattern

MAIN_CACHE = "main"
MAX_LOGGED_KEY_LENGTH = 50


def default_invalidation_rules() -> List[InvalidationRule]:
    return [
        InvalidationRule(
            name="User Data Changes",
            pattern=re.compile(r"^user:.*$"),
            strategy=InvalidationStrategy.IMMEDIATE,
            priority=9
        ),
        InvalidationRule(
            name="Test History Updates",
            pattern=re.compile(r"^test_history:.*$"),
            strategy=InvalidationStrategy.IMMEDIATE,
            priority=8
        ),
        InvalidationRule(
            name="Folder Changes",
            pattern="folder:{entity_id}:*",
            strategy=InvalidationStrategy.DEPENDENCY,
            priority=7,
            entity_types=["folder"]
        )
    ]


def default_warming_rules() -> List[WarmingRule]:
    return [
        WarmingRule(
            name="Popular Content",
            strategy=WarmingStrategy.SCHEDULED,
            priority=WarmingPriority.MEDIUM,
            pattern=re.compile(r"^(test_history|user|folder):.*"),
            schedule=WarmingSchedule(interval=3600.0, immediate=False),
            limit=100,
            batch_size=20,
            max_concurrency=2,
            retry_attempts=1,
            retry_delay=2.0
        )
    ]


@dataclass
class CacheServiceConfig:
    """Cache service configuration."""
    cache_config: CacheConfig = field(default_factory=CacheConfig)
    enable_invalidation: bool = True
    enable_warming: bool = True
    enable_monitoring: bool = True
    auto_warm_popular_content: bool = True
    auto_warm_delay: float = 5.0
    auto_warm_limit: int = 100
    factory_timeout: Optional[float] = None
    default_data_loader: Optional[DataLoader] = None

    invalidation_rules: List[InvalidationRule] = field(default_factory=default_invalidation_rules)
    warming_rules: List[WarmingRule] = field(default_factory=default_warming_rules)

    # Invalidation engine
    invalidation_sweep_interval: float = 30.0
    event_history_size: int = 1000
    event_retention: float = 86400.0

    # Warming engine
    max_concurrent_jobs: int = 3
    job_history_size: int = 1000
    max_access_history: int = 100
    max_tracked_keys: int = 10000
    pattern_retention: float = 604800.0
    pattern_cleanup_interval: float = 3600.0

    # Process metrics
    system_metrics_enabled: bool = False
    system_metrics_interval: float = 30.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> 'CacheServiceConfig':
        """Build the service config from environment backed settings."""
        settings = settings or get_settings()
        values = dict(
            cache_config=CacheConfig.from_settings(settings.cache),
            enable_invalidation=settings.invalidation.enabled,
            enable_warming=settings.warming.enabled,
            enable_monitoring=settings.monitoring.enabled,
            auto_warm_popular_content=settings.warming.auto_warm_popular_content,
            auto_warm_delay=settings.warming.auto_warm_delay,
            auto_warm_limit=settings.warming.auto_warm_limit,
            factory_timeout=settings.cache.factory_timeout,
            invalidation_sweep_interval=settings.invalidation.sweep_interval,
            event_history_size=settings.invalidation.event_history_size,
            event_retention=settings.invalidation.event_retention,
            max_concurrent_jobs=settings.warming.max_concurrent_jobs,
            job_history_size=settings.warming.job_history_size,
            max_access_history=settings.warming.max_access_history,
            max_tracked_keys=settings.warming.max_tracked_keys,
            pattern_retention=settings.warming.pattern_retention,
            pattern_cleanup_interval=settings.warming.pattern_cleanup_interval,
            system_metrics_enabled=settings.monitoring.system_metrics_enabled,
            system_metrics_interval=settings.monitoring.system_metrics_interval,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class CacheOperationResult:
    """Outcome of a facade operation."""
    success: bool
    cache_key: str
    data: Any = None
    from_cache: bool = False
    execution_time: float = 0.0
    error: Optional[str] = None
    deduplicated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'data': self.data,
            'from_cache': self.from_cache,
            'cache_key': self.cache_key,
            'execution_time': self.execution_time,
            'error': self.error,
            'deduplicated': self.deduplicated
        }


def normalize_key(key: str) -> str:
    return str(key).strip().lower()


def _truncate_key(key: str) -> str:
    if len(key) > MAX_LOGGED_KEY_LENGTH:
        return key[:MAX_LOGGED_KEY_LENGTH - 3] + "..."
    return key


class CacheService:
    """Facade over the cache store, invalidation and warming engines."""

    def __init__(
        self,
        registry: Optional[CacheRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.logger = get_logger(__name__, 'cache_service')
        self.metrics = metrics or get_metrics_collector()
        self.clock = clock
        self.registry = registry or CacheRegistry(metrics=self.metrics, clock=clock)
        self.config = CacheServiceConfig()

        self.cache_manager: Optional[CacheManager] = None
        self.invalidator: Optional[CacheInvalidator] = None
        self.warmer: Optional[CacheWarmer] = None
        self.is_initialized = False

        self._in_flight: Dict[str, asyncio.Future] = {}
        self._background_tasks: Set[asyncio.Task] = set()

        self.stats = {
            'operations': 0,
            'errors': 0,
            'factory_calls': 0,
            'deduplicated_calls': 0
        }

    # Lifecycle

    async def initialize(self, config: Optional[CacheServiceConfig] = None) -> None:
        """Build and start every enabled component. Repeated calls are no-ops."""
        if self.is_initialized:
            self.logger.info("Cache service already initialized", operation="initialize")
            return

        self.config = config or CacheServiceConfig.from_settings()

        self.cache_manager = self.registry.get_or_create(MAIN_CACHE, self.config.cache_config)
        await self.cache_manager.start()

        if self.config.enable_invalidation:
            self.invalidator = CacheInvalidator(
                metrics=self.metrics,
                clock=self.clock,
                sweep_interval=self.config.invalidation_sweep_interval,
                event_history_size=self.config.event_history_size,
                event_retention=self.config.event_retention
            )
            self.invalidator.register_cache_manager(MAIN_CACHE, self.cache_manager)
            self.cache_manager.add_eviction_listener(self._forget_evicted)
            for rule in self.config.invalidation_rules:
                self.invalidator.add_rule(rule)
            await self.invalidator.start()

        if self.config.enable_warming:
            tracker = AccessTracker(
                max_access_history=self.config.max_access_history,
                max_tracked_keys=self.config.max_tracked_keys,
                pattern_retention=self.config.pattern_retention,
                clock=self.clock
            )
            self.warmer = CacheWarmer(
                metrics=self.metrics,
                clock=self.clock,
                tracker=tracker,
                max_concurrent_jobs=self.config.max_concurrent_jobs,
                job_history_size=self.config.job_history_size,
                pattern_cleanup_interval=self.config.pattern_cleanup_interval
            )
            self.warmer.register_cache_manager(MAIN_CACHE, self.cache_manager)
            self._setup_warming_rules()
            await self.warmer.start()

        if self.config.enable_monitoring and self.config.system_metrics_enabled:
            await self.metrics.start_system_metrics_collection(self.config.system_metrics_interval)

        self.is_initialized = True
        self.logger.info(
            "Cache service initialized successfully",
            operation="initialize",
            invalidation_enabled=self.config.enable_invalidation,
            warming_enabled=self.config.enable_warming
        )
        self._record_metric('cache.service_initialized', 1, MetricType.COUNTER, MetricUnit.COUNT)

        if self.config.auto_warm_popular_content and self.warmer is not None:
            self._spawn(self._auto_warm_popular_content())

    async def shutdown(self) -> None:
        """Stop background work and drop every cache."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()

        if self.warmer is not None:
            await self.warmer.stop()
        if self.invalidator is not None:
            await self.invalidator.stop()
        if self.config.enable_monitoring and self.config.system_metrics_enabled:
            await self.metrics.stop_system_metrics_collection()

        await self.registry.shutdown_all()

        self.cache_manager = None
        self.invalidator = None
        self.warmer = None
        self.is_initialized = False
        self.logger.info("Cache service shutdown completed", operation="shutdown")

    # Core operations

    async def get(self, key: str, user_id: Optional[str] = None) -> CacheOperationResult:
        """Read a key, recording the access for warming."""
        start_time = time.perf_counter()
        cache_key = normalize_key(key)

        try:
            manager = self._require_manager()
            value = manager.get(cache_key, MISSING)
            hit = value is not MISSING

            if self.warmer is not None:
                self.warmer.record_access(user_id, cache_key, hit=hit)

            result = CacheOperationResult(
                success=True,
                cache_key=cache_key,
                data=value if hit else None,
                from_cache=hit,
                execution_time=time.perf_counter() - start_time
            )
            self._record_operation('get', 'hit' if hit else 'miss', result.execution_time, cache_key)
            return result

        except Exception as e:
            return self._error_result('get', cache_key, start_time, e)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        depends_on: Optional[List[str]] = None
    ) -> CacheOperationResult:
        """Store a value and record the keys it was derived from."""
        start_time = time.perf_counter()
        cache_key = normalize_key(key)

        try:
            manager = self._require_manager()
            success = manager.set(cache_key, value, ttl=ttl, metadata=metadata)

            if success and self.invalidator is not None:
                self.invalidator.set_dependencies(cache_key, [normalize_key(k) for k in depends_on or ()])
            elif success and depends_on:
                self.logger.debug(
                    f"Ignoring dependencies of {cache_key}: invalidation is disabled",
                    operation="set"
                )

            result = CacheOperationResult(
                success=success,
                cache_key=cache_key,
                data=success,
                execution_time=time.perf_counter() - start_time,
                error=None if success else "Cache rejected value"
            )
            self._record_operation('set', 'success' if success else 'failure', result.execution_time, cache_key)
            return result

        except Exception as e:
            return self._error_result('set', cache_key, start_time, e, data=False)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        depends_on: Optional[List[str]] = None,
        timeout: Optional[float] = None
    ) -> CacheOperationResult:
        """Cache-aside read.

        On a miss the factory runs once per key no matter how many callers
        are waiting; every waiter receives the same value or the same
        exception. Factory failures, deadline expiry included, propagate to
        the callers and nothing is cached. When the caller running the
        factory is cancelled, the waiters start over and one of them runs
        its own factory.
        """
        start_time = time.perf_counter()
        cache_key = normalize_key(key)

        while True:
            cached_result = await self.get(cache_key, user_id)
            if cached_result.success and cached_result.from_cache:
                cached_result.execution_time = time.perf_counter() - start_time
                return cached_result

            in_flight = self._in_flight.get(cache_key)
            if in_flight is None:
                break

            self.stats['deduplicated_calls'] += 1
            try:
                value = await asyncio.shield(in_flight)
            except asyncio.CancelledError:
                if in_flight.cancelled():
                    continue
                raise

            execution_time = time.perf_counter() - start_time
            self._record_operation('get_or_set', 'deduplicated', execution_time, cache_key)
            return CacheOperationResult(
                success=True,
                cache_key=cache_key,
                data=value,
                execution_time=execution_time,
                deduplicated=True
            )

        future = asyncio.get_running_loop().create_future()
        self._in_flight[cache_key] = future
        try:
            self.stats['factory_calls'] += 1
            deadline = timeout if timeout is not None else self.config.factory_timeout
            factory_start = time.perf_counter()
            try:
                if deadline is not None:
                    value = await asyncio.wait_for(factory(), deadline)
                else:
                    value = await factory()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                future.set_exception(e)
                # Mark retrieved so an unawaited future does not log
                future.exception()
                self.stats['errors'] += 1
                self._record_operation(
                    'get_or_set', 'error', time.perf_counter() - start_time, cache_key, str(e) or type(e).__name__
                )
                raise

            factory_time = time.perf_counter() - factory_start
            entry_metadata = dict(metadata or {})
            entry_metadata['factory_execution_time'] = factory_time
            entry_metadata['generated_at'] = time.time()

            stored = await self.set(cache_key, value, ttl=ttl, metadata=entry_metadata, depends_on=depends_on)
            if not stored.success:
                self.logger.warning(f"Factory result for {cache_key} was not cached", operation="get_or_set")

            future.set_result(value)

            execution_time = time.perf_counter() - start_time
            self._record_operation('get_or_set', 'factory_executed', execution_time, cache_key)
            return CacheOperationResult(
                success=True,
                cache_key=cache_key,
                data=value,
                execution_time=execution_time
            )
        finally:
            if self._in_flight.get(cache_key) is future:
                del self._in_flight[cache_key]

    async def delete(self, key: str) -> CacheOperationResult:
        """Delete a key and cascade to the keys derived from it."""
        start_time = time.perf_counter()
        cache_key = normalize_key(key)

        try:
            manager = self._require_manager()
            success = manager.delete(cache_key)

            if self.invalidator is not None:
                self.invalidator.invalidate_dependencies(cache_key)
                self.invalidator.forget_key(cache_key)

            result = CacheOperationResult(
                success=success,
                cache_key=cache_key,
                data=success,
                execution_time=time.perf_counter() - start_time
            )
            self._record_operation('delete', 'success' if success else 'failure', result.execution_time, cache_key)
            return result

        except Exception as e:
            return self._error_result('delete', cache_key, start_time, e, data=False)

    # Invalidation

    async def invalidate_pattern(self, pattern: KeyPattern, reason: Optional[str] = None,
                                 cache_names: Optional[List[str]] = None) -> int:
        """Invalidate every cached key matching a pattern."""
        invalidator = self._require_invalidator()

        start_time = time.perf_counter()
        count = invalidator.invalidate_pattern(normalize_pattern(pattern), reason=reason, cache_names=cache_names)
        self._record_metric(
            'cache.pattern_invalidation', time.perf_counter() - start_time, MetricType.TIMER, MetricUnit.SECONDS,
            tags={'reason': reason or 'manual'},
            metadata={'pattern': describe_pattern(pattern), 'count': count}
        )
        return count

    async def invalidate_entity(self, event_type: str, entity_type: str, entity_id: Any,
                                metadata: Optional[Dict[str, Any]] = None) -> int:
        """Apply the invalidation rules triggered by an entity change."""
        invalidator = self._require_invalidator()
        return invalidator.invalidate(event_type, entity_type, entity_id, metadata)

    # Warming

    async def warm_cache(self, keys: List[str], priority: WarmingPriority = WarmingPriority.MEDIUM,
                         data_loader: Optional[DataLoader] = None) -> str:
        """Queue keys for warming and return the job id."""
        warmer = self._require_warmer()
        loader = self._resolve_loader(data_loader)
        return await warmer.warm_keys([normalize_key(key) for key in keys], loader, priority)

    async def warm_predictive(self, user_id: str, limit: int = 50,
                              data_loader: Optional[DataLoader] = None) -> str:
        warmer = self._require_warmer()
        return await warmer.warm_predictive(user_id, limit, self._resolve_loader(data_loader))

    async def warm_popular(self, limit: int = 100, data_loader: Optional[DataLoader] = None) -> str:
        warmer = self._require_warmer()
        return await warmer.warm_popular(limit, self._resolve_loader(data_loader))

    async def wait_for_warming(self, job_id: str, timeout: Optional[float] = None) -> WarmingJob:
        self._require_manager()
        if self.warmer is None:
            raise WarmingDisabledError("Cache warming is not enabled")
        return await self.warmer.wait_for_job(job_id, timeout)

    async def enable_cache_warming(self) -> None:
        if self.warmer is None:
            raise WarmingDisabledError("Cache warming was not configured for this service")
        await self.warmer.enable_warming()

    async def disable_cache_warming(self) -> None:
        if self.warmer is not None:
            await self.warmer.disable_warming()

    # Reporting

    def get_cache_stats(self) -> Dict[str, Any]:
        """Aggregate statistics and recommendations of every component."""
        manager = self._require_manager()
        cache_stats = manager.get_stats()
        invalidation_stats = self.invalidator.get_stats() if self.invalidator is not None else None
        warming_stats = self.warmer.get_stats() if self.warmer is not None else None

        recommendations = []
        if cache_stats['hit_rate'] < 0.7:
            recommendations.append("Consider implementing cache warming for frequently accessed data")
        if invalidation_stats and invalidation_stats['failed_invalidations'] > 10:
            recommendations.append("Review invalidation rules - high failure rate detected")
        if (warming_stats and warming_stats['predictive_jobs'] > 0
                and warming_stats['predictive_accuracy'] < 0.6):
            recommendations.append("Improve predictive warming by analyzing user access patterns")

        return {
            'cache_stats': cache_stats,
            'invalidation_stats': invalidation_stats,
            'warming_stats': warming_stats,
            'service_stats': dict(self.stats),
            'caches': self.registry.get_all_stats(),
            'recommendations': recommendations
        }

    async def clear_all(self) -> None:
        """Clear every registered cache."""
        for manager in self.registry.managers().values():
            manager.clear()
        if self.invalidator is not None:
            self.invalidator.clear_dependencies()
        self._record_metric('cache.clear_all', 1, MetricType.COUNTER, MetricUnit.COUNT)

    # Internals

    def _require_manager(self) -> CacheManager:
        if not self.is_initialized or self.cache_manager is None:
            raise CacheConfigurationError("Cache service is not initialized")
        return self.cache_manager

    def _require_invalidator(self) -> CacheInvalidator:
        self._require_manager()
        if not self.config.enable_invalidation or self.invalidator is None:
            raise InvalidationDisabledError("Cache invalidation is not enabled")
        return self.invalidator

    def _require_warmer(self) -> CacheWarmer:
        self._require_manager()
        if not self.config.enable_warming or self.warmer is None or not self.warmer.enabled:
            raise WarmingDisabledError("Cache warming is not enabled")
        return self.warmer

    def _resolve_loader(self, data_loader: Optional[DataLoader]) -> Optional[DataLoader]:
        loader = data_loader or self.config.default_data_loader
        if loader is None and not any(rule.data_loader for rule in self.warmer.rules.values()):
            raise CacheConfigurationError("No data loader available for cache warming")
        return loader

    def _setup_warming_rules(self) -> None:
        for rule in self.config.warming_rules:
            if rule.data_loader is None:
                if self.config.default_data_loader is None:
                    self.logger.info(
                        f"Skipping warming rule {rule.name}: no data loader configured",
                        operation="setup_warming_rules"
                    )
                    continue
                rule.data_loader = self.config.default_data_loader
            self.warmer.add_rule(rule)

    async def _auto_warm_popular_content(self) -> None:
        try:
            await asyncio.sleep(self.config.auto_warm_delay)
            if self.warmer is None or not self.warmer.enabled:
                return

            job_id = await self.warm_popular(self.config.auto_warm_limit)
            self.logger.info(f"Auto-warming started with job ID: {job_id}", operation="auto_warm")
            self._record_metric('cache.auto_warming_started', 1, MetricType.COUNTER, MetricUnit.COUNT)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"Auto-warming failed: {e}", operation="auto_warm")

    def _forget_evicted(self, key: str, entry: Any) -> None:
        # Spilled keys are still cached
        if self.invalidator is not None and self.cache_manager is not None and not self.cache_manager.has(key):
            self.invalidator.drop_dependencies(key)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _error_result(self, operation: str, cache_key: str, start_time: float, error: Exception,
                      data: Any = None) -> CacheOperationResult:
        execution_time = time.perf_counter() - start_time
        message = str(error) or type(error).__name__
        self.stats['errors'] += 1
        self.logger.error(f"Cache {operation} failed for {_truncate_key(cache_key)}: {message}", operation=operation)
        self._record_operation(operation, 'error', execution_time, cache_key, message)
        return CacheOperationResult(
            success=False,
            cache_key=cache_key,
            data=data,
            execution_time=execution_time,
            error=message
        )

    def _record_operation(self, operation: str, result: str, execution_time: float,
                          key: str, error: Optional[str] = None) -> None:
        self.stats['operations'] += 1
        metadata = {'cache_key': _truncate_key(key)}
        if error:
            metadata['error'] = error
        self._record_metric(
            f"cache.operation.{operation}", execution_time, MetricType.TIMER, MetricUnit.SECONDS,
            tags={'result': result}, metadata=metadata
        )

    def _record_metric(self, name: str, value: float, metric_type: MetricType, unit: MetricUnit,
                       tags: Optional[Dict[str, str]] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Fire-and-forget metric recording."""
        if not self.config.enable_monitoring:
            return
        try:
            self.metrics.record_metric(name, value, metric_type, unit, tags=tags, metadata=metadata)
        except Exception as e:
            self.logger.debug(f"Failed to record metric {name}: {e}", operation="record_metric")


def cached(key_prefix: Optional[str] = None, ttl: Optional[float] = None,
           key_func: Optional[Callable] = None, service: Optional[CacheService] = None):
    """Decorator for caching async function results through the cache service."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            cache_service = service or get_cache_service()
            if not cache_service.is_initialized:
                return await func(*args, **kwargs)

            # Generate cache key
            if key_func:
                cache_key = key_func(*args, **kwargs)
            else:
                key_parts = [key_prefix or func.__qualname__]
                if args:
                    key_parts.extend(str(arg) for arg in args)
                if kwargs:
                    key_parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
                cache_key = ":".join(key_parts)

            result = await cache_service.get_or_set(cache_key, lambda: func(*args, **kwargs), ttl=ttl)
            return result.data

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            # Synchronous callables are not cached
            return func(*args, **kwargs)

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator


# Global cache service instance
_cache_service: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get the global cache service instance."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService()
    return _cache_service


async def initialize_cache(config: Optional[CacheServiceConfig] = None) -> CacheService:
    """Initialize the global cache service."""
    cache_service = get_cache_service()
    await cache_service.initialize(config)
    return cache_service


async def shutdown_cache() -> None:
    """Shutdown the global cache service."""
    global _cache_service
    if _cache_service:
        await _cache_service.shutdown()
        _cache_service = None
