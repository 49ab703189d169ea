"""
In-process cache store for QuizCache.

Provides a bounded key/value store with per-entry TTL, pluggable eviction
strategies, optional compression of large values and an optional disk
spill layer for evicted entries.
"""

import asyncio
import itertools
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..config import CacheSettings, get_cache_settings
from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, get_metrics_collector
from .disk_spill import DiskSpill, SpilledEntry
from .errors import CacheConfigurationError, CacheStoreError
from .patterns import KeyPattern, compile_key_pattern, describe_pattern
from .serialization import Compressor, ValueSerializer, estimate_size, get_compressor

Clock = Callable[[], float]
EvictionListener = Callable[[str, 'CacheEntry'], None]

# Fixed per-entry bookkeeping overhead used in memory estimates
ENTRY_OVERHEAD_BYTES = 200


class _Missing:
    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


class EvictionStrategy(str, Enum):
    """Cache eviction strategy enumeration."""
    LRU = "lru"
    LFU = "lfu"
    FIFO = "fifo"
    TTL = "ttl"


class CacheLayer(str, Enum):
    """Storage layers backing a cache."""
    MEMORY = "memory"
    MEMORY_DISK = "memory_disk"


@dataclass
class CacheConfig:
    """Cache configuration settings."""
    max_size: int = 1000
    ttl: Optional[float] = 3600.0  # 1 hour, None = never expires
    strategy: EvictionStrategy = EvictionStrategy.LRU
    layer: CacheLayer = CacheLayer.MEMORY
    enable_metrics: bool = True

    # Compression and serialization
    compression_enabled: bool = False
    compression_threshold: int = 1024  # bytes
    compressor_name: str = "zlib"
    serialization_format: str = "pickle"

    # Disk layer
    persist_to_disk: bool = False
    disk_path: str = ".cache/quizcache"
    max_spilled_entries: int = 10000

    # Background tasks
    sweep_interval: float = 60.0
    metrics_report_interval: float = 30.0

    warmup_keys: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Optional[CacheSettings] = None, **overrides) -> 'CacheConfig':
        """Build a cache config from environment backed settings."""
        settings = settings or get_cache_settings()
        values = dict(
            max_size=settings.max_size,
            ttl=settings.ttl,
            strategy=EvictionStrategy(settings.strategy),
            layer=CacheLayer(settings.layer),
            enable_metrics=settings.enable_metrics,
            compression_enabled=settings.compression_enabled,
            compression_threshold=settings.compression_threshold,
            serialization_format=settings.serialization_format,
            persist_to_disk=settings.persist_to_disk,
            disk_path=settings.disk_path,
            max_spilled_entries=settings.max_spilled_entries,
            sweep_interval=settings.sweep_interval,
            metrics_report_interval=settings.metrics_report_interval,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    access_count: int = 0
    last_accessed: float = 0.0
    size_bytes: int = 0
    raw_size_bytes: int = 0
    compressed: bool = False
    stale: bool = False
    sequence: int = 0

    def is_expired(self, now: float) -> bool:
        """Check if the cache entry is expired."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def is_live(self, now: float) -> bool:
        return not self.stale and not self.is_expired(now)

    def touch(self, now: float):
        """Update access information."""
        self.access_count += 1
        self.last_accessed = now


class CacheManager:
    """Bounded in-process cache with TTL and pluggable eviction."""

    def __init__(
        self,
        name: str = "default",
        config: Optional[CacheConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Clock] = None,
        compressor: Optional[Compressor] = None
    ):
        self.name = name
        self.config = config or CacheConfig()
        self._validate_config()

        self.strategy = EvictionStrategy(self.config.strategy)
        self.layer = CacheLayer(self.config.layer)
        self.clock = clock or time.time
        self.logger = get_logger(__name__, 'cache_manager').bind(cache_name=name)
        self.metrics = metrics or get_metrics_collector()

        self.serializer = ValueSerializer(self.config.serialization_format)
        if compressor is not None:
            self.compressor = compressor
        elif self.config.compression_enabled:
            self.compressor = get_compressor(self.config.compressor_name)
        else:
            self.compressor = None

        self.disk: Optional[DiskSpill] = None
        if self.layer == CacheLayer.MEMORY_DISK or self.config.persist_to_disk:
            self.disk = DiskSpill(os.path.join(self.config.disk_path, name), self.serializer)

        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._spilled: 'OrderedDict[str, None]' = OrderedDict()
        self._sequence = itertools.count()
        self._eviction_listeners: List[EvictionListener] = []
        self.lock = threading.RLock()

        self.running = False
        self.sweep_task: Optional[asyncio.Task] = None
        self._last_report = 0.0

        self.stats = self._new_stats()

    def _validate_config(self) -> None:
        config = self.config
        if not isinstance(config.max_size, int) or config.max_size < 1:
            raise CacheConfigurationError(f"Cache {self.name}: max_size must be at least 1")
        if config.ttl is not None and config.ttl <= 0:
            raise CacheConfigurationError(f"Cache {self.name}: ttl must be positive")
        if config.sweep_interval <= 0 or config.metrics_report_interval <= 0:
            raise CacheConfigurationError(f"Cache {self.name}: background intervals must be positive")
        if config.max_spilled_entries < 1:
            raise CacheConfigurationError(f"Cache {self.name}: max_spilled_entries must be at least 1")
        try:
            EvictionStrategy(config.strategy)
            CacheLayer(config.layer)
        except ValueError as e:
            raise CacheConfigurationError(f"Cache {self.name}: {e}") from e
        if config.serialization_format not in ("pickle", "json"):
            raise CacheConfigurationError(
                f"Cache {self.name}: unsupported serialization format {config.serialization_format}"
            )

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'evictions': 0,
            'expirations': 0,
            'errors': 0,
            'disk_hits': 0,
            'spills': 0,
            'total_access_time': 0.0,
            'last_eviction': None,
            'total_bytes': 0,
            'raw_bytes': 0
        }

    # Lifecycle

    async def start(self) -> None:
        """Start the background sweep and restore a persisted snapshot."""
        if self.running:
            return

        self.running = True
        if self.config.persist_to_disk:
            restored = self._restore_snapshot()
            if restored:
                self.logger.info(f"Restored {restored} entries into cache {self.name}", operation="start")

        self._last_report = self.clock()
        self.sweep_task = asyncio.create_task(self._sweep_worker())
        self.logger.info(f"Started cache {self.name}", operation="start")

    async def shutdown(self) -> None:
        """Stop background work, persist when configured and drop all entries."""
        self.running = False

        if self.sweep_task:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None

        if self.config.persist_to_disk:
            self._persist_snapshot()

        self.clear(include_disk=not self.config.persist_to_disk)
        self.logger.info(f"Shut down cache {self.name}", operation="shutdown")

    async def _sweep_worker(self) -> None:
        """Background task purging expired entries and reporting gauges."""
        while self.running:
            try:
                await asyncio.sleep(self.config.sweep_interval)
                purged = self.sweep_expired()
                if purged:
                    self.logger.debug(f"Swept {purged} expired entries from {self.name}", operation="sweep")

                now = self.clock()
                if now - self._last_report >= self.config.metrics_report_interval:
                    self._last_report = now
                    self.report_metrics()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in cache sweep for {self.name}: {e}", operation="sweep")

    # Core operations

    def get(self, key: str, default: Any = None) -> Any:
        """Get a live value, or ``default`` on a miss."""
        start_time = time.perf_counter()

        with self.lock:
            now = self.clock()
            entry = self._entries.get(key)

            if entry is not None and not entry.is_live(now):
                self._discard(key, expired=entry.is_expired(now))
                entry = None

            if entry is None:
                value = self._promote_from_disk(key, now)
                if value is MISSING:
                    self._record_access(False, start_time)
                    return default
                self.stats['disk_hits'] += 1
                self._record_access(True, start_time)
                return value

            try:
                value = self._decode(entry)
            except Exception as e:
                self.stats['errors'] += 1
                self.logger.error(f"Corrupt cache entry {key} in {self.name}: {e}", operation="get")
                self._discard(key)
                self._record_access(False, start_time)
                return default

            self._entries.move_to_end(key)
            entry.touch(now)
            self._record_access(True, start_time)
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None,
            metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Store a value; returns False only on internal failure."""
        with self.lock:
            now = self.clock()
            if ttl is None or ttl <= 0:
                ttl = self.config.ttl
            expires_at = now + ttl if ttl is not None else None

            try:
                self._store(key, value, now, expires_at, metadata)
                self.stats['sets'] += 1
                return True
            except Exception as e:
                self.stats['errors'] += 1
                self.logger.error(f"Failed to cache key {key} in {self.name}: {e}", operation="set")
                return False

    def delete(self, key: str) -> bool:
        """Delete a key from memory and the disk layer."""
        with self.lock:
            now = self.clock()
            entry = self._entries.get(key)
            removed = entry is not None and entry.is_live(now)
            if entry is not None:
                self._discard(key)

            if key in self._spilled:
                self._spilled.pop(key, None)
                if self.disk and self.disk.remove(key):
                    removed = True

            if removed:
                self.stats['deletes'] += 1
            return removed

    def has(self, key: str) -> bool:
        """Check for a live value without touching hit statistics."""
        with self.lock:
            entry = self._entries.get(key)
            if entry is not None:
                return entry.is_live(self.clock())
            return key in self._spilled

    def keys(self) -> List[str]:
        """Live keys held in memory, least recently used first."""
        with self.lock:
            now = self.clock()
            return [key for key, entry in self._entries.items() if entry.is_live(now)]

    def clear(self, include_disk: bool = True) -> None:
        """Remove all entries and reset statistics."""
        with self.lock:
            self._entries.clear()
            self._spilled.clear()
            self.stats = self._new_stats()
            if include_disk and self.disk:
                self.disk.clear()

        self.logger.info(f"Cleared cache {self.name}", operation="clear")

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for a key without counting an access."""
        with self.lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_live(self.clock()):
                return entry
            return None

    # Bulk operations

    def get_multiple(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Get every hit among ``keys``."""
        results = {}
        for key in keys:
            value = self.get(key, MISSING)
            if value is not MISSING:
                results[key] = value
        return results

    def set_multiple(self, items: Dict[str, Any], ttl: Optional[float] = None,
                     metadata: Optional[Dict[str, Any]] = None) -> bool:
        success = True
        for key, value in items.items():
            if not self.set(key, value, ttl=ttl, metadata=metadata):
                success = False
        return success

    def match_keys(self, pattern: KeyPattern) -> List[str]:
        """Live keys, in memory or spilled, matching a pattern."""
        matcher = compile_key_pattern(pattern)
        with self.lock:
            matched = [key for key in self.keys() if matcher(key)]
            matched.extend(key for key in sorted(self._spilled) if key not in self._entries and matcher(key))
            return matched

    def invalidate_pattern(self, pattern: KeyPattern) -> int:
        """Delete every live key matching the pattern."""
        matcher = compile_key_pattern(pattern)
        removed = 0

        with self.lock:
            now = self.clock()
            for key, entry in list(self._entries.items()):
                if not matcher(key):
                    continue
                if entry.is_live(now):
                    removed += 1
                self._discard(key, expired=entry.is_expired(now))

            for key in [key for key in self._spilled if matcher(key)]:
                self._spilled.pop(key, None)
                if self.disk and self.disk.remove(key):
                    removed += 1

            self.stats['deletes'] += removed

        if removed:
            self.logger.debug(
                f"Invalidated {removed} keys matching {describe_pattern(pattern)} in {self.name}",
                operation="invalidate_pattern"
            )
        return removed

    def mark_stale(self, pattern: KeyPattern) -> int:
        """Flag matching entries stale so their next read is a miss."""
        matcher = compile_key_pattern(pattern)
        marked = 0

        with self.lock:
            now = self.clock()
            for key, entry in self._entries.items():
                if matcher(key) and entry.is_live(now):
                    entry.stale = True
                    marked += 1

            # Spilled copies cannot be flagged in place
            for key in [key for key in self._spilled if matcher(key)]:
                self._spilled.pop(key, None)
                if self.disk and self.disk.remove(key):
                    marked += 1

        return marked

    def mark_key_stale(self, key: str) -> bool:
        with self.lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_live(self.clock()):
                entry.stale = True
                return True

            if key in self._spilled:
                self._spilled.pop(key, None)
                return bool(self.disk and self.disk.remove(key))
            return False

    def sweep_expired(self) -> int:
        """Purge expired and stale entries, and expired spill files.

        Returns the number of in-memory entries purged.
        """
        with self.lock:
            now = self.clock()
            dead = [(key, entry.is_expired(now)) for key, entry in self._entries.items() if not entry.is_live(now)]
            for key, expired in dead:
                self._discard(key, expired=expired)

            if self.disk is not None and self._spilled:
                for key in self.disk.prune_expired(list(self._spilled), now):
                    self._spilled.pop(key, None)
            return len(dead)

    async def warm_up(self, loader: Callable[[str], Awaitable[Any]],
                      keys: Optional[List[str]] = None) -> int:
        """Load the configured warm-up keys through ``loader``."""
        keys = keys if keys is not None else self.config.warmup_keys
        if not keys:
            return 0

        results = await asyncio.gather(*(loader(key) for key in keys), return_exceptions=True)

        warmed = 0
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                self.logger.warning(f"Warm-up failed for key {key}: {result}", operation="warm_up")
            elif result is not None and self.set(key, result):
                warmed += 1

        self.logger.info(f"Warmed up {warmed}/{len(keys)} keys in {self.name}", operation="warm_up")
        return warmed

    # Eviction listeners

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        self._eviction_listeners.append(listener)

    def remove_eviction_listener(self, listener: EvictionListener) -> bool:
        if listener in self._eviction_listeners:
            self._eviction_listeners.remove(listener)
            return True
        return False

    # Statistics

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            stats = self.stats
            total_requests = stats['hits'] + stats['misses']
            size = len(self._entries)

            return {
                'name': self.name,
                'hits': stats['hits'],
                'misses': stats['misses'],
                'hit_rate': stats['hits'] / total_requests if total_requests > 0 else 0.0,
                'total_requests': total_requests,
                'size': size,
                'max_size': self.config.max_size,
                'sets': stats['sets'],
                'deletes': stats['deletes'],
                'evictions': stats['evictions'],
                'expirations': stats['expirations'],
                'errors': stats['errors'],
                'total_bytes': stats['total_bytes'],
                'memory_usage': stats['total_bytes'] + size * ENTRY_OVERHEAD_BYTES,
                'compression_ratio': (
                    stats['raw_bytes'] / stats['total_bytes'] if stats['total_bytes'] > 0 else 1.0
                ),
                'average_access_time': (
                    stats['total_access_time'] / total_requests if total_requests > 0 else 0.0
                ),
                'last_eviction': stats['last_eviction'],
                'disk_hits': stats['disk_hits'],
                'spills': stats['spills'],
                'spilled_keys': len(self._spilled),
                'strategy': self.strategy.value,
                'layer': self.layer.value
            }

    def get_metrics(self, top: int = 10) -> Dict[str, Any]:
        """Stats plus the most accessed keys and tuning recommendations."""
        stats = self.get_stats()

        with self.lock:
            now = self.clock()
            live = [entry for entry in self._entries.values() if entry.is_live(now)]
        live.sort(key=lambda entry: entry.access_count, reverse=True)

        top_keys = [
            {
                'key': entry.key,
                'access_count': entry.access_count,
                'size_bytes': entry.size_bytes,
                'age': now - entry.created_at
            }
            for entry in live[:top]
        ]

        return {
            'stats': stats,
            'top_keys': top_keys,
            'performance_impact': {
                'requests_served': stats['hits'],
                'estimated_time_saved': stats['hits'] * 0.1,
                'memory_efficiency': (
                    stats['hits'] / (stats['memory_usage'] / 1024) if stats['memory_usage'] > 0 else 0.0
                )
            },
            'recommendations': self._recommendations(stats)
        }

    def _recommendations(self, stats: Dict[str, Any]) -> List[str]:
        recommendations = []
        utilization = stats['size'] / stats['max_size']

        if stats['total_requests'] > 0 and stats['hit_rate'] < 0.7:
            recommendations.append("Low hit rate: consider a longer TTL or warming frequently read keys")
        if stats['evictions'] > 100:
            recommendations.append("High eviction count: consider increasing max_size")
        if utilization > 0.9:
            recommendations.append("Cache is nearly full: consider increasing max_size")
        if stats['average_access_time'] > 0.01:
            recommendations.append("Slow cache access: consider disabling compression for hot keys")

        return recommendations

    def get_size_info(self) -> Dict[str, Any]:
        """Approximate footprint of the cache."""
        with self.lock:
            entry_count = len(self._entries)
            total_bytes = self.stats['total_bytes']

        return {
            'entry_count': entry_count,
            'max_size': self.config.max_size,
            'utilization': entry_count / self.config.max_size,
            'total_bytes': total_bytes,
            'average_entry_size': total_bytes / entry_count if entry_count else 0,
            'estimated_memory_usage': total_bytes + entry_count * ENTRY_OVERHEAD_BYTES,
            'spilled_entries': len(self._spilled)
        }

    def report_metrics(self) -> None:
        """Publish gauges describing the current cache state."""
        if not self.config.enable_metrics:
            return

        try:
            self.metrics.record_cache_snapshot(self.name, self.get_stats())
        except Exception as e:
            self.logger.warning(f"Failed to report metrics for cache {self.name}: {e}", operation="report_metrics")

    # Internals

    def _record_access(self, hit: bool, start_time: float) -> None:
        self.stats['hits' if hit else 'misses'] += 1
        self.stats['total_access_time'] += time.perf_counter() - start_time

        if self.config.enable_metrics:
            try:
                self.metrics.get_counter(
                    'cache.hits' if hit else 'cache.misses', tags={'cache_name': self.name}
                ).increment(1)
            except Exception as e:
                self.logger.debug(f"Failed to record cache access metric: {e}", operation="record_access")

    def _encode(self, value: Any) -> Tuple[Any, bool, int, int]:
        """Returns (stored value, compressed flag, stored size, raw size)."""
        if self.compressor is None:
            size = estimate_size(value)
            return value, False, size, size

        payload = self.serializer.dumps(value)
        if len(payload) < self.config.compression_threshold:
            size = estimate_size(value)
            return value, False, size, size

        compressed = self.compressor.compress(payload)
        return compressed, True, len(compressed), len(payload)

    def _decode(self, entry: CacheEntry) -> Any:
        if not entry.compressed:
            return entry.value
        return self.serializer.loads(self.compressor.decompress(entry.value))

    def _store(self, key: str, value: Any, now: float, expires_at: Optional[float],
               metadata: Optional[Dict[str, Any]], created_at: Optional[float] = None) -> CacheEntry:
        stored, compressed, size, raw_size = self._encode(value)

        existing = self._entries.get(key)
        if existing is not None:
            self._discard(key)
        else:
            self._make_room()

        entry = CacheEntry(
            key=key,
            value=stored,
            created_at=created_at if created_at is not None else now,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
            last_accessed=now,
            size_bytes=size,
            raw_size_bytes=raw_size,
            compressed=compressed,
            sequence=next(self._sequence)
        )
        self._entries[key] = entry
        self.stats['total_bytes'] += size
        self.stats['raw_bytes'] += raw_size

        if key in self._spilled:
            self._spilled.pop(key, None)
            if self.disk:
                self.disk.remove(key)

        return entry

    def _discard(self, key: str, expired: bool = False) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None

        self.stats['total_bytes'] -= entry.size_bytes
        self.stats['raw_bytes'] -= entry.raw_size_bytes
        if expired:
            self.stats['expirations'] += 1
        return entry

    def _make_room(self) -> None:
        if len(self._entries) < self.config.max_size:
            return

        self.sweep_expired()

        while len(self._entries) >= self.config.max_size:
            victim = self._select_victim()
            if victim is None:
                raise CacheStoreError(f"Cache {self.name} is full but has no eviction candidate")
            self._evict(victim)

    def _select_victim(self) -> Optional[str]:
        if not self._entries:
            return None

        if self.strategy == EvictionStrategy.LRU:
            # Entries are kept in access order
            return next(iter(self._entries))
        elif self.strategy == EvictionStrategy.LFU:
            victim = min(
                self._entries.values(),
                key=lambda e: (e.access_count, e.last_accessed, e.created_at, e.sequence)
            )
        elif self.strategy == EvictionStrategy.FIFO:
            victim = min(self._entries.values(), key=lambda e: e.sequence)
        elif self.strategy == EvictionStrategy.TTL:
            victim = min(
                self._entries.values(),
                key=lambda e: (e.expires_at is None, e.expires_at or 0.0, e.sequence)
            )
        else:
            raise CacheStoreError(f"Unhandled eviction strategy: {self.strategy}")

        return victim.key

    def _evict(self, key: str) -> None:
        entry = self._discard(key)
        if entry is None:
            return

        self.stats['evictions'] += 1
        self.stats['last_eviction'] = datetime.now(timezone.utc).isoformat()

        if self.layer == CacheLayer.MEMORY_DISK and self.disk:
            self._spill(entry)

        if self.config.enable_metrics:
            try:
                self.metrics.get_counter('cache.evictions_total', tags={'cache_name': self.name}).increment(1)
            except Exception as e:
                self.logger.debug(f"Failed to record eviction metric: {e}", operation="evict")

        for listener in list(self._eviction_listeners):
            try:
                listener(key, entry)
            except Exception as e:
                self.logger.warning(f"Eviction listener failed for key {key}: {e}", operation="evict")

    def _spill(self, entry: CacheEntry) -> None:
        try:
            value = self._decode(entry)
        except Exception as e:
            self.logger.warning(f"Cannot spill corrupt entry {entry.key}: {e}", operation="spill")
            return

        if self.disk.write(entry.key, value, entry.created_at, entry.expires_at, entry.metadata):
            self._spilled[entry.key] = None
            self.stats['spills'] += 1

        while len(self._spilled) > self.config.max_spilled_entries:
            oldest, _ = self._spilled.popitem(last=False)
            self.disk.remove(oldest)

    def _promote_from_disk(self, key: str, now: float) -> Any:
        if key not in self._spilled or self.disk is None:
            return MISSING

        self._spilled.pop(key, None)
        spilled = self.disk.read(key, now)
        if spilled is None:
            return MISSING

        try:
            value = self.disk.load_value(spilled)
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Unreadable spilled value for key {key}: {e}", operation="promote")
            self.disk.remove(key)
            return MISSING

        self.disk.remove(key)
        entry = self._store(key, value, now, spilled.expires_at, spilled.metadata, created_at=spilled.created_at)
        entry.touch(now)
        return value

    def _persist_snapshot(self) -> None:
        snapshot: List[SpilledEntry] = []
        with self.lock:
            now = self.clock()
            for entry in self._entries.values():
                if not entry.is_live(now):
                    continue
                try:
                    payload = self.serializer.dumps(self._decode(entry))
                except Exception as e:
                    self.logger.warning(f"Skipping unpersistable key {entry.key}: {e}", operation="persist")
                    continue
                snapshot.append(SpilledEntry(
                    key=entry.key,
                    payload=payload,
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                    metadata=dict(entry.metadata)
                ))

        self.disk.write_snapshot(snapshot)

    def _restore_snapshot(self) -> int:
        restored = 0
        with self.lock:
            now = self.clock()
            for spilled in self.disk.read_snapshot(now):
                try:
                    value = self.disk.load_value(spilled)
                    self._store(
                        spilled.key, value, now, spilled.expires_at, spilled.metadata,
                        created_at=spilled.created_at
                    )
                    restored += 1
                except Exception as e:
                    self.logger.warning(f"Skipping unrestorable key {spilled.key}: {e}", operation="restore")
        return restored

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)


class CacheRegistry:
    """Named cache managers, one per logical cache."""

    def __init__(self, metrics: Optional[MetricsCollector] = None, clock: Optional[Clock] = None):
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger(__name__, 'cache_registry')
        self._managers: Dict[str, CacheManager] = {}

    def get_or_create(self, name: str, config: Optional[CacheConfig] = None) -> CacheManager:
        """Return the manager registered under ``name``, creating it on first use."""
        manager = self._managers.get(name)
        if manager is not None:
            if config is not None and config != manager.config:
                self.logger.warning(
                    f"Cache {name} already exists; ignoring new configuration",
                    operation="get_or_create"
                )
            return manager

        manager = CacheManager(name, config, metrics=self.metrics, clock=self.clock)
        self._managers[name] = manager
        self.logger.info(f"Created cache manager: {name}", operation="get_or_create")
        return manager

    def register(self, manager: CacheManager) -> None:
        if manager.name in self._managers and self._managers[manager.name] is not manager:
            raise CacheConfigurationError(f"A cache named {manager.name} is already registered")
        self._managers[manager.name] = manager

    def get(self, name: str) -> Optional[CacheManager]:
        return self._managers.get(name)

    def names(self) -> List[str]:
        return list(self._managers)

    def managers(self) -> Dict[str, CacheManager]:
        return dict(self._managers)

    async def start_all(self) -> None:
        for manager in self._managers.values():
            await manager.start()

    async def remove(self, name: str) -> bool:
        """Shut down and forget a manager."""
        manager = self._managers.pop(name, None)
        if manager is None:
            return False
        await manager.shutdown()
        return True

    async def shutdown_all(self) -> None:
        for name in list(self._managers):
            await self.remove(name)

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: manager.get_stats() for name, manager in self._managers.items()}

    def __contains__(self, name: str) -> bool:
        return name in self._managers

    def __len__(self) -> int:
        return len(self._managers)
