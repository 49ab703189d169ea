"""
Cache invalidation system for QuizCache.

Keeps cached data consistent with its sources through pattern based,
event driven and dependency based invalidation across every registered
cache manager.
"""

import asyncio
import re
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, get_metrics_collector
from .cache_manager import CacheManager
from .dependency_graph import DependencyGraph
from .patterns import KeyPattern, compile_key_pattern, describe_pattern, render_pattern


class InvalidationStrategy(str, Enum):
    """Cache invalidation strategy enumeration."""
    IMMEDIATE = "immediate"
    LAZY = "lazy"
    SCHEDULED = "scheduled"
    DEPENDENCY = "dependency"


class InvalidationEventType(str, Enum):
    """Kinds of change that trigger invalidation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPIRE = "expire"
    MANUAL = "manual"


@dataclass
class RuleCondition:
    """Condition evaluated against event metadata."""
    field: str
    operator: str  # =, !=, >, <, contains, regex
    value: Any

    def evaluate(self, data: Dict[str, Any]) -> bool:
        if self.field not in data:
            return False

        actual = data[self.field]
        try:
            if self.operator == '=':
                return actual == self.value
            elif self.operator == '!=':
                return actual != self.value
            elif self.operator == '>':
                return actual > self.value
            elif self.operator == '<':
                return actual < self.value
            elif self.operator == 'contains':
                return str(self.value) in str(actual)
            elif self.operator == 'regex':
                return re.search(str(self.value), str(actual)) is not None
        except TypeError:
            return False
        return False


@dataclass
class InvalidationRule:
    """Cache invalidation rule configuration."""
    name: str
    pattern: KeyPattern
    strategy: InvalidationStrategy = InvalidationStrategy.IMMEDIATE
    priority: int = 5  # higher runs first
    enabled: bool = True
    cache_names: List[str] = field(default_factory=list)
    entity_types: List[str] = field(default_factory=list)
    event_types: List[str] = field(default_factory=list)
    conditions: List[RuleCondition] = field(default_factory=list)
    delay: Optional[float] = None  # seconds, scheduled rules only

    # Statistics
    trigger_count: int = 0
    last_triggered: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        self.strategy = InvalidationStrategy(self.strategy)
        self._matcher = compile_key_pattern(render_pattern(self.pattern))

    def matches_key(self, key: str) -> bool:
        return self._matcher(key)

    def applies_to_cache(self, cache_name: str) -> bool:
        return not self.cache_names or cache_name in self.cache_names

    def applies_to_event(self, event_type: str, entity_type: Optional[str],
                         entity_id: Optional[str], data: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        if self.event_types and event_type not in self.event_types:
            return False

        if self.entity_types:
            if entity_type not in self.entity_types:
                return False
        else:
            entity_key = f"{entity_type}:{entity_id}" if entity_id is not None else f"{entity_type}"
            matcher = compile_key_pattern(self.render(entity_type, entity_id, data))
            if not (matcher(entity_key) or matcher(entity_key + ':')):
                return False

        return all(condition.evaluate(data) for condition in self.conditions)

    def render(self, entity_type: Optional[str], entity_id: Optional[str],
               data: Dict[str, Any]) -> KeyPattern:
        return render_pattern(
            self.pattern,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=data.get('user_id')
        )

    def to_dict(self) -> Dict[str, Any]:
        is_regex = isinstance(self.pattern, re.Pattern)
        return {
            'name': self.name,
            'pattern': self.pattern.pattern if is_regex else self.pattern,
            'pattern_type': 'regex' if is_regex else 'string',
            'strategy': self.strategy.value,
            'priority': self.priority,
            'enabled': self.enabled,
            'cache_names': list(self.cache_names),
            'entity_types': list(self.entity_types),
            'event_types': list(self.event_types),
            'conditions': [
                {'field': c.field, 'operator': c.operator, 'value': c.value} for c in self.conditions
            ],
            'delay': self.delay,
            'trigger_count': self.trigger_count,
            'last_triggered': self.last_triggered.isoformat() if self.last_triggered else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InvalidationRule':
        pattern = data['pattern']
        if data.get('pattern_type') == 'regex':
            pattern = re.compile(pattern)

        return cls(
            name=data['name'],
            pattern=pattern,
            strategy=InvalidationStrategy(data.get('strategy', 'immediate')),
            priority=data.get('priority', 5),
            enabled=data.get('enabled', True),
            cache_names=list(data.get('cache_names', [])),
            entity_types=list(data.get('entity_types', [])),
            event_types=list(data.get('event_types', [])),
            conditions=[RuleCondition(**c) for c in data.get('conditions', [])],
            delay=data.get('delay')
        )


@dataclass
class InvalidationEvent:
    """Record of one invalidation."""
    event_type: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    pattern: Optional[str] = None
    reason: Optional[str] = None
    keys_invalidated: int = 0
    triggered_rules: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'event_type': self.event_type,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'pattern': self.pattern,
            'reason': self.reason,
            'keys_invalidated': self.keys_invalidated,
            'triggered_rules': list(self.triggered_rules),
            'metadata': dict(self.metadata),
            'timestamp': self.timestamp
        }


@dataclass
class ScheduledInvalidation:
    """Invalidation waiting for the sweep."""
    id: str
    pattern: KeyPattern
    due_at: float
    reason: Optional[str] = None
    cache_names: Optional[List[str]] = None


class CacheInvalidator:
    """Cache invalidation system for maintaining data consistency."""

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], float]] = None,
        sweep_interval: float = 30.0,
        event_history_size: int = 1000,
        event_retention: float = 86400.0
    ):
        self.logger = get_logger(__name__, 'cache_invalidator')
        self.metrics = metrics or get_metrics_collector()
        self.clock = clock or time.time
        self.sweep_interval = sweep_interval
        self.event_retention = event_retention

        self.cache_managers: Dict[str, CacheManager] = {}
        self.rules: Dict[str, InvalidationRule] = {}
        self.dependencies = DependencyGraph()
        self.events: Deque[InvalidationEvent] = deque(maxlen=event_history_size)
        self.pending: Dict[str, ScheduledInvalidation] = {}

        self.running = False
        self.worker_task: Optional[asyncio.Task] = None

        self.stats = self._new_stats()

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'total_invalidations': 0,
            'keys_invalidated': 0,
            'invalidations_by_rule': {},
            'invalidations_by_strategy': {strategy.value: 0 for strategy in InvalidationStrategy},
            'invalidations_by_event': {},
            'failed_invalidations': 0,
            'scheduled_invalidations': 0,
            'dependencies_resolved': 0,
            'rules_processed': 0,
            'total_processing_time': 0.0
        }

    # Registration

    def register_cache_manager(self, name: str, manager: CacheManager) -> None:
        """Register a cache manager as an invalidation target."""
        self.cache_managers[name] = manager
        self.logger.info(f"Registered cache manager for invalidation: {name}", operation="register_cache_manager")

    def unregister_cache_manager(self, name: str) -> bool:
        return self.cache_managers.pop(name, None) is not None

    def add_rule(self, rule: InvalidationRule) -> None:
        """Register a cache invalidation rule."""
        self.rules[rule.name] = rule
        self.logger.info(f"Registered cache invalidation rule: {rule.name}", operation="add_rule")

    def remove_rule(self, rule_name: str) -> bool:
        """Unregister a cache invalidation rule."""
        if rule_name in self.rules:
            del self.rules[rule_name]
            self.logger.info(f"Unregistered cache invalidation rule: {rule_name}", operation="remove_rule")
            return True
        return False

    def get_rules(self) -> List[InvalidationRule]:
        """Rules in evaluation order."""
        return sorted(self.rules.values(), key=lambda rule: rule.priority, reverse=True)

    def add_dependency(self, key: str, depends_on: Iterable[str]) -> None:
        """Record that ``key`` must be invalidated when any of ``depends_on`` changes."""
        self.dependencies.add(key, list(depends_on))

    def remove_dependency(self, key: str, depends_on: Iterable[str]) -> None:
        self.dependencies.remove(key, list(depends_on))

    def set_dependencies(self, key: str, depends_on: Iterable[str]) -> None:
        """Replace the recorded dependencies of ``key``."""
        self.dependencies.set_dependencies(key, list(depends_on))

    def drop_dependencies(self, key: str) -> None:
        self.dependencies.drop_dependencies(key)

    def forget_key(self, key: str) -> None:
        """Drop every dependency edge touching ``key``."""
        self.dependencies.discard(key)

    def clear_dependencies(self) -> None:
        self.dependencies.clear()

    # Invalidation

    def invalidate_pattern(self, pattern: KeyPattern, reason: Optional[str] = None,
                           cache_names: Optional[List[str]] = None) -> int:
        """Invalidate keys matching a pattern.

        The highest priority enabled rule matching a key decides how that
        key is handled; keys matched by no rule are removed immediately.
        Returns the number of keys removed or flagged stale.
        """
        start_time = time.perf_counter()
        targets = self._resolve_managers(cache_names)
        rules = [rule for rule in self.get_rules() if rule.enabled]
        invalidated = 0
        triggered: List[str] = []

        for cache_name, manager in targets:
            for key in manager.match_keys(pattern):
                rule = next(
                    (r for r in rules if r.applies_to_cache(cache_name) and r.matches_key(key)),
                    None
                )
                strategy = rule.strategy if rule else InvalidationStrategy.IMMEDIATE
                invalidated += self._apply_strategy(strategy, cache_name, manager, key, rule)

                if rule is not None:
                    self._mark_triggered(rule)
                    if rule.name not in triggered:
                        triggered.append(rule.name)

        self._record_event(
            InvalidationEvent(
                event_type=InvalidationEventType.MANUAL.value,
                pattern=describe_pattern(pattern),
                reason=reason,
                keys_invalidated=invalidated,
                triggered_rules=triggered,
                timestamp=self.clock()
            ),
            start_time
        )

        self.logger.info(
            f"Invalidated {invalidated} keys matching {describe_pattern(pattern)}"
            + (f" ({reason})" if reason else ""),
            operation="invalidate_pattern"
        )
        return invalidated

    def invalidate(self, event_type: str, entity_type: Optional[str] = None,
                   entity_id: Optional[Any] = None, metadata: Optional[Dict[str, Any]] = None) -> int:
        """Apply every rule triggered by a change to an entity."""
        start_time = time.perf_counter()
        event_type = event_type.value if isinstance(event_type, Enum) else str(event_type)
        entity_id = str(entity_id) if entity_id is not None else None
        data = dict(metadata or {})
        context = {**data, 'event_type': event_type, 'entity_type': entity_type, 'entity_id': entity_id}

        matching = [
            rule for rule in self.get_rules()
            if rule.applies_to_event(event_type, entity_type, entity_id, context)
        ]

        invalidated = 0
        for rule in matching:
            try:
                invalidated += self._process_rule(rule, entity_type, entity_id, context)
                self._mark_triggered(rule)
            except Exception as e:
                self.stats['failed_invalidations'] += 1
                self.logger.error(f"Invalidation rule {rule.name} failed: {e}", operation="invalidate")

        self._record_event(
            InvalidationEvent(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                keys_invalidated=invalidated,
                triggered_rules=[rule.name for rule in matching],
                metadata=data,
                timestamp=self.clock()
            ),
            start_time
        )

        if matching:
            self.logger.info(
                f"Event {event_type} on {entity_type}:{entity_id} triggered {len(matching)} rules, "
                f"invalidated {invalidated} keys",
                operation="invalidate"
            )
        return invalidated

    def invalidate_dependencies(self, key: str) -> int:
        """Invalidate every key that transitively depends on ``key``."""
        start_time = time.perf_counter()
        invalidated = self._cascade(key)

        self._record_event(
            InvalidationEvent(
                event_type=InvalidationEventType.UPDATE.value,
                pattern=key,
                reason="dependency cascade",
                keys_invalidated=invalidated,
                timestamp=self.clock()
            ),
            start_time
        )

        return invalidated

    def _cascade(self, key: str) -> int:
        dependents = self.dependencies.cascade(key)
        invalidated = 0

        for dependent in dependents:
            removed = False
            for _, manager in self._resolve_managers(None):
                if manager.delete(dependent):
                    removed = True
            if removed:
                invalidated += 1

        self.stats['dependencies_resolved'] += len(dependents)
        self.stats['invalidations_by_strategy'][InvalidationStrategy.DEPENDENCY.value] += invalidated

        if dependents:
            self.logger.debug(
                f"Dependency cascade from {key} reached {len(dependents)} keys, invalidated {invalidated}",
                operation="invalidate_dependencies"
            )
        return invalidated

    # Scheduling

    def schedule_invalidation(self, delay: float, pattern: KeyPattern, reason: Optional[str] = None,
                              cache_names: Optional[List[str]] = None) -> str:
        """Queue an invalidation to run on the first sweep after ``delay`` seconds."""
        scheduled = ScheduledInvalidation(
            id=str(uuid.uuid4()),
            pattern=pattern,
            due_at=self.clock() + max(delay, 0.0),
            reason=reason,
            cache_names=cache_names
        )
        self.pending[scheduled.id] = scheduled
        self.logger.debug(
            f"Scheduled invalidation of {describe_pattern(pattern)} in {delay}s",
            operation="schedule_invalidation"
        )
        return scheduled.id

    def cancel_scheduled_invalidation(self, scheduled_id: str) -> bool:
        return self.pending.pop(scheduled_id, None) is not None

    def run_scheduled_sweep(self) -> int:
        """Execute every scheduled invalidation that is due."""
        now = self.clock()
        due = sorted(
            (item for item in self.pending.values() if item.due_at <= now),
            key=lambda item: item.due_at
        )
        removed = 0

        for item in due:
            self.pending.pop(item.id, None)
            matcher_removed = 0
            for _, manager in self._resolve_managers(item.cache_names):
                matcher_removed += manager.invalidate_pattern(item.pattern)
            removed += matcher_removed
            self.stats['scheduled_invalidations'] += 1
            self.stats['keys_invalidated'] += matcher_removed

        if due:
            self.logger.info(
                f"Ran {len(due)} scheduled invalidations, removed {removed} keys",
                operation="run_scheduled_sweep"
            )
        return removed

    # Worker

    async def start(self) -> None:
        """Start the scheduled invalidation sweep."""
        if self.running:
            return

        self.running = True
        self.worker_task = asyncio.create_task(self._sweep_worker())
        self.logger.info("Started cache invalidation sweep", operation="start")

    async def stop(self) -> None:
        """Stop the scheduled invalidation sweep."""
        self.running = False

        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass
            self.worker_task = None

        self.logger.info("Stopped cache invalidation sweep", operation="stop")

    async def _sweep_worker(self) -> None:
        """Background task running scheduled invalidations."""
        while self.running:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.run_scheduled_sweep()
                self.prune_events()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in invalidation sweep: {e}", operation="sweep")

    # Reporting

    def prune_events(self) -> int:
        """Drop history entries older than the retention window."""
        cutoff = self.clock() - self.event_retention
        pruned = 0
        while self.events and self.events[0].timestamp < cutoff:
            self.events.popleft()
            pruned += 1
        return pruned

    def get_recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events first."""
        return [event.to_dict() for event in list(self.events)[-limit:][::-1]]

    def get_dependency_info(self) -> Dict[str, Any]:
        return {
            'total_keys': len(self.dependencies),
            'total_edges': self.dependencies.edge_count(),
            'graph': self.dependencies.to_dict(),
            'circular_dependencies': self.dependencies.find_cycles()
        }

    def export_rules(self) -> List[Dict[str, Any]]:
        return [rule.to_dict() for rule in self.get_rules()]

    def import_rules(self, rules: List[Dict[str, Any]]) -> int:
        imported = 0
        for data in rules:
            try:
                self.add_rule(InvalidationRule.from_dict(data))
                imported += 1
            except (KeyError, TypeError, ValueError, re.error) as e:
                self.logger.warning(f"Skipping invalid invalidation rule: {e}", operation="import_rules")
        return imported

    def get_stats(self) -> Dict[str, Any]:
        """Get invalidation statistics."""
        total = self.stats['total_invalidations']
        return {
            'total_invalidations': total,
            'keys_invalidated': self.stats['keys_invalidated'],
            'invalidations_by_rule': dict(self.stats['invalidations_by_rule']),
            'invalidations_by_strategy': dict(self.stats['invalidations_by_strategy']),
            'invalidations_by_event': dict(self.stats['invalidations_by_event']),
            'failed_invalidations': self.stats['failed_invalidations'],
            'scheduled_invalidations': self.stats['scheduled_invalidations'],
            'pending_scheduled': len(self.pending),
            'dependencies_resolved': self.stats['dependencies_resolved'],
            'average_invalidation_time': (
                self.stats['total_processing_time'] / total if total > 0 else 0.0
            ),
            'rules_processed': self.stats['rules_processed'],
            'registered_rules': len(self.rules),
            'registered_caches': list(self.cache_managers)
        }

    def reset_stats(self) -> None:
        self.stats = self._new_stats()

    # Internals

    def _resolve_managers(self, cache_names: Optional[List[str]]) -> List[Tuple[str, CacheManager]]:
        if not cache_names:
            return list(self.cache_managers.items())

        targets = []
        for name in cache_names:
            manager = self.cache_managers.get(name)
            if manager is None:
                self.stats['failed_invalidations'] += 1
                self.logger.warning(f"Unknown cache manager for invalidation: {name}", operation="invalidate")
                continue
            targets.append((name, manager))
        return targets

    def _apply_strategy(self, strategy: InvalidationStrategy, cache_name: str, manager: CacheManager,
                        key: str, rule: Optional[InvalidationRule]) -> int:
        if strategy == InvalidationStrategy.IMMEDIATE:
            count = 1 if manager.delete(key) else 0
        elif strategy == InvalidationStrategy.LAZY:
            count = 1 if manager.mark_key_stale(key) else 0
        elif strategy == InvalidationStrategy.SCHEDULED:
            delay = rule.delay if rule is not None and rule.delay is not None else 0.0
            self.schedule_invalidation(
                delay, re.compile('^' + re.escape(key) + '$'),
                reason=f"Scheduled rule: {rule.name}" if rule else None,
                cache_names=[cache_name]
            )
            count = 0
        else:
            count = 0

        self.stats['invalidations_by_strategy'][strategy.value] += count
        if rule is not None and count:
            by_rule = self.stats['invalidations_by_rule']
            by_rule[rule.name] = by_rule.get(rule.name, 0) + count
        return count

    def _process_rule(self, rule: InvalidationRule, entity_type: Optional[str],
                      entity_id: Optional[str], context: Dict[str, Any]) -> int:
        pattern = rule.render(entity_type, entity_id, context)
        targets = self._resolve_managers(rule.cache_names or None)

        if rule.strategy == InvalidationStrategy.SCHEDULED:
            self.schedule_invalidation(
                rule.delay or 0.0, pattern,
                reason=f"Scheduled rule: {rule.name}",
                cache_names=[name for name, _ in targets]
            )
            return 0

        if rule.strategy == InvalidationStrategy.DEPENDENCY:
            roots = [f"{entity_type}:{entity_id}"]
            for _, manager in targets:
                roots.extend(key for key in manager.match_keys(pattern) if key not in roots)
            return sum(self._cascade(root) for root in roots)

        invalidated = 0
        for cache_name, manager in targets:
            for key in manager.match_keys(pattern):
                invalidated += self._apply_strategy(rule.strategy, cache_name, manager, key, rule)
        return invalidated

    def _mark_triggered(self, rule: InvalidationRule) -> None:
        rule.trigger_count += 1
        rule.last_triggered = datetime.now(timezone.utc)
        self.stats['rules_processed'] += 1

    def _record_event(self, event: InvalidationEvent, start_time: float) -> None:
        duration = time.perf_counter() - start_time
        self.events.append(event)

        self.stats['total_invalidations'] += 1
        self.stats['keys_invalidated'] += event.keys_invalidated
        self.stats['total_processing_time'] += duration
        by_event = self.stats['invalidations_by_event']
        by_event[event.event_type] = by_event.get(event.event_type, 0) + 1

        try:
            self.metrics.get_counter('cache.invalidations_total').increment(
                1, event_type=event.event_type
            )
            self.metrics.get_histogram('cache.invalidation_keys').observe(event.keys_invalidated)
        except Exception as e:
            self.logger.debug(f"Failed to record invalidation metrics: {e}", operation="record_event")
