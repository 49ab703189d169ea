"""
Cache warming system for QuizCache.

Proactively loads data likely to be requested into cache managers,
through explicit key lists, scheduled rules and access pattern
prediction.
"""

import asyncio
import itertools
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..logging_config import CorrelationContext, get_logger
from ..metrics_collector import MetricsCollector, get_metrics_collector
from .access_tracker import AccessTracker
from .cache_manager import CacheEntry, CacheManager
from .errors import CacheWarmingError, WarmingDisabledError
from .patterns import KeyPattern, compile_key_pattern

DataLoader = Callable[[str], Awaitable[Any]]


class WarmingStrategy(str, Enum):
    """Cache warming strategy enumeration."""
    EAGER = "eager"
    PREDICTIVE = "predictive"
    SCHEDULED = "scheduled"


class WarmingPriority(str, Enum):
    """Warming job priority, highest first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    WarmingPriority.CRITICAL: 0,
    WarmingPriority.HIGH: 1,
    WarmingPriority.MEDIUM: 2,
    WarmingPriority.LOW: 3
}


class RuleRunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class JobStatus(str, Enum):
    """Warming job lifecycle."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = {JobStatus.COMPLETED, JobStatus.PARTIAL, JobStatus.FAILED, JobStatus.CANCELLED}


@dataclass
class WarmingSchedule:
    """When a rule runs on its own."""
    interval: Optional[float] = None  # seconds
    immediate: bool = False


@dataclass
class WarmingRule:
    """Cache warming rule configuration."""
    name: str
    strategy: WarmingStrategy = WarmingStrategy.EAGER
    priority: WarmingPriority = WarmingPriority.MEDIUM
    pattern: Optional[KeyPattern] = None
    data_loader: Optional[DataLoader] = None
    schedule: Optional[WarmingSchedule] = None
    keys: List[str] = field(default_factory=list)
    limit: Optional[int] = None
    ttl: Optional[float] = None
    batch_size: int = 10
    max_concurrency: int = 3
    retry_attempts: int = 2
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number
    loader_timeout: Optional[float] = None
    cache_names: List[str] = field(default_factory=list)
    enabled: bool = True

    # Run state and statistics
    state: RuleRunState = RuleRunState.IDLE
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_executed: Optional[datetime] = None

    def __post_init__(self):
        self.strategy = WarmingStrategy(self.strategy)
        self.priority = WarmingPriority(self.priority)
        if self.batch_size < 1 or self.max_concurrency < 1 or self.retry_attempts < 0:
            raise ValueError(f"Invalid batching or retry settings for warming rule {self.name}")
        self._matcher = compile_key_pattern(self.pattern) if self.pattern is not None else None

    def matches_key(self, key: str) -> bool:
        return self._matcher is not None and self._matcher(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'strategy': self.strategy.value,
            'priority': self.priority.value,
            'enabled': self.enabled,
            'state': self.state.value,
            'interval': self.schedule.interval if self.schedule else None,
            'run_count': self.run_count,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


@dataclass
class WarmingJob:
    """One batch of keys to warm."""
    id: str
    keys: List[str]
    priority: WarmingPriority = WarmingPriority.MEDIUM
    rule_name: Optional[str] = None
    data_loader: Optional[DataLoader] = None
    predictive: bool = False
    status: JobStatus = JobStatus.PENDING
    progress: Dict[str, int] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    def __post_init__(self):
        if not self.progress:
            self.progress = {'total': len(self.keys), 'completed': 0, 'failed': 0, 'skipped': 0}

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'rule_name': self.rule_name,
            'status': self.status.value,
            'priority': self.priority.value,
            'predictive': self.predictive,
            'progress': dict(self.progress),
            'errors': list(self.errors),
            'start_time': self.start_time,
            'end_time': self.end_time,
            'duration': self.duration
        }


class CacheWarmer:
    """Cache warming system for proactive data loading."""

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], float]] = None,
        tracker: Optional[AccessTracker] = None,
        max_concurrent_jobs: int = 3,
        job_history_size: int = 1000,
        pattern_cleanup_interval: float = 3600.0,
        enabled: bool = True
    ):
        self.logger = get_logger(__name__, 'cache_warmer')
        self.metrics = metrics or get_metrics_collector()
        self.clock = clock or time.time
        self.tracker = tracker or AccessTracker(clock=self.clock)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.job_history_size = job_history_size
        self.pattern_cleanup_interval = pattern_cleanup_interval
        self.enabled = enabled

        self.cache_managers: Dict[str, CacheManager] = {}
        self.rules: Dict[str, WarmingRule] = {}
        self.default_rule = WarmingRule(name="default")
        self.jobs: 'OrderedDict[str, WarmingJob]' = OrderedDict()

        self.queue: Optional[asyncio.PriorityQueue] = None
        self._queue_sequence = itertools.count()
        self.workers: List[asyncio.Task] = []
        self.rule_timers: Dict[str, asyncio.Task] = {}
        self.rule_runs: Set[asyncio.Task] = set()
        self.cleanup_task: Optional[asyncio.Task] = None
        self.running = False

        self._predicted_keys: Set[str] = set()
        self.stats = self._new_stats()

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'total_jobs': 0,
            'completed_jobs': 0,
            'partial_jobs': 0,
            'failed_jobs': 0,
            'cancelled_jobs': 0,
            'keys_warmed': 0,
            'keys_failed': 0,
            'total_warming_time': 0.0,
            'timed_jobs': 0,
            'scheduled_warmings': 0,
            'skipped_ticks': 0,
            'predictive_jobs': 0,
            'predictive_warmed': 0,
            'predictive_hits': 0
        }

    # Registration

    def register_cache_manager(self, name: str, manager: CacheManager) -> None:
        """Register a cache manager as a warming target."""
        self.cache_managers[name] = manager
        manager.add_eviction_listener(self._on_eviction)
        self.logger.info(f"Registered cache manager for warming: {name}", operation="register_cache_manager")

    def add_rule(self, rule: WarmingRule) -> None:
        """Register a cache warming rule."""
        self.remove_rule(rule.name)
        self.rules[rule.name] = rule
        self.logger.info(f"Registered cache warming rule: {rule.name}", operation="add_rule")

        if self.running and self.enabled:
            self._schedule_rule(rule)

    def remove_rule(self, rule_name: str) -> bool:
        """Unregister a cache warming rule and stop its timer."""
        rule = self.rules.pop(rule_name, None)
        timer = self.rule_timers.pop(rule_name, None)
        if timer is not None:
            timer.cancel()
        if rule is not None:
            self.logger.info(f"Unregistered cache warming rule: {rule_name}", operation="remove_rule")
            return True
        return False

    def get_rules(self) -> List[WarmingRule]:
        return sorted(self.rules.values(), key=lambda rule: rule.priority.rank)

    # Lifecycle

    async def start(self) -> None:
        """Start job workers, rule timers and pattern cleanup."""
        if self.running:
            self.logger.warning("Cache warmer is already running", operation="start")
            return

        self.running = True
        self._ensure_workers()

        if self.enabled:
            for rule in self.get_rules():
                self._schedule_rule(rule)

        self.cleanup_task = asyncio.create_task(self._cleanup_worker())
        self.logger.info("Cache warmer started", operation="start")

    async def stop(self) -> None:
        """Stop all background work; unfinished jobs are cancelled."""
        self.running = False

        tasks = list(self.rule_timers.values()) + list(self.rule_runs) + list(self.workers)
        if self.cleanup_task:
            tasks.append(self.cleanup_task)

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.rule_timers.clear()
        self.rule_runs.clear()
        self.workers.clear()
        self.cleanup_task = None
        self.queue = None

        for job in self.jobs.values():
            if not job.is_finished:
                self._finish_job(job, JobStatus.CANCELLED)

        for rule in self.rules.values():
            rule.state = RuleRunState.IDLE

        self.logger.info("Cache warmer stopped", operation="stop")

    async def enable_warming(self) -> None:
        self.enabled = True
        if self.running:
            for rule in self.get_rules():
                self._schedule_rule(rule)
        self.logger.info("Cache warming enabled", operation="enable_warming")

    async def disable_warming(self) -> None:
        """Stop rule timers and reject new jobs; warmed entries stay cached."""
        self.enabled = False
        timers = list(self.rule_timers.values())
        self.rule_timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self.logger.info("Cache warming disabled", operation="disable_warming")

    def _ensure_workers(self) -> None:
        if self.queue is None:
            self.queue = asyncio.PriorityQueue()
        self.workers = [worker for worker in self.workers if not worker.done()]
        while len(self.workers) < self.max_concurrent_jobs:
            self.workers.append(asyncio.create_task(self._job_worker(len(self.workers))))

    # Job submission

    async def warm_keys(
        self,
        keys: List[str],
        data_loader: Optional[DataLoader] = None,
        priority: WarmingPriority = WarmingPriority.MEDIUM,
        rule_name: Optional[str] = None,
        predictive: bool = False
    ) -> str:
        """Queue keys for warming and return the job id."""
        if not self.enabled:
            raise WarmingDisabledError("Cache warming is disabled")
        if rule_name is not None and rule_name not in self.rules:
            raise CacheWarmingError(f"Unknown warming rule: {rule_name}")

        job = WarmingJob(
            id=str(uuid.uuid4()),
            keys=list(dict.fromkeys(keys)),
            priority=WarmingPriority(priority),
            rule_name=rule_name,
            data_loader=data_loader,
            predictive=predictive,
            created_at=self.clock()
        )
        self._register_job(job)

        self._ensure_workers()
        await self.queue.put((job.priority.rank, next(self._queue_sequence), job.id))

        self.logger.debug(
            f"Queued warming job {job.id} with {len(job.keys)} keys at {job.priority.value} priority",
            operation="warm_keys"
        )
        return job.id

    async def warm_predictive(self, user_id: str, limit: int = 50,
                              data_loader: Optional[DataLoader] = None) -> str:
        """Warm the keys a user is predicted to read next."""
        keys = self.tracker.predict_user_keys(user_id, limit)
        if not keys:
            self.logger.debug(f"No predictive keys available for user {user_id}", operation="warm_predictive")
            return self._empty_job(WarmingPriority.HIGH, predictive=True)

        self.stats['predictive_jobs'] += 1
        return await self.warm_keys(keys, data_loader, WarmingPriority.HIGH, predictive=True)

    async def warm_popular(self, limit: int = 100, data_loader: Optional[DataLoader] = None) -> str:
        """Warm the most accessed keys."""
        keys = self.tracker.get_popular_keys(limit)
        if not keys:
            self.logger.debug("No popular keys available", operation="warm_popular")
            return self._empty_job(WarmingPriority.MEDIUM)

        return await self.warm_keys(keys, data_loader, WarmingPriority.MEDIUM)

    async def warm_by_time_pattern(self, hour: Optional[int] = None,
                                   data_loader: Optional[DataLoader] = None) -> str:
        """Warm the keys usually read at this hour of day."""
        keys = self.tracker.keys_for_hour(hour)
        if not keys:
            self.logger.debug("No time based keys available", operation="warm_by_time_pattern")
            return self._empty_job(WarmingPriority.LOW)

        return await self.warm_keys(keys, data_loader, WarmingPriority.LOW)

    async def run_rule(self, rule_name: str) -> Optional[str]:
        """Run one warming pass of a rule; skipped while a pass is running."""
        rule = self.rules.get(rule_name)
        if rule is None:
            raise CacheWarmingError(f"Unknown warming rule: {rule_name}")
        if not rule.enabled or not self.enabled:
            return None

        if rule.state == RuleRunState.RUNNING:
            self.stats['skipped_ticks'] += 1
            self.logger.debug(f"Skipping tick of busy warming rule {rule_name}", operation="run_rule")
            return None

        rule.state = RuleRunState.RUNNING
        try:
            keys = self._generate_rule_keys(rule)
            if not keys:
                return None

            job_id = await self.warm_keys(keys, priority=rule.priority, rule_name=rule.name,
                                          predictive=rule.strategy == WarmingStrategy.PREDICTIVE)
            job = await self.wait_for_job(job_id)

            rule.run_count += 1
            rule.last_executed = datetime.now(timezone.utc)
            if job.status in (JobStatus.COMPLETED, JobStatus.PARTIAL):
                rule.success_count += 1
            else:
                rule.failure_count += 1
            return job_id
        finally:
            rule.state = RuleRunState.IDLE

    # Job inspection

    def get_job_status(self, job_id: str) -> Optional[WarmingJob]:
        return self.jobs.get(job_id)

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> WarmingJob:
        """Wait until a job finishes."""
        job = self.jobs.get(job_id)
        if job is None:
            raise CacheWarmingError(f"Unknown warming job: {job_id}")

        if timeout is None:
            await job.done.wait()
        else:
            await asyncio.wait_for(job.done.wait(), timeout)
        return job

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or running job; finished jobs are left alone."""
        job = self.jobs.get(job_id)
        if job is None or job.is_finished:
            return False

        if job.status == JobStatus.PENDING:
            self._finish_job(job, JobStatus.CANCELLED)
        else:
            job.status = JobStatus.CANCELLED

        self.logger.info(f"Cancelled warming job {job_id}", operation="cancel_job")
        return True

    # Access tracking

    def record_access(self, user_id: Optional[str], key: str, hit: bool = True) -> None:
        """Feed a read into the access model."""
        self.tracker.record_access(user_id, key)

        if hit and key in self._predicted_keys:
            self._predicted_keys.discard(key)
            self.stats['predictive_hits'] += 1

    def prune_access_history(self) -> int:
        return self.tracker.prune()

    def get_predictive_insights(self) -> Dict[str, Any]:
        insights = self.tracker.get_insights()
        insights['prediction_accuracy'] = self._predictive_accuracy()
        insights['pending_predictions'] = len(self._predicted_keys)
        return insights

    # Statistics

    def get_stats(self) -> Dict[str, Any]:
        """Get cache warming statistics."""
        stats = self.stats
        return {
            'total_jobs': stats['total_jobs'],
            'completed_jobs': stats['completed_jobs'],
            'partial_jobs': stats['partial_jobs'],
            'failed_jobs': stats['failed_jobs'],
            'cancelled_jobs': stats['cancelled_jobs'],
            'keys_warmed': stats['keys_warmed'],
            'keys_failed': stats['keys_failed'],
            'average_warming_time': (
                stats['total_warming_time'] / stats['timed_jobs'] if stats['timed_jobs'] > 0 else 0.0
            ),
            'scheduled_warmings': stats['scheduled_warmings'],
            'skipped_ticks': stats['skipped_ticks'],
            'predictive_jobs': stats['predictive_jobs'],
            'predictive_accuracy': self._predictive_accuracy(),
            'queued_jobs': self.queue.qsize() if self.queue is not None else 0,
            'running_jobs': sum(1 for job in self.jobs.values() if job.status == JobStatus.RUNNING),
            'active_rules': sum(1 for rule in self.rules.values() if rule.enabled),
            'scheduled_rules': len(self.rule_timers),
            'enabled': self.enabled,
            'running': self.running,
            'rules': {name: rule.to_dict() for name, rule in self.rules.items()}
        }

    def _predictive_accuracy(self) -> float:
        warmed = self.stats['predictive_warmed']
        return self.stats['predictive_hits'] / warmed if warmed > 0 else 0.0

    # Internals

    def _register_job(self, job: WarmingJob) -> None:
        self.jobs[job.id] = job
        self.stats['total_jobs'] += 1

        while len(self.jobs) > self.job_history_size:
            oldest_id = next((job_id for job_id, j in self.jobs.items() if j.is_finished), None)
            if oldest_id is None:
                break
            del self.jobs[oldest_id]

    def _empty_job(self, priority: WarmingPriority, predictive: bool = False) -> str:
        if not self.enabled:
            raise WarmingDisabledError("Cache warming is disabled")

        job = WarmingJob(id=str(uuid.uuid4()), keys=[], priority=priority,
                         predictive=predictive, created_at=self.clock())
        self._register_job(job)
        job.start_time = self.clock()
        self._finish_job(job, JobStatus.COMPLETED)
        return job.id

    def _schedule_rule(self, rule: WarmingRule) -> None:
        if not rule.enabled or rule.schedule is None:
            return

        if rule.schedule.immediate:
            self._spawn_rule_run(rule.name)

        if rule.schedule.interval and rule.name not in self.rule_timers:
            self.rule_timers[rule.name] = asyncio.create_task(self._rule_timer(rule.name, rule.schedule.interval))

    def _spawn_rule_run(self, rule_name: str) -> None:
        task = asyncio.create_task(self._run_rule_safely(rule_name))
        self.rule_runs.add(task)
        task.add_done_callback(self.rule_runs.discard)

    async def _run_rule_safely(self, rule_name: str) -> None:
        try:
            await self.run_rule(rule_name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Scheduled warming failed for rule {rule_name}: {e}", operation="run_rule")

    async def _rule_timer(self, rule_name: str, interval: float) -> None:
        """Background timer triggering a rule every ``interval`` seconds."""
        while self.running and self.enabled:
            try:
                await asyncio.sleep(interval)
                if rule_name not in self.rules:
                    break
                self.stats['scheduled_warmings'] += 1
                self._spawn_rule_run(rule_name)

            except asyncio.CancelledError:
                break

    async def _cleanup_worker(self) -> None:
        """Background task pruning old access patterns."""
        while self.running:
            try:
                await asyncio.sleep(self.pattern_cleanup_interval)
                self.prune_access_history()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error pruning access patterns: {e}", operation="cleanup")

    async def _job_worker(self, worker_id: int) -> None:
        """Background worker executing queued jobs in priority order."""
        while True:
            try:
                _, _, job_id = await self.queue.get()
            except asyncio.CancelledError:
                break

            try:
                job = self.jobs.get(job_id)
                if job is not None and job.status == JobStatus.PENDING:
                    with CorrelationContext(job.id):
                        await self._execute_job(job)
            except asyncio.CancelledError:
                job = self.jobs.get(job_id)
                if job is not None and not job.is_finished:
                    self._finish_job(job, JobStatus.CANCELLED)
                break
            except Exception as e:
                self.logger.error(f"Warming worker {worker_id} failed on job {job_id}: {e}", operation="job_worker")
            finally:
                self.queue.task_done()

    async def _execute_job(self, job: WarmingJob) -> None:
        rule = self.rules.get(job.rule_name) if job.rule_name else None
        settings = rule or self.default_rule
        targets = self._target_managers(rule)

        job.status = JobStatus.RUNNING
        job.start_time = self.clock()
        self.logger.info(f"Starting warming job {job.id} with {len(job.keys)} keys", operation="execute_job")

        if not targets:
            job.errors.append({'key': None, 'error': 'No cache managers registered', 'timestamp': self.clock()})
            job.progress['failed'] = len(job.keys)
            self.stats['keys_failed'] += len(job.keys)
            self._finish_job(job, JobStatus.FAILED)
            return

        try:
            semaphores: Dict[str, asyncio.Semaphore] = {}
            for start in range(0, len(job.keys), settings.batch_size):
                batch = job.keys[start:start + settings.batch_size]
                if job.status == JobStatus.CANCELLED:
                    job.progress['skipped'] += len(batch)
                    continue
                await asyncio.gather(*(
                    self._warm_single_key(job, key, settings, rule, targets, semaphores) for key in batch
                ))
        except Exception as e:
            job.errors.append({'key': None, 'error': str(e), 'timestamp': self.clock()})
            self.logger.error(f"Warming job {job.id} failed: {e}", operation="execute_job")
            self._finish_job(job, JobStatus.FAILED)
            return

        if job.status == JobStatus.CANCELLED:
            final = JobStatus.CANCELLED
        elif job.progress['failed'] == 0:
            final = JobStatus.COMPLETED
        elif job.progress['completed'] > 0:
            final = JobStatus.PARTIAL
        else:
            final = JobStatus.FAILED
        self._finish_job(job, final)

    async def _warm_single_key(self, job: WarmingJob, key: str, settings: WarmingRule,
                               rule: Optional[WarmingRule], targets: List[CacheManager],
                               semaphores: Dict[str, asyncio.Semaphore]) -> None:
        loader, source = self._resolve_loader(job, rule, key)
        settings = source or settings
        if settings.name not in semaphores:
            semaphores[settings.name] = asyncio.Semaphore(settings.max_concurrency)

        async with semaphores[settings.name]:
            if job.status == JobStatus.CANCELLED:
                job.progress['skipped'] += 1
                return

            if loader is None:
                self._record_key_failure(job, key, "No data loader for key")
                return

            last_error: Optional[BaseException] = None
            for attempt in range(1, settings.retry_attempts + 2):
                try:
                    if settings.loader_timeout is not None:
                        value = await asyncio.wait_for(loader(key), settings.loader_timeout)
                    else:
                        value = await loader(key)
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    last_error = e
                    if attempt <= settings.retry_attempts:
                        await asyncio.sleep(settings.retry_delay * attempt)
            else:
                error = last_error if not isinstance(last_error, asyncio.TimeoutError) else "Loader timed out"
                self._record_key_failure(job, key, str(error))
                return

            if value is None:
                job.progress['skipped'] += 1
                return

            metadata = {'warmed': True, 'warming_job': job.id}
            stored = [manager.set(key, value, ttl=settings.ttl, metadata=metadata) for manager in targets]
            if not all(stored):
                self._record_key_failure(job, key, "Cache rejected warmed value")
                return

            job.progress['completed'] += 1
            self.stats['keys_warmed'] += 1
            if job.predictive and key not in self._predicted_keys:
                self._predicted_keys.add(key)
                self.stats['predictive_warmed'] += 1

    def _record_key_failure(self, job: WarmingJob, key: str, error: str) -> None:
        job.progress['failed'] += 1
        job.errors.append({'key': key, 'error': error, 'timestamp': self.clock()})
        self.stats['keys_failed'] += 1
        self.logger.warning(f"Failed to warm key {key} in job {job.id}: {error}", operation="warm_key")

    def _resolve_loader(self, job: WarmingJob, rule: Optional[WarmingRule],
                        key: str) -> Tuple[Optional[DataLoader], Optional[WarmingRule]]:
        """Find the loader for a key and the rule whose settings apply to it."""
        if job.data_loader is not None:
            return job.data_loader, rule
        if rule is not None and rule.data_loader is not None:
            return rule.data_loader, rule
        for candidate in self.get_rules():
            if candidate.enabled and candidate.data_loader is not None and candidate.matches_key(key):
                return candidate.data_loader, candidate
        return None, None

    def _target_managers(self, rule: Optional[WarmingRule]) -> List[CacheManager]:
        if rule is not None and rule.cache_names:
            return [self.cache_managers[name] for name in rule.cache_names if name in self.cache_managers]
        return list(self.cache_managers.values())

    def _generate_rule_keys(self, rule: WarmingRule) -> List[str]:
        keys = list(rule.keys)

        if rule.pattern is not None:
            if rule.strategy == WarmingStrategy.PREDICTIVE:
                candidates = self.tracker.get_popular_keys(rule.limit or 100)
            else:
                candidates = self.tracker.get_popular_keys(self.tracker.max_tracked_keys)
                for manager in self._target_managers(rule):
                    candidates.extend(manager.keys())
            keys.extend(key for key in candidates if rule.matches_key(key))

        keys = list(dict.fromkeys(keys))
        if rule.limit is not None:
            keys = keys[:rule.limit]
        return keys

    def _finish_job(self, job: WarmingJob, status: JobStatus) -> None:
        job.status = status
        job.end_time = self.clock()

        counter_name = {
            JobStatus.COMPLETED: 'completed_jobs',
            JobStatus.PARTIAL: 'partial_jobs',
            JobStatus.FAILED: 'failed_jobs',
            JobStatus.CANCELLED: 'cancelled_jobs'
        }[status]
        self.stats[counter_name] += 1

        if job.duration is not None:
            self.stats['total_warming_time'] += job.duration
            self.stats['timed_jobs'] += 1

        job.done.set()

        self.logger.info(
            f"Warming job {job.id} {status.value}: {job.progress['completed']}/{job.progress['total']} warmed, "
            f"{job.progress['failed']} failed",
            operation="finish_job"
        )

        try:
            self.metrics.get_counter('cache.warming_jobs_total').increment(1, status=status.value)
            if job.duration is not None:
                self.metrics.get_timer('cache.warming_job').record(job.duration, status=status.value)
        except Exception as e:
            self.logger.debug(f"Failed to record warming metrics: {e}", operation="finish_job")

    def _on_eviction(self, key: str, entry: CacheEntry) -> None:
        if key in self._predicted_keys:
            self._predicted_keys.discard(key)
            self.stats['predictive_warmed'] -= 1
