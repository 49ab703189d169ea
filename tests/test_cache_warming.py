"""
Test suite for cache warming.

Covers explicit warming jobs, retries and failures, priority ordering,
scheduled rules, popularity and predictive warming.
"""

import asyncio

import pytest

from quizcache.caching import (
    CacheConfig,
    CacheManager,
    CacheWarmer,
    CacheWarmingError,
    JobStatus,
    RuleRunState,
    WarmingDisabledError,
    WarmingPriority,
    WarmingRule,
    WarmingSchedule,
    WarmingStrategy
)
from quizcache.logging_config import get_correlation_id


@pytest.fixture
def cache(clock, metrics):
    return CacheManager("main", CacheConfig(max_size=100), metrics=metrics, clock=clock)


@pytest.fixture
def warmer(clock, metrics, cache):
    warmer = CacheWarmer(metrics=metrics, clock=clock, max_concurrent_jobs=2)
    warmer.default_rule = WarmingRule(name="default", retry_delay=0.0)
    warmer.register_cache_manager("main", cache)
    return warmer


async def upper_loader(key):
    return key.upper()


async def wait_until(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestWarmKeys:
    """Test explicit key warming."""

    @pytest.mark.asyncio
    async def test_warmed_key_is_hit(self, warmer, cache):
        try:
            job_id = await warmer.warm_keys(["quiz:1"], upper_loader)
            job = await warmer.wait_for_job(job_id, timeout=5)

            assert job.status == JobStatus.COMPLETED
            assert cache.get("quiz:1") == "QUIZ:1"
            assert cache.get_entry("quiz:1").metadata['warming_job'] == job_id
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_loader_runs_under_job_correlation_id(self, warmer):
        seen = []

        async def loader(key):
            seen.append(get_correlation_id())
            return key

        try:
            job_id = await warmer.warm_keys(["a", "b"], loader)
            await warmer.wait_for_job(job_id, timeout=5)

            assert seen == [job_id, job_id]
            assert get_correlation_id() is None
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_duplicate_keys_warmed_once(self, warmer, cache):
        calls = []

        async def loader(key):
            calls.append(key)
            return key

        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["a", "b", "a"], loader), timeout=5)

            assert job.progress['total'] == 2
            assert sorted(calls) == ["a", "b"]
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_loader_retried(self, warmer, cache):
        attempts = {'count': 0}

        async def flaky_loader(key):
            attempts['count'] += 1
            if attempts['count'] == 1:
                raise ConnectionError("database unavailable")
            return "value"

        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["quiz:1"], flaky_loader), timeout=5)

            assert job.status == JobStatus.COMPLETED
            assert attempts['count'] == 2
            assert cache.get("quiz:1") == "value"
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_partial_failure(self, warmer, cache):
        async def loader(key):
            if key == "bad":
                raise ValueError("cannot load")
            return key

        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["good", "bad"], loader), timeout=5)

            assert job.status == JobStatus.PARTIAL
            assert job.progress['completed'] == 1
            assert job.progress['failed'] == 1
            assert job.errors[0]['key'] == "bad"
            assert "cannot load" in job.errors[0]['error']
            assert cache.has("good") is True
            assert warmer.get_stats()['partial_jobs'] == 1
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_all_failures_fail_job(self, warmer):
        async def loader(key):
            raise RuntimeError("down")

        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["a", "b"], loader), timeout=5)

            assert job.status == JobStatus.FAILED
            assert warmer.get_stats()['keys_failed'] == 2
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_none_values_skipped(self, warmer, cache):
        async def loader(key):
            return None

        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["a"], loader), timeout=5)

            assert job.status == JobStatus.COMPLETED
            assert job.progress['skipped'] == 1
            assert cache.has("a") is False
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_missing_loader_fails_key(self, warmer):
        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["a"]), timeout=5)

            assert job.status == JobStatus.FAILED
            assert job.errors[0]['error'] == "No data loader for key"
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_rule_loader_used_for_matching_keys(self, warmer, cache):
        async def quiz_loader(key):
            return {"quiz": key}

        warmer.add_rule(WarmingRule(name="Quizzes", pattern="quiz:*", data_loader=quiz_loader))
        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["quiz:1", "user:1"]), timeout=5)

            assert job.status == JobStatus.PARTIAL
            assert cache.get("quiz:1") == {"quiz": "quiz:1"}
            assert cache.has("user:1") is False
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_matching_rule_settings_apply_to_its_keys(self, warmer, cache, clock):
        attempts = {'count': 0}

        async def flaky_loader(key):
            attempts['count'] += 1
            if attempts['count'] == 1:
                raise ConnectionError("database unavailable")
            return {"quiz": key}

        warmer.default_rule = WarmingRule(name="default", retry_attempts=0, retry_delay=0.0)
        warmer.add_rule(WarmingRule(
            name="Quizzes", pattern="quiz:*", data_loader=flaky_loader,
            retry_attempts=1, retry_delay=0.0, ttl=30.0
        ))
        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["quiz:1"]), timeout=5)

            assert job.status == JobStatus.COMPLETED
            assert attempts['count'] == 2
            assert cache.get_entry("quiz:1").expires_at == clock() + 30.0
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_loader_timeout(self, warmer):
        async def slow_loader(key):
            await asyncio.sleep(5)
            return key

        warmer.add_rule(WarmingRule(name="Slow", keys=["a"], retry_attempts=0, loader_timeout=0.05))
        try:
            job_id = await warmer.warm_keys(["a"], slow_loader, rule_name="Slow")
            job = await warmer.wait_for_job(job_id, timeout=5)

            assert job.status == JobStatus.FAILED
            assert job.errors[0]['error'] == "Loader timed out"
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_no_cache_managers(self, clock, metrics):
        warmer = CacheWarmer(metrics=metrics, clock=clock)
        try:
            job = await warmer.wait_for_job(await warmer.warm_keys(["a"], upper_loader), timeout=5)

            assert job.status == JobStatus.FAILED
            assert job.progress['failed'] == 1
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_higher_priority_jobs_run_first(self, clock, metrics, cache):
        warmer = CacheWarmer(metrics=metrics, clock=clock, max_concurrent_jobs=1)
        warmer.register_cache_manager("main", cache)
        order = []

        async def loader(key):
            order.append(key)
            return key

        try:
            low_id = await warmer.warm_keys(["low"], loader, WarmingPriority.LOW)
            critical_id = await warmer.warm_keys(["critical"], loader, WarmingPriority.CRITICAL)
            await warmer.wait_for_job(low_id, timeout=5)
            await warmer.wait_for_job(critical_id, timeout=5)

            assert order == ["critical", "low"]
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, warmer, cache):
        try:
            job_id = await warmer.warm_keys(["a"], upper_loader)
            assert warmer.cancel_job(job_id) is True

            job = await warmer.wait_for_job(job_id, timeout=5)
            assert job.status == JobStatus.CANCELLED
            assert warmer.cancel_job(job_id) is False
            assert cache.has("a") is False
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_unknown_job_and_rule(self, warmer):
        with pytest.raises(CacheWarmingError):
            await warmer.wait_for_job("missing")
        with pytest.raises(CacheWarmingError):
            await warmer.warm_keys(["a"], rule_name="missing")


class TestWarmingRules:
    """Test rule driven warming."""

    def test_invalid_batching_rejected(self):
        with pytest.raises(ValueError):
            WarmingRule(name="bad", batch_size=0)

    @pytest.mark.asyncio
    async def test_run_rule_warms_pattern_matches(self, warmer, cache):
        warmer.record_access(None, "quiz:1")
        warmer.record_access(None, "user:1")
        warmer.add_rule(WarmingRule(
            name="Quizzes", strategy=WarmingStrategy.SCHEDULED, pattern="quiz:*", data_loader=upper_loader
        ))

        try:
            job_id = await warmer.run_rule("Quizzes")

            assert warmer.get_job_status(job_id).status == JobStatus.COMPLETED
            assert cache.get("quiz:1") == "QUIZ:1"
            assert cache.has("user:1") is False
            rule = warmer.rules["Quizzes"]
            assert rule.run_count == 1
            assert rule.success_count == 1
            assert rule.state == RuleRunState.IDLE
            assert rule.last_executed.utcoffset().total_seconds() == 0
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_rule_without_keys_does_nothing(self, warmer):
        warmer.add_rule(WarmingRule(name="Empty", pattern="quiz:*", data_loader=upper_loader))

        assert await warmer.run_rule("Empty") is None
        assert warmer.get_stats()['total_jobs'] == 0

    @pytest.mark.asyncio
    async def test_busy_rule_skips_tick(self, warmer, cache):
        release = asyncio.Event()

        async def blocking_loader(key):
            await release.wait()
            return key

        warmer.add_rule(WarmingRule(name="Slow", keys=["quiz:1"], data_loader=blocking_loader))

        try:
            first = asyncio.create_task(warmer.run_rule("Slow"))
            assert await wait_until(lambda: warmer.rules["Slow"].state == RuleRunState.RUNNING)

            assert await warmer.run_rule("Slow") is None
            assert warmer.get_stats()['skipped_ticks'] == 1

            release.set()
            assert await asyncio.wait_for(first, timeout=5) is not None
            assert warmer.rules["Slow"].run_count == 1
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_immediate_schedule_runs_on_start(self, warmer, cache):
        warmer.add_rule(WarmingRule(
            name="Startup",
            strategy=WarmingStrategy.SCHEDULED,
            keys=["config:global"],
            data_loader=upper_loader,
            schedule=WarmingSchedule(interval=3600.0, immediate=True)
        ))

        await warmer.start()
        try:
            assert await wait_until(lambda: cache.has("config:global"))
            assert warmer.get_stats()['scheduled_rules'] == 1
        finally:
            await warmer.stop()

        assert warmer.get_stats()['scheduled_rules'] == 0

    @pytest.mark.asyncio
    async def test_disable_and_enable_warming(self, warmer, cache):
        warmer.add_rule(WarmingRule(
            name="Hourly", keys=["a"], data_loader=upper_loader,
            schedule=WarmingSchedule(interval=3600.0)
        ))
        await warmer.start()
        try:
            await warmer.disable_warming()
            assert warmer.get_stats()['scheduled_rules'] == 0

            with pytest.raises(WarmingDisabledError):
                await warmer.warm_keys(["a"], upper_loader)
            with pytest.raises(WarmingDisabledError):
                await warmer.warm_popular()

            await warmer.enable_warming()
            assert warmer.get_stats()['scheduled_rules'] == 1
            job = await warmer.wait_for_job(await warmer.warm_keys(["b"], upper_loader), timeout=5)
            assert job.status == JobStatus.COMPLETED
        finally:
            await warmer.stop()


class TestPopularityWarming:
    """Test warming from observed access patterns."""

    @pytest.mark.asyncio
    async def test_warm_popular_loads_top_keys(self, warmer, cache):
        keys = [f"quiz:{i}" for i in range(20)]
        for i, key in enumerate(keys):
            for _ in range(i + 1):
                warmer.record_access(None, key)

        try:
            job = await warmer.wait_for_job(await warmer.warm_popular(10, upper_loader), timeout=5)

            assert job.status == JobStatus.COMPLETED
            for key in keys[10:]:
                assert cache.get(key) == key.upper()
            for key in keys[:10]:
                assert cache.get(key) is None
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_warm_popular_without_history(self, warmer):
        job = await warmer.wait_for_job(await warmer.warm_popular(10, upper_loader))

        assert job.status == JobStatus.COMPLETED
        assert job.progress['total'] == 0

    @pytest.mark.asyncio
    async def test_warm_by_time_pattern(self, warmer, cache):
        warmer.record_access("u1", "daily:quiz")

        try:
            job = await warmer.wait_for_job(await warmer.warm_by_time_pattern(data_loader=upper_loader), timeout=5)

            assert job.status == JobStatus.COMPLETED
            assert cache.has("daily:quiz") is True
        finally:
            await warmer.stop()


class TestPredictiveWarming:
    """Test predictive warming and its accuracy tracking."""

    @pytest.mark.asyncio
    async def test_predictive_accuracy(self, warmer, cache):
        for key in ("quiz:1", "quiz:1", "quiz:2"):
            warmer.record_access("u1", key)

        try:
            job = await warmer.wait_for_job(await warmer.warm_predictive("u1", 5, upper_loader), timeout=5)

            assert job.predictive is True
            assert job.progress['completed'] == 2
            warmer.record_access("u1", "quiz:1", hit=True)

            stats = warmer.get_stats()
            assert stats['predictive_jobs'] == 1
            assert stats['predictive_accuracy'] == 0.5
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_evicted_predictions_leave_denominator(self, clock, metrics):
        cache = CacheManager("small", CacheConfig(max_size=2), metrics=metrics, clock=clock)
        warmer = CacheWarmer(metrics=metrics, clock=clock)
        warmer.register_cache_manager("small", cache)
        warmer.record_access("u1", "quiz:1")
        warmer.record_access("u1", "quiz:2")

        try:
            await warmer.wait_for_job(await warmer.warm_predictive("u1", 5, upper_loader), timeout=5)
            evicted = cache.keys()[0]
            remaining = cache.keys()[1]
            cache.set("other", 1)

            assert cache.has(evicted) is False
            warmer.record_access("u1", remaining, hit=True)
            assert warmer.get_stats()['predictive_accuracy'] == 1.0
        finally:
            await warmer.stop()

    @pytest.mark.asyncio
    async def test_unknown_user_gets_empty_job(self, warmer):
        job = await warmer.wait_for_job(await warmer.warm_predictive("nobody", data_loader=upper_loader))

        assert job.status == JobStatus.COMPLETED
        assert job.predictive is True
        assert warmer.get_stats()['predictive_jobs'] == 0

    def test_predictive_insights(self, warmer):
        warmer.record_access("u1", "folder:1")
        warmer.record_access("u1", "quiz:1")
        warmer.record_access("u1", "folder:1")
        warmer.record_access("u1", "quiz:2")

        insights = warmer.get_predictive_insights()
        assert insights['tracked_users'] == 1
        assert insights['top_popular_keys'][0] == {'key': "folder:1", 'access_count': 2}
        assert insights['sequential_patterns'] == [{'key': "folder:1", 'next_keys': ["quiz:1", "quiz:2"]}]
        assert insights['prediction_accuracy'] == 0.0
