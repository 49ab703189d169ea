"""
Test suite for cache invalidation.

Covers pattern invalidation across managers, rule strategies, event
driven rules, dependency cascades and scheduled invalidations.
"""

import re

import pytest

from quizcache.caching import (
    CacheConfig,
    CacheInvalidator,
    CacheManager,
    InvalidationEventType,
    InvalidationRule,
    InvalidationStrategy,
    RuleCondition
)


@pytest.fixture
def main_cache(clock, metrics):
    return CacheManager("main", CacheConfig(max_size=100), metrics=metrics, clock=clock)


@pytest.fixture
def session_cache(clock, metrics):
    return CacheManager("sessions", CacheConfig(max_size=100), metrics=metrics, clock=clock)


@pytest.fixture
def invalidator(clock, metrics, main_cache, session_cache):
    invalidator = CacheInvalidator(metrics=metrics, clock=clock)
    invalidator.register_cache_manager("main", main_cache)
    invalidator.register_cache_manager("sessions", session_cache)
    return invalidator


class TestPatternInvalidation:
    """Test invalidate_pattern across registered managers."""

    def test_removes_all_and_only_matching_keys(self, invalidator, main_cache, session_cache):
        for key in ("user:1", "user:2", "quiz:1", "xuser:9"):
            main_cache.set(key, key)
        session_cache.set("user:3", "user:3")

        removed = invalidator.invalidate_pattern(re.compile(r"^user:.*"))

        assert removed == 3
        assert main_cache.keys() == ["quiz:1", "xuser:9"]
        assert session_cache.keys() == []

    def test_session_rule_removes_key(self, invalidator, session_cache):
        rule = InvalidationRule(
            name="Session Changes",
            pattern=re.compile(r"^session:.*"),
            strategy=InvalidationStrategy.IMMEDIATE
        )
        invalidator.add_rule(rule)
        session_cache.set("session:123", {"token": "x"})

        assert invalidator.invalidate_pattern(re.compile(r"^session:.*")) == 1
        assert session_cache.get("session:123") is None
        assert rule.trigger_count == 1

    def test_restricted_to_named_caches(self, invalidator, main_cache, session_cache):
        main_cache.set("user:1", 1)
        session_cache.set("user:1", 1)

        assert invalidator.invalidate_pattern("user:*", cache_names=["main"]) == 1
        assert session_cache.has("user:1") is True

    def test_unknown_cache_counts_as_failure(self, invalidator, main_cache):
        main_cache.set("user:1", 1)

        assert invalidator.invalidate_pattern("user:*", cache_names=["missing"]) == 0
        assert invalidator.get_stats()['failed_invalidations'] == 1
        assert main_cache.has("user:1") is True

    def test_no_matches_returns_zero(self, invalidator, main_cache):
        main_cache.set("quiz:1", 1)
        assert invalidator.invalidate_pattern("user:*") == 0

    def test_lazy_rule_marks_stale(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Folder Listings", pattern="folder:*", strategy=InvalidationStrategy.LAZY
        ))
        main_cache.set("folder:1:list", [1, 2])

        assert invalidator.invalidate_pattern("folder:*") == 1
        assert main_cache.has("folder:1:list") is False
        assert main_cache.get("folder:1:list") is None
        assert invalidator.get_stats()['invalidations_by_strategy']['lazy'] == 1

    def test_scheduled_rule_defers_removal(self, invalidator, main_cache, clock):
        invalidator.add_rule(InvalidationRule(
            name="Reports", pattern="report:*", strategy=InvalidationStrategy.SCHEDULED, delay=60.0
        ))
        main_cache.set("report:2024", {"total": 3})

        assert invalidator.invalidate_pattern("report:*") == 0
        assert main_cache.has("report:2024") is True
        assert invalidator.get_stats()['pending_scheduled'] == 1

        clock.advance(30.0)
        assert invalidator.run_scheduled_sweep() == 0

        clock.advance(30.0)
        assert invalidator.run_scheduled_sweep() == 1
        assert main_cache.has("report:2024") is False

    def test_highest_priority_rule_decides(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Low", pattern="quiz:*", strategy=InvalidationStrategy.IMMEDIATE, priority=1
        ))
        invalidator.add_rule(InvalidationRule(
            name="High", pattern="quiz:*", strategy=InvalidationStrategy.LAZY, priority=9
        ))
        main_cache.set("quiz:1", 1)

        invalidator.invalidate_pattern("quiz:*")

        stats = invalidator.get_stats()
        assert stats['invalidations_by_strategy']['lazy'] == 1
        assert stats['invalidations_by_strategy']['immediate'] == 0
        assert stats['invalidations_by_rule'] == {"High": 1}

    def test_disabled_rule_ignored(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Off", pattern="quiz:*", strategy=InvalidationStrategy.SCHEDULED, enabled=False
        ))
        main_cache.set("quiz:1", 1)

        assert invalidator.invalidate_pattern("quiz:*") == 1
        assert invalidator.get_stats()['pending_scheduled'] == 0


class TestDependencyInvalidation:
    """Test dependency cascades."""

    def test_cascade_with_cycle_terminates(self, invalidator, main_cache):
        invalidator.add_dependency("b", ["a"])
        invalidator.add_dependency("c", ["b"])
        invalidator.add_dependency("a", ["c"])
        for key in ("a", "b", "c"):
            main_cache.set(key, key)

        assert invalidator.invalidate_dependencies("a") == 2
        assert main_cache.has("a") is True
        assert main_cache.has("b") is False
        assert main_cache.has("c") is False
        assert invalidator.get_stats()['dependencies_resolved'] == 2

    def test_diamond_counts_each_key_once(self, invalidator, main_cache, session_cache):
        invalidator.add_dependency("b", ["a"])
        invalidator.add_dependency("c", ["a"])
        invalidator.add_dependency("d", ["b", "c"])
        for key in ("b", "c", "d"):
            main_cache.set(key, key)
        session_cache.set("d", "d")

        assert invalidator.invalidate_dependencies("a") == 3
        assert session_cache.has("d") is False

    def test_missing_dependents_not_counted(self, invalidator, main_cache):
        invalidator.add_dependency("quiz:7", ["folder:7"])

        assert invalidator.invalidate_dependencies("folder:7") == 0
        assert invalidator.get_stats()['dependencies_resolved'] == 1

    def test_remove_dependency(self, invalidator, main_cache):
        invalidator.add_dependency("quiz:7", ["folder:7"])
        invalidator.remove_dependency("quiz:7", ["folder:7"])
        main_cache.set("quiz:7", 1)

        assert invalidator.invalidate_dependencies("folder:7") == 0
        assert main_cache.has("quiz:7") is True

    def test_set_dependencies_and_forget_key(self, invalidator, main_cache):
        invalidator.add_dependency("quiz:7", ["folder:7"])
        invalidator.set_dependencies("quiz:7", ["folder:8"])
        main_cache.set("quiz:7", 1)

        assert invalidator.invalidate_dependencies("folder:7") == 0
        assert main_cache.has("quiz:7") is True

        invalidator.forget_key("folder:8")
        assert invalidator.invalidate_dependencies("folder:8") == 0
        assert invalidator.get_dependency_info()['total_edges'] == 0

    def test_clear_dependencies(self, invalidator):
        invalidator.add_dependency("b", ["a"])
        invalidator.clear_dependencies()

        assert invalidator.get_dependency_info()['total_keys'] == 0

    def test_dependency_info_reports_cycles(self, invalidator):
        invalidator.add_dependency("b", ["a"])
        invalidator.add_dependency("a", ["b"])

        info = invalidator.get_dependency_info()
        assert info['total_keys'] == 2
        assert info['total_edges'] == 2
        assert info['circular_dependencies'] == [["a", "b", "a"]]


class TestEventInvalidation:
    """Test rules triggered by entity change events."""

    def test_placeholder_rule_targets_entity(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(name="User Data", pattern="user:{entity_id}:*"))
        for key in ("user:42:profile", "user:42:history", "user:43:profile"):
            main_cache.set(key, key)

        removed = invalidator.invalidate(InvalidationEventType.UPDATE, "user", 42)

        assert removed == 2
        assert main_cache.keys() == ["user:43:profile"]
        assert invalidator.rules["User Data"].last_triggered.utcoffset().total_seconds() == 0

    def test_dependency_rule_cascades_from_entity(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Folder Changes",
            pattern="folder:{entity_id}:*",
            strategy=InvalidationStrategy.DEPENDENCY,
            entity_types=["folder"]
        ))
        invalidator.add_dependency("quiz:list:7", ["folder:7"])
        invalidator.add_dependency("summary:7", ["folder:7:contents"])
        for key in ("folder:7:contents", "quiz:list:7", "summary:7", "quiz:list:8"):
            main_cache.set(key, key)

        assert invalidator.invalidate("update", "folder", "7") == 2
        assert main_cache.has("quiz:list:7") is False
        assert main_cache.has("summary:7") is False
        assert main_cache.has("quiz:list:8") is True

    def test_entity_type_filter(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Folder Only", pattern="folder:*", entity_types=["folder"]
        ))
        main_cache.set("folder:1", 1)

        assert invalidator.invalidate("update", "user", "1") == 0
        assert invalidator.invalidate("update", "folder", "1") == 1

    def test_event_type_filter(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Deletes", pattern="quiz:{entity_id}", event_types=["delete"]
        ))
        main_cache.set("quiz:5", 5)

        assert invalidator.invalidate("update", "quiz", 5) == 0
        assert invalidator.invalidate("delete", "quiz", 5) == 1

    def test_rule_conditions(self, invalidator, main_cache):
        invalidator.add_rule(InvalidationRule(
            name="Email Changes",
            pattern="user:{entity_id}:*",
            conditions=[RuleCondition(field="field", operator="=", value="email")]
        ))
        main_cache.set("user:1:profile", 1)

        assert invalidator.invalidate("update", "user", 1, metadata={"field": "name"}) == 0
        assert invalidator.invalidate("update", "user", 1, metadata={"field": "email"}) == 1

    def test_scheduled_event_rule(self, invalidator, main_cache, clock):
        invalidator.add_rule(InvalidationRule(
            name="Stats", pattern="stats:{entity_id}", strategy="scheduled", delay=10.0
        ))
        main_cache.set("stats:3", 3)

        assert invalidator.invalidate("update", "stats", 3) == 0
        clock.advance(10.0)
        assert invalidator.run_scheduled_sweep() == 1

    def test_events_recorded_newest_first(self, invalidator, main_cache, metrics):
        main_cache.set("user:1", 1)
        invalidator.invalidate_pattern("user:*", reason="profile edit")
        invalidator.invalidate("delete", "quiz", 9)

        events = invalidator.get_recent_events()
        assert [event['event_type'] for event in events] == ["delete", "manual"]
        assert events[1]['reason'] == "profile edit"
        assert events[1]['keys_invalidated'] == 1
        assert metrics.get_counter('cache.invalidations_total').get_value() == 2

    def test_old_events_pruned(self, invalidator, clock):
        invalidator.event_retention = 100.0
        invalidator.invalidate_pattern("user:*")
        clock.advance(200.0)
        invalidator.invalidate_pattern("quiz:*")

        assert invalidator.prune_events() == 1
        assert len(invalidator.get_recent_events()) == 1


class TestRuleCondition:
    """Test rule condition operators."""

    @pytest.mark.parametrize("operator,value,expected", [
        ("=", 5, True),
        ("!=", 5, False),
        (">", 3, True),
        ("<", 3, False),
        ("contains", "5", True),
        ("regex", r"^\d$", True),
    ])
    def test_operators(self, operator, value, expected):
        assert RuleCondition("score", operator, value).evaluate({"score": 5}) is expected

    def test_missing_field(self):
        assert RuleCondition("score", "=", 5).evaluate({}) is False

    def test_incomparable_values(self):
        assert RuleCondition("score", ">", "high").evaluate({"score": 5}) is False


class TestRuleManagement:
    """Test rule registration, scheduling and lifecycle."""

    def test_rules_sorted_by_priority(self, invalidator):
        invalidator.add_rule(InvalidationRule(name="low", pattern="a", priority=1))
        invalidator.add_rule(InvalidationRule(name="high", pattern="b", priority=9))

        assert [rule.name for rule in invalidator.get_rules()] == ["high", "low"]
        assert invalidator.remove_rule("low") is True
        assert invalidator.remove_rule("low") is False

    def test_export_and_import_rules(self, invalidator, clock, metrics):
        invalidator.add_rule(InvalidationRule(
            name="Sessions", pattern=re.compile(r"^session:.*"), priority=8
        ))
        invalidator.add_rule(InvalidationRule(
            name="Folders", pattern="folder:{entity_id}:*", strategy="dependency",
            entity_types=["folder"], conditions=[RuleCondition("field", "=", "name")]
        ))
        exported = invalidator.export_rules()

        other = CacheInvalidator(metrics=metrics, clock=clock)
        assert other.import_rules(exported + [{"pattern": "no-name"}]) == 2

        sessions = other.rules["Sessions"]
        assert isinstance(sessions.pattern, re.Pattern)
        assert sessions.matches_key("session:1") is True
        folders = other.rules["Folders"]
        assert folders.strategy == InvalidationStrategy.DEPENDENCY
        assert folders.conditions[0].value == "name"

    def test_cancel_scheduled_invalidation(self, invalidator, main_cache, clock):
        main_cache.set("quiz:1", 1)
        scheduled_id = invalidator.schedule_invalidation(5.0, "quiz:*")

        assert invalidator.cancel_scheduled_invalidation(scheduled_id) is True
        clock.advance(10.0)
        assert invalidator.run_scheduled_sweep() == 0
        assert main_cache.has("quiz:1") is True

    def test_unregister_cache_manager(self, invalidator, main_cache):
        main_cache.set("user:1", 1)

        assert invalidator.unregister_cache_manager("main") is True
        assert invalidator.invalidate_pattern("user:*") == 0

    def test_reset_stats(self, invalidator):
        invalidator.invalidate_pattern("user:*")
        invalidator.reset_stats()

        assert invalidator.get_stats()['total_invalidations'] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, invalidator):
        await invalidator.start()
        assert invalidator.worker_task is not None

        await invalidator.stop()
        assert invalidator.worker_task is None
        assert invalidator.running is False
