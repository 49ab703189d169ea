"""
Tests for access pattern tracking.
"""

from datetime import datetime

from quizcache.caching import AccessTracker


class TestAccessTracker:
    """Test access recording, ranking and pruning."""

    def test_records_per_user_history(self, clock):
        tracker = AccessTracker(max_access_history=2, clock=clock)
        for _ in range(3):
            tracker.record_access("u1", "quiz:1")
            clock.advance(1.0)

        record = tracker.get_record("u1", "quiz:1")
        assert record.total_count == 3
        assert len(record.timestamps) == 2
        assert tracker.get_record("u2", "quiz:1") is None

    def test_popular_keys_ranked_by_count(self, clock):
        tracker = AccessTracker(clock=clock)
        tracker.record_access(None, "a")
        for _ in range(3):
            tracker.record_access("u1", "b")
        tracker.record_access("u2", "c")
        tracker.record_access("u2", "c")

        assert tracker.get_popular_keys() == ["b", "c", "a"]
        assert tracker.get_popular_keys(limit=1) == ["b"]

    def test_tracked_keys_bounded(self, clock):
        tracker = AccessTracker(max_tracked_keys=2, clock=clock)
        tracker.record_access(None, "a")
        tracker.record_access(None, "a")
        tracker.record_access(None, "b")
        tracker.record_access(None, "c")

        assert sorted(tracker.popular_keys) == ["a", "c"]

    def test_prediction_prefers_frequent_recent_keys(self, clock):
        tracker = AccessTracker(clock=clock)
        for _ in range(5):
            tracker.record_access("u1", "quiz:often")
        clock.advance(3600.0)
        tracker.record_access("u1", "quiz:once")

        assert tracker.predict_user_keys("u1") == ["quiz:often", "quiz:once"]
        assert tracker.predict_user_keys("u1", limit=1) == ["quiz:often"]
        assert tracker.predict_user_keys("unknown") == []

    def test_prediction_appends_sequential_followers(self, clock):
        tracker = AccessTracker(clock=clock)
        tracker.record_access("u1", "folder:1")
        tracker.record_access("u1", "quiz:1")
        tracker.record_access("u2", "folder:1")

        assert tracker.next_keys("folder:1") == ["quiz:1"]
        assert tracker.predict_user_keys("u2") == ["folder:1", "quiz:1"]

    def test_keys_for_hour(self, clock):
        tracker = AccessTracker(clock=clock)
        tracker.record_access(None, "morning:quiz")
        hour = datetime.fromtimestamp(clock()).hour

        assert tracker.keys_for_hour() == ["morning:quiz"]
        assert tracker.keys_for_hour((hour + 1) % 24) == []

    def test_prune_forgets_old_access(self, clock):
        tracker = AccessTracker(pattern_retention=100.0, clock=clock)
        tracker.record_access("u1", "old")
        clock.advance(200.0)
        tracker.record_access("u1", "new")

        assert tracker.prune() == 1
        assert tracker.get_record("u1", "old") is None
        assert tracker.get_popular_keys() == ["new"]
        assert tracker.next_keys("old") == []

    def test_clear(self, clock):
        tracker = AccessTracker(clock=clock)
        tracker.record_access("u1", "a")
        tracker.clear()

        insights = tracker.get_insights()
        assert insights['tracked_keys'] == 0
        assert insights['tracked_users'] == 0
        assert insights['peak_hours'] == []
