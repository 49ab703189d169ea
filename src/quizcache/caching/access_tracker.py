"""
Access pattern tracking used for predictive and popularity based warming.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from ..logging_config import get_logger

# Weighting of the predictive score
FREQUENCY_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3
FREQUENCY_SATURATION = 10
RECENCY_WINDOW = 86400.0  # 24 hours

MAX_SEQUENTIAL_FOLLOWERS = 10


@dataclass
class AccessRecord:
    """Bounded access history of one key for one user."""
    key: str
    user_id: Optional[str]
    timestamps: Deque[float]
    total_count: int = 0

    @property
    def last_access(self) -> float:
        return self.timestamps[-1] if self.timestamps else 0.0

    def record(self, now: float) -> None:
        self.timestamps.append(now)
        self.total_count += 1

    def score(self, now: float) -> float:
        """Blend of access frequency and recency in [0, 1]."""
        frequency_score = min(1.0, self.total_count / FREQUENCY_SATURATION)
        recency_score = max(0.0, 1.0 - (now - self.last_access) / RECENCY_WINDOW)
        return frequency_score * FREQUENCY_WEIGHT + recency_score * RECENCY_WEIGHT


class AccessTracker:
    """Learns which keys are read, by whom and when."""

    def __init__(
        self,
        max_access_history: int = 100,
        max_tracked_keys: int = 10000,
        pattern_retention: float = 604800.0,
        clock: Optional[Callable[[], float]] = None
    ):
        self.max_access_history = max_access_history
        self.max_tracked_keys = max_tracked_keys
        self.pattern_retention = pattern_retention
        self.clock = clock or time.time
        self.logger = get_logger(__name__, 'access_tracker')

        self.records: Dict[Optional[str], Dict[str, AccessRecord]] = {}
        self.popular_keys: Dict[str, int] = {}
        self.popular_last_seen: Dict[str, float] = {}
        self.hourly_access: Dict[int, Dict[str, float]] = {}
        self.sequential_patterns: Dict[str, List[str]] = {}
        self._last_key_by_user: Dict[str, str] = {}

    def record_access(self, user_id: Optional[str], key: str) -> AccessRecord:
        """Record one read of ``key`` by ``user_id`` (``None`` for anonymous)."""
        now = self.clock()

        user_records = self.records.setdefault(user_id, {})
        record = user_records.get(key)
        if record is None:
            record = AccessRecord(key=key, user_id=user_id, timestamps=deque(maxlen=self.max_access_history))
            user_records[key] = record
        record.record(now)

        self._track_popularity(key, now)

        hour = datetime.fromtimestamp(now).hour
        self.hourly_access.setdefault(hour, {})[key] = now

        if user_id is not None:
            previous = self._last_key_by_user.get(user_id)
            if previous is not None and previous != key:
                followers = self.sequential_patterns.setdefault(previous, [])
                if key not in followers:
                    followers.append(key)
                    if len(followers) > MAX_SEQUENTIAL_FOLLOWERS:
                        followers.pop(0)
            self._last_key_by_user[user_id] = key

        return record

    def _track_popularity(self, key: str, now: float) -> None:
        if key not in self.popular_keys and len(self.popular_keys) >= self.max_tracked_keys:
            coldest = min(self.popular_keys, key=lambda k: (self.popular_keys[k], self.popular_last_seen[k]))
            del self.popular_keys[coldest]
            del self.popular_last_seen[coldest]

        self.popular_keys[key] = self.popular_keys.get(key, 0) + 1
        self.popular_last_seen[key] = now

    def get_record(self, user_id: Optional[str], key: str) -> Optional[AccessRecord]:
        return self.records.get(user_id, {}).get(key)

    def predict_user_keys(self, user_id: str, limit: int = 50) -> List[str]:
        """Keys a user is likely to read next, best candidates first."""
        user_records = self.records.get(user_id)
        if not user_records:
            return []

        now = self.clock()
        scored = sorted(
            user_records.values(),
            key=lambda record: (record.score(now), record.last_access),
            reverse=True
        )
        predicted = [record.key for record in scored[:limit]]

        last_key = self._last_key_by_user.get(user_id)
        if last_key is not None:
            for follower in self.sequential_patterns.get(last_key, []):
                if len(predicted) >= limit:
                    break
                if follower not in predicted:
                    predicted.append(follower)

        return predicted

    def get_popular_keys(self, limit: int = 100) -> List[str]:
        ranked = sorted(self.popular_keys.items(), key=lambda item: item[1], reverse=True)
        return [key for key, _ in ranked[:limit]]

    def keys_for_hour(self, hour: Optional[int] = None) -> List[str]:
        if hour is None:
            hour = datetime.fromtimestamp(self.clock()).hour
        return sorted(self.hourly_access.get(hour, {}))

    def next_keys(self, key: str) -> List[str]:
        return list(self.sequential_patterns.get(key, []))

    def prune(self) -> int:
        """Forget access data older than the retention window."""
        cutoff = self.clock() - self.pattern_retention
        pruned = 0

        for user_id in list(self.records):
            user_records = self.records[user_id]
            for key in [key for key, record in user_records.items() if record.last_access < cutoff]:
                del user_records[key]
                pruned += 1
            if not user_records:
                del self.records[user_id]
                self._last_key_by_user.pop(user_id, None)

        for key in [key for key, seen in self.popular_last_seen.items() if seen < cutoff]:
            del self.popular_keys[key]
            del self.popular_last_seen[key]
            self.sequential_patterns.pop(key, None)

        for hour in list(self.hourly_access):
            bucket = self.hourly_access[hour]
            for key in [key for key, seen in bucket.items() if seen < cutoff]:
                del bucket[key]
            if not bucket:
                del self.hourly_access[hour]

        if pruned:
            self.logger.debug(f"Pruned {pruned} stale access records", operation="prune")
        return pruned

    def get_insights(self, top: int = 20) -> Dict[str, Any]:
        peak_hours = sorted(
            ({'hour': hour, 'key_count': len(keys)} for hour, keys in self.hourly_access.items()),
            key=lambda item: item['key_count'],
            reverse=True
        )
        return {
            'top_popular_keys': [
                {'key': key, 'access_count': self.popular_keys[key]} for key in self.get_popular_keys(top)
            ],
            'peak_hours': peak_hours,
            'sequential_patterns': [
                {'key': key, 'next_keys': list(followers)}
                for key, followers in list(self.sequential_patterns.items())[:10]
                if len(followers) > 1
            ],
            'tracked_users': len([user for user in self.records if user is not None]),
            'tracked_keys': len(self.popular_keys)
        }

    def clear(self) -> None:
        self.records.clear()
        self.popular_keys.clear()
        self.popular_last_seen.clear()
        self.hourly_access.clear()
        self.sequential_patterns.clear()
        self._last_key_by_user.clear()
