"""
Shared fixtures for the QuizCache test suite.
"""

import os
import sys

os.environ.setdefault('TESTING', '1')
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from quizcache.metrics_collector import MetricsCollector


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector()
