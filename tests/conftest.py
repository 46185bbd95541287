"""
Shared fixtures and in-memory fakes for the DeployGate test suite
"""

import os
import sys
from typing import Dict, List

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from deploygate.config import PipelineConfig
from deploygate.models import ChangeDescriptor, RiskAssessment
from deploygate.scoring.base import RiskScorer


class MockRedis:
    """In-memory stand-in for the redis commands DeployGate uses"""

    def __init__(self):
        self.storage: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.ttls: Dict[str, int] = {}

    def get(self, key):
        return self.storage.get(key)

    def setex(self, key, ttl, value):
        self.storage[key] = value
        self.ttls[key] = ttl
        return True

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    def lrange(self, key, start, end):
        if key not in self.lists:
            return []
        if end == -1:
            return self.lists[key][start:]
        return self.lists[key][start:end + 1]

    def ltrim(self, key, start, end):
        if key in self.lists:
            self.lists[key] = self.lists[key][start:end + 1]
        return True

    def expire(self, key, ttl):
        self.ttls[key] = ttl
        return True

    def ping(self):
        return True


class FakeScorer(RiskScorer):
    """
    Scorer that replays scripted outcomes: a float becomes a RiskAssessment,
    an exception instance is raised. The last outcome repeats.
    """

    name = "fake"

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [0.1]
        self.calls = 0
        self.closed = False

    async def score(self, change):
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, (int, float)):
            return RiskAssessment(score=outcome, model=self.name)
        return outcome

    async def aclose(self):
        self.closed = True


@pytest.fixture
def change():
    return ChangeDescriptor(
        content_ref="registry.example.com/payments-api:1.4.2",
        revision="9f1c2ab",
        environment="staging",
        job_id="payments-api",
        build_id="118",
        labels={"files_changed": "4", "lines_changed": "120"},
    )


@pytest.fixture
def fast_config():
    """Zero backoff and short monitoring so the suite stays quick"""
    return PipelineConfig(
        risk_threshold=0.5,
        scorer_retry_limit=2,
        scorer_retry_backoff=0.0,
        monitoring_timeout=1.0,
        monitoring_poll_interval=0.01,
        watch_backend_health=True,
    )


@pytest.fixture
def mock_redis():
    return MockRedis()
