"""
Pytest fixtures for test infrastructure.

This module is automatically loaded by pytest and provides shared fixtures.
For fakes, builders and skip markers, see test_helpers.py.
"""

import pytest

from rulewatch.analyst.classifier import RelevanceClassifier
from rulewatch.harvester.fetcher import ContentFetcher
from rulewatch.scheduler.engine import Scheduler
from rulewatch.scheduler.notifications import NotificationDispatcher
from rulewatch.scheduler.registry import SchedulerRegistry

from tests.test_helpers import (
    FakeBackend,
    FakeClock,
    FakePlatform,
    FakeTimers,
    InMemoryRuleStore,
    RecordingChannel,
)


ENDPOINT = "users/tweets"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return FakeTimers(clock)


@pytest.fixture
def registry(timers):
    return SchedulerRegistry(timers)


@pytest.fixture
def platform(clock):
    return FakePlatform(clock)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def store():
    return InMemoryRuleStore()


@pytest.fixture
def fetcher(platform, registry):
    return ContentFetcher(platform, registry.rate_limits, endpoint=ENDPOINT)


@pytest.fixture
def dispatcher(registry, store, channel):
    return NotificationDispatcher(registry.notified, store, channels={"webhook": channel})


@pytest.fixture
def scheduler(registry, fetcher, backend, dispatcher, store):
    """Scheduler on fake time, UTC windows, 60s re-check, 100ms tolerance."""
    return Scheduler(
        registry,
        fetcher,
        RelevanceClassifier({"fake": backend}, default_backend="fake"),
        dispatcher,
        store=store,
        timezone="UTC",
        recheck_interval=60,
        tolerance_ms=100,
        match_threshold=0.7,
        max_count=20,
    )
