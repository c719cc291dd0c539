"""
Shared test helpers, fakes and skip markers for test infrastructure.

This module can be explicitly imported by test files.
For pytest fixtures, see conftest.py.

Usage:
    from tests.test_helpers import FakeClock, FakeTimers, make_rule, skip_no_aiosqlite
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set

import pytest

from rulewatch.analyst.backends import ScoringBackend
from rulewatch.analyst.schemas import Classification
from rulewatch.archivist.storage import RuleStore
from rulewatch.common.timers import Clock, TimerHandle, TimerService
from rulewatch.harvester.base import FetchedItem, PlatformClient, max_item_id
from rulewatch.scheduler.notifications import NotificationChannel
from rulewatch.scheduler.types import MatchResult, NotificationTarget, Rule, TimeWindow


# Monday 2026-03-02 10:00:00 UTC
START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
WEBHOOK = NotificationTarget(channel="webhook", address="https://hooks.test/rulewatch")


# =============================================================================
# Dependency checks
# =============================================================================
def has_aiosqlite():
    """Check if aiosqlite is installed (async SQLite driver for storage tests)."""
    try:
        import aiosqlite  # noqa: F401
        return True
    except ImportError:
        return False


skip_no_aiosqlite = pytest.mark.skipif(
    not has_aiosqlite(),
    reason="aiosqlite not installed"
)


# =============================================================================
# Deterministic time
# =============================================================================
class FakeClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self._now = start.timestamp()

    def time(self) -> float:
        return self._now

    def set(self, moment) -> None:
        self._now = moment.timestamp() if isinstance(moment, datetime) else float(moment)

    def advance(self, seconds: float) -> None:
        self._now += seconds


class FakeTimers(TimerService):
    """TimerService driven manually by advance()."""

    def __init__(self, clock: FakeClock):
        super().__init__(clock)
        self._queue = []
        self.armed: List[TimerHandle] = []

    def after(self, delay, callback, name):
        handle = TimerHandle(name, self.clock.time() + max(0.0, float(delay)))
        handle._cancel_fn = lambda: self._untrack(handle)
        self._track(handle)
        self._queue.append((handle, callback))
        self.armed.append(handle)
        return handle

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.clock.time() + seconds
        while True:
            due = [entry for entry in self._queue if entry[0].active and entry[0].due_at <= target]
            if not due:
                break
            entry = min(due, key=lambda e: e[0].due_at)
            self._queue.remove(entry)
            handle, callback = entry
            self.clock.set(max(self.clock.time(), handle.due_at))
            handle.fired = True
            self._untrack(handle)
            await callback()
        self.clock.set(target)
        self._queue = [entry for entry in self._queue if entry[0].active]


# =============================================================================
# Builders
# =============================================================================
def make_rule(rule_id: str = "rule-1", **overrides) -> Rule:
    values = dict(
        id=rule_id,
        name=f"Rule {rule_id}",
        account="watched",
        criteria="AI startup funding announcements",
        polling_interval=60,
        notification_target=WEBHOOK,
    )
    values.update(overrides)
    return Rule(**values)


def make_window(start: str, end: str, interval: int = 60) -> TimeWindow:
    return TimeWindow(start_time=start, end_time=end, polling_interval=interval)


def make_item(item_id: str, text: str = "noise", author_id: str = "author-1", minutes: int = 0) -> FetchedItem:
    return FetchedItem(
        id=item_id,
        text=text,
        author_id=author_id,
        created_at=START + timedelta(minutes=minutes),
    )


def make_match(item_id: str, score: float = 0.9, text: str = "match") -> MatchResult:
    return MatchResult(
        item_id=item_id,
        relevance_score=score,
        explanation=f"explains {item_id}",
        matched=score >= 0.7,
        author_id="author-1",
        text=text,
    )


# =============================================================================
# Fake collaborators
# =============================================================================
@dataclass
class FetchCall:
    account: str
    cursor: Optional[str]
    limit: int
    at: float


class FakePlatform(PlatformClient):
    """Scripted platform: queued responses first, then empty batches."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.calls: List[FetchCall] = []
        self.responses: list = []
        self.errors: Dict[str, Exception] = {}

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def fetch_items_since(self, account, cursor, limit):
        self.calls.append(FetchCall(account, cursor, limit, self.clock.time()))
        if account in self.errors:
            raise self.errors[account]
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return list(response)
        return []


class FakeBackend(ScoringBackend):
    """Scores 0.9 when the text contains "match", else 0.1."""

    name = "fake"

    def __init__(self):
        self.calls: List[str] = []
        self.fail_on: Set[str] = set()
        self.on_score = None

    async def score(self, text, criteria):
        self.calls.append(text)
        if self.on_score is not None:
            self.on_score(text)
        if text in self.fail_on:
            raise ValueError("backend exploded")
        score = 0.9 if "match" in text else 0.1
        return Classification(relevance_score=score, explanation=f"scored {text}")


class RecordingChannel(NotificationChannel):
    """Channel that records sends instead of posting."""

    name = "recording"

    def __init__(self, succeed: bool = True):
        super().__init__()
        self.succeed = succeed
        self.sent: List[dict] = []

    def build_payload(self, title, body, metadata):
        return {"title": title, "body": body, "metadata": metadata}

    async def send(self, target, title, body, metadata):
        self.sent.append({"target": target, **self.build_payload(title, body, metadata)})
        return self.succeed


class InMemoryRuleStore(RuleStore):
    """RuleStore over plain dicts, with call recording."""

    def __init__(self, rules: Sequence[Rule] = ()):
        self.rules: Dict[str, Rule] = {r.id: r for r in rules}
        self.poll_updates: List[tuple] = []
        self.matches: Dict[str, List[MatchResult]] = {}
        self.notified: Dict[str, Set[str]] = {}
        self.deactivated: List[str] = []
        self.fail_writes = False

    async def get_rule(self, rule_id):
        return self.rules.get(rule_id)

    async def list_active_rules(self):
        return [r for r in self.rules.values() if r.is_active]

    async def update_poll_state(self, rule_id, cursor, polled_at):
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        self.poll_updates.append((rule_id, cursor, polled_at))

    async def upsert_matches(self, rule_id, matches):
        self.matches.setdefault(rule_id, []).extend(matches)
        return len(matches)

    async def mark_notified(self, rule_id, item_ids):
        ids = list(item_ids)
        self.notified.setdefault(rule_id, set()).update(ids)
        return len(ids)

    async def load_notified_ids(self):
        return {item_id for ids in self.notified.values() for item_id in ids}

    async def load_cursors(self):
        return {rule_id: r.last_processed_item_id for rule_id, r in self.rules.items()}

    async def deactivate_rule(self, rule_id):
        self.deactivated.append(rule_id)
        rule = self.rules.get(rule_id)
        if rule is not None:
            self.rules[rule_id] = replace(rule, is_active=False)

    async def reset_notifications(self, rule_id=None):
        if rule_id is None:
            ids = [i for s in self.notified.values() for i in s]
            self.notified.clear()
            return ids
        return list(self.notified.pop(rule_id, set()))


def highest(ids: Iterable[str]) -> Optional[str]:
    result = None
    for item_id in ids:
        result = max_item_id(result, item_id)
    return result
