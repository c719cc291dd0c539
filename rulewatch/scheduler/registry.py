"""
SchedulerRegistry - the single source of truth for "is this rule scheduled".

Replaces module-level globals (timer map, rate-limit state, notified items)
with one object built at process start and passed to every component that
needs it. Tests build their own.

Holds:
- rule id -> CycleState (timer handles, match buffer, poll timestamps)
- per-rule cursors (survive stop/start within the process)
- the RateLimitTracker shared by every rule
- the NotifiedSet used to suppress duplicate notifications
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

from ..common.timers import Clock, TimerService
from ..harvester.base import max_item_id
from .match_buffer import MatchBuffer
from .rate_limit import RateLimitTracker
from .types import CycleHook, CycleState, Rule

logger = logging.getLogger(__name__)


class NotifiedSet:
    """Item ids that have already gone out in a notification."""

    def __init__(self, item_ids: Optional[Iterable[str]] = None):
        self._ids: Set[str] = set(item_ids or ())

    def load(self, item_ids: Iterable[str]) -> int:
        """Merge ids loaded from storage. Returns how many were new."""
        before = len(self._ids)
        self._ids.update(item_ids)
        return len(self._ids) - before

    def add(self, item_id: str) -> None:
        self._ids.add(item_id)

    def add_many(self, item_ids: Iterable[str]) -> None:
        self._ids.update(item_ids)

    def contains(self, item_id: str) -> bool:
        return item_id in self._ids

    def discard_many(self, item_ids: Iterable[str]) -> int:
        removed = 0
        for item_id in item_ids:
            if item_id in self._ids:
                self._ids.discard(item_id)
                removed += 1
        return removed

    def clear(self) -> int:
        count = len(self._ids)
        self._ids.clear()
        return count

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class SchedulerRegistry:
    """Process-wide scheduler state. One instance per process."""

    def __init__(
        self,
        timers: TimerService,
        rate_limits: Optional[RateLimitTracker] = None,
        notified: Optional[NotifiedSet] = None,
        clock: Optional[Clock] = None,
    ):
        self.timers = timers
        self.clock = clock or timers.clock
        self.rate_limits = rate_limits or RateLimitTracker(self.clock)
        self.notified = notified or NotifiedSet()
        self._entries: Dict[str, CycleState] = {}
        self._cursors: Dict[str, str] = {}
        self._retained_buffers: Dict[str, MatchBuffer] = {}

    # ----- Entries -----

    def get(self, rule_id: str) -> Optional[CycleState]:
        return self._entries.get(rule_id)

    def register(self, rule: Rule, on_cycle_complete: Optional[CycleHook] = None) -> CycleState:
        """Create the entry for a rule. The caller must check is_polling first."""
        if rule.id in self._entries:
            raise ValueError(f"Rule {rule.id} is already registered")

        entry = CycleState(rule=rule, on_cycle_complete=on_cycle_complete)
        if rule.last_polled_at is not None:
            entry.last_poll_timestamp = rule.last_polled_at.timestamp()
        retained = self._retained_buffers.pop(rule.id, None)
        if retained:
            entry.buffer.extend(retained.snapshot())
        self.advance_cursor(rule.id, rule.last_processed_item_id)
        self._entries[rule.id] = entry
        return entry

    def release(self, rule_id: str, keep_buffer: bool = False) -> bool:
        """Cancel a rule's timers and drop its entry. Returns False if absent."""
        entry = self._entries.pop(rule_id, None)
        if entry is None:
            return False
        entry.cancel_timers()
        if keep_buffer and entry.buffer:
            self._retained_buffers[rule_id] = entry.buffer
        else:
            dropped = entry.buffer.clear()
            if dropped:
                logger.info(f"[rule {rule_id}] Discarded {dropped} buffered matches on stop")
        return True

    def get_active_rule_ids(self) -> List[str]:
        """Ids of every registered rule, whether armed, delayed or mid-cycle."""
        return list(self._entries)

    def is_polling(self, rule_id: str) -> bool:
        return rule_id in self._entries

    def stop_all(self) -> int:
        """Cancel every timer of every kind for every rule."""
        rule_ids = list(self._entries)
        for rule_id in rule_ids:
            self.release(rule_id)
        self._retained_buffers.clear()
        stray = self.timers.cancel_all()
        if rule_ids or stray:
            logger.info(f"Stopped all polling: {len(rule_ids)} rules, {stray} stray timers")
        return len(rule_ids)

    def force_cleanup(self, rule_id: str) -> int:
        """Stop a rule, then sweep any timer still carrying its id.

        Returns the number of residual timers found by the sweep.
        """
        self.release(rule_id)
        self._retained_buffers.pop(rule_id, None)
        residual = self.timers.cancel_matching(f"{rule_id}:")
        if residual:
            logger.warning(f"[rule {rule_id}] Force cleanup removed {residual} residual timers")
        return residual

    # ----- Cursors -----

    def cursor_for(self, rule_id: str) -> Optional[str]:
        return self._cursors.get(rule_id)

    def advance_cursor(self, rule_id: str, item_id: Optional[str]) -> Optional[str]:
        """Move the cursor forward. Never moves it backwards."""
        new_cursor = max_item_id(self._cursors.get(rule_id), item_id)
        if new_cursor is not None:
            self._cursors[rule_id] = new_cursor
        return new_cursor

    def load_cursors(self, cursors: Dict[str, Optional[str]]) -> None:
        for rule_id, cursor in cursors.items():
            self.advance_cursor(rule_id, cursor)

    def status(self) -> Dict[str, object]:
        """Snapshot for the admin status endpoint."""
        return {
            "active_rules": {
                rule_id: {
                    "state": entry.state.value,
                    "primary_due_at": entry.primary.due_at if entry.primary else None,
                    "delayed_start_due_at": entry.delayed_start.due_at if entry.delayed_start else None,
                    "buffered_matches": len(entry.buffer),
                    "last_poll_timestamp": entry.last_poll_timestamp,
                    "cursor": self._cursors.get(rule_id),
                }
                for rule_id, entry in self._entries.items()
            },
            "rate_limits": self.rate_limits.snapshot(),
            "notified_items": len(self.notified),
        }
