"""
Domain types for the polling scheduler.

Rules are loaded from the store into frozen `Rule` objects; everything
the scheduler mutates lives in the per-rule `CycleState`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from ..common.timers import TimerHandle
from .match_buffer import MatchBuffer


class PollState(str, Enum):
    """Where a rule sits in the polling state machine."""
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    POLLING = "polling"


@dataclass(frozen=True)
class TimeWindow:
    """Time-of-day window (local clock) with its own polling interval."""
    start_time: str  # "HH:MM"
    end_time: str  # "HH:MM"; earlier than start_time means it wraps past midnight
    polling_interval: int  # seconds


@dataclass(frozen=True)
class NotificationTarget:
    """Where a rule's notifications go: channel kind + address (webhook URL or Feishu receive id)."""
    channel: str  # slack | discord | webhook | feishu
    address: str


@dataclass(frozen=True)
class Rule:
    """A watched account plus the criteria its posts are scored against."""
    id: str
    name: str
    account: str
    criteria: str
    is_active: bool = True
    polling_interval: int = 300
    time_windows: Tuple[TimeWindow, ...] = ()
    last_polled_at: Optional[datetime] = None
    last_processed_item_id: Optional[str] = None
    notification_target: Optional[NotificationTarget] = None
    scoring_backend: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class MatchResult:
    """Relevance verdict for one fetched item."""
    item_id: str
    relevance_score: float
    explanation: str
    matched: bool
    author_id: str = ""
    text: str = ""


CycleHook = Callable[[List[MatchResult]], Awaitable[None]]


@dataclass
class CycleState:
    """In-memory scheduling state for one registered rule."""
    rule: Rule
    primary: Optional[TimerHandle] = None
    delayed_start: Optional[TimerHandle] = None
    buffer: MatchBuffer = field(default_factory=MatchBuffer)
    last_poll_timestamp: Optional[float] = None
    processing: bool = False
    on_cycle_complete: Optional[CycleHook] = None

    @property
    def state(self) -> PollState:
        if self.processing:
            return PollState.POLLING
        return PollState.SCHEDULED

    def cancel_timers(self) -> None:
        """Cancel both timer handles. Safe to call repeatedly."""
        for handle in (self.primary, self.delayed_start):
            if handle is not None:
                handle.cancel()
        self.primary = None
        self.delayed_start = None
