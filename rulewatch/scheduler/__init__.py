"""
Rule polling scheduler: state machine, registry, notifications and boot.
"""
from .boot import BootOrchestrator, ReconcileReport
from .engine import Scheduler
from .match_buffer import MatchBuffer
from .notifications import NotificationDispatcher, default_channels
from .rate_limit import RateLimitStatus, RateLimitTracker
from .registry import NotifiedSet, SchedulerRegistry
from .types import CycleState, MatchResult, NotificationTarget, PollState, Rule, TimeWindow

__all__ = [
    "BootOrchestrator",
    "ReconcileReport",
    "Scheduler",
    "MatchBuffer",
    "NotificationDispatcher",
    "default_channels",
    "RateLimitStatus",
    "RateLimitTracker",
    "NotifiedSet",
    "SchedulerRegistry",
    "CycleState",
    "MatchResult",
    "NotificationTarget",
    "PollState",
    "Rule",
    "TimeWindow",
]
