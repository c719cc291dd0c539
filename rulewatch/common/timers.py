"""
One-shot cancellable timers on top of APScheduler.

The scheduler only needs `after(delay, callback, name) -> TimerHandle`.
Interval polling and delayed starts are both chains of one-shot timers,
each with its own handle, so cancelling one never touches the other.

Usage:
    timers = APSchedulerTimers(AsyncIOScheduler(timezone="UTC"))
    timers.start()
    handle = timers.after(60, poll_again, name="rule-1:primary")
    handle.cancel()  # idempotent
"""

import itertools
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class Clock:
    """Wall clock. Subclassed in tests to control time."""

    def time(self) -> float:
        return time.time()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.time(), tz=timezone.utc)


class TimerHandle:
    """Handle for one armed timer."""

    def __init__(self, name: str, due_at: float):
        self.name = name
        self.due_at = due_at
        self.cancelled = False
        self.fired = False
        self._cancel_fn: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        """Cancel the timer. Cancelling a fired or cancelled timer is a no-op."""
        if not self.active:
            return
        self.cancelled = True
        if self._cancel_fn is not None:
            self._cancel_fn()

    def __repr__(self) -> str:
        state = "active" if self.active else ("fired" if self.fired else "cancelled")
        return f"TimerHandle({self.name!r}, due_at={self.due_at:.3f}, {state})"


class TimerService(ABC):
    """Arms one-shot timers and keeps track of the live ones."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._live: Dict[int, TimerHandle] = {}

    @abstractmethod
    def after(self, delay: float, callback: TimerCallback, name: str) -> TimerHandle:
        """Run `callback` once, `delay` seconds from now."""

    def pending(self, prefix: Optional[str] = None) -> List[TimerHandle]:
        """Live handles, optionally only those whose name starts with prefix."""
        return [
            h for h in self._live.values()
            if h.active and (prefix is None or h.name.startswith(prefix))
        ]

    def cancel_matching(self, prefix: str) -> int:
        """Cancel every live timer whose name starts with prefix."""
        handles = self.pending(prefix)
        for handle in handles:
            handle.cancel()
        return len(handles)

    def cancel_all(self) -> int:
        """Cancel every live timer created by this service."""
        handles = self.pending()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def _track(self, handle: TimerHandle) -> None:
        self._live[id(handle)] = handle

    def _untrack(self, handle: TimerHandle) -> None:
        self._live.pop(id(handle), None)


class APSchedulerTimers(TimerService):
    """TimerService backed by DateTrigger jobs on an AsyncIOScheduler."""

    def __init__(self, scheduler: AsyncIOScheduler, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._scheduler = scheduler
        self._ids = itertools.count(1)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Timer scheduler started")

    def shutdown(self) -> None:
        self.cancel_all()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Timer scheduler shutdown complete")

    def after(self, delay: float, callback: TimerCallback, name: str) -> TimerHandle:
        delay = max(0.0, float(delay))
        due_at = self.clock.time() + delay
        handle = TimerHandle(name, due_at)
        job_id = f"{name}#{next(self._ids)}"

        async def fire() -> None:
            if not handle.active:
                return
            handle.fired = True
            self._untrack(handle)
            await callback()

        self._scheduler.add_job(
            fire,
            trigger=DateTrigger(run_date=datetime.fromtimestamp(due_at, tz=timezone.utc)),
            id=job_id,
            name=name,
            misfire_grace_time=None,  # Always run, however late
        )
        handle._cancel_fn = lambda: self._remove_job(job_id, handle)
        self._track(handle)
        logger.debug(f"Timer armed: {name} in {delay:.1f}s")
        return handle

    def _remove_job(self, job_id: str, handle: TimerHandle) -> None:
        self._untrack(handle)
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            # Already ran or was removed - nothing to cancel
            pass
