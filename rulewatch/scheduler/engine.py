"""
Per-rule polling state machine.

STOPPED -> start() -> SCHEDULED | POLLING
SCHEDULED -> timer fires -> re-evaluate (still not due: re-check timer)
POLLING -> fetch -> classify -> buffer -> dispatch -> arm primary -> SCHEDULED
any -> stop() -> STOPPED

BACKOFF is not a stored state: a rate-limited endpoint makes
should_poll_now() return False, so the rule keeps re-checking until the
limit clears.

Every rule has at most two timers: `primary` (interval and re-check chain)
and `delayed_start` (waiting for the next time window). Arming one cancels
the other.
"""

import functools
import logging
from typing import TYPE_CHECKING, List, Optional
from zoneinfo import ZoneInfo

from ..analyst.classifier import RelevanceClassifier
from ..common.errors import AccountNotFoundError
from ..common.time_windows import active_window, seconds_until_next_window
from ..config.settings import settings
from ..harvester.base import max_item_id
from ..harvester.fetcher import ContentFetcher
from .notifications import NotificationDispatcher
from .registry import SchedulerRegistry
from .types import CycleHook, CycleState, MatchResult, PollState, Rule

if TYPE_CHECKING:
    from ..archivist.storage import RuleStore

logger = logging.getLogger(__name__)


class Scheduler:
    """Drives fetch -> classify -> buffer -> dispatch for every started rule."""

    def __init__(
        self,
        registry: SchedulerRegistry,
        fetcher: ContentFetcher,
        classifier: RelevanceClassifier,
        dispatcher: NotificationDispatcher,
        store: Optional["RuleStore"] = None,
        timezone: Optional[str] = None,
        recheck_interval: Optional[float] = None,
        tolerance_ms: Optional[float] = None,
        match_threshold: Optional[float] = None,
        max_count: Optional[int] = None,
    ):
        self.registry = registry
        self.fetcher = fetcher
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.store = store
        self.tz = ZoneInfo(timezone or settings.timezone)
        self.recheck_interval = recheck_interval if recheck_interval is not None else settings.recheck_interval_seconds
        self.tolerance = (tolerance_ms if tolerance_ms is not None else settings.poll_tolerance_ms) / 1000.0
        self.match_threshold = match_threshold if match_threshold is not None else settings.match_threshold
        self.max_count = max_count or settings.fetch_max_count

    @property
    def clock(self):
        return self.registry.clock

    # ----- Public operations -----

    async def start(self, rule: Rule, on_cycle_complete: Optional[CycleHook] = None) -> PollState:
        """Start polling a rule.

        Idempotent: a rule that is already registered keeps its timers.
        If the rule is due and inside a window, the first cycle runs before
        this returns, so AccountNotFoundError reaches the caller and the rule
        is left unscheduled.
        """
        existing = self.registry.get(rule.id)
        if existing is not None:
            logger.info(f"[rule {rule.id}] Already scheduled ({existing.state.value}), reusing timers")
            return existing.state

        if not rule.is_active:
            logger.info(f"[rule {rule.id}] Not active, skipping start")
            return PollState.STOPPED

        entry = self.registry.register(rule, on_cycle_complete)
        logger.info(f"[rule {rule.id}] Starting polling for @{rule.account} (interval={rule.polling_interval}s)")
        try:
            await self._evaluate(entry, propagate=True)
        except AccountNotFoundError:
            self.registry.release(rule.id)
            logger.error(f"[rule {rule.id}] Account @{rule.account} not found, rule not scheduled")
            raise
        except Exception as e:
            # Never leave a registered rule without timers
            self.registry.release(rule.id)
            logger.error(f"[rule {rule.id}] Failed to start, rule not scheduled: {e}", exc_info=True)
            raise
        return self.poll_state(rule.id)

    def stop(self, rule_id: str, keep_buffer: bool = False) -> bool:
        """Cancel both timers and drop the rule. Returns False if it was not polling."""
        stopped = self.registry.release(rule_id, keep_buffer=keep_buffer)
        if stopped:
            logger.info(f"[rule {rule_id}] Polling stopped")
        return stopped

    async def restart(self, rule: Rule, on_cycle_complete: Optional[CycleHook] = None) -> PollState:
        """Apply an edited rule: stop, then start again if it is still active."""
        self.stop(rule.id)
        if not rule.is_active:
            return PollState.STOPPED
        return await self.start(rule, on_cycle_complete)

    def should_poll_now(self, rule_id: str, interval: float) -> bool:
        if self.registry.rate_limits.status(self.fetcher.endpoint).is_limited:
            return False
        entry = self.registry.get(rule_id)
        if entry is None or entry.last_poll_timestamp is None:
            return True
        elapsed = self.clock.time() - entry.last_poll_timestamp
        return elapsed + self.tolerance >= interval

    def poll_state(self, rule_id: str) -> PollState:
        entry = self.registry.get(rule_id)
        if entry is None:
            return PollState.STOPPED
        return entry.state

    # ----- State machine -----

    def _current_interval(self, rule: Rule):
        """(in_window, interval) for the local time right now."""
        if not rule.time_windows:
            return True, rule.polling_interval
        window = active_window(rule.time_windows, self.clock.now().astimezone(self.tz))
        if window is None:
            return False, rule.polling_interval
        return True, window.polling_interval

    async def _evaluate(self, entry: CycleState, propagate: bool = False) -> None:
        rule = entry.rule
        in_window, interval = self._current_interval(rule)
        if not in_window:
            self._arm_delayed(entry)
            return

        if self.should_poll_now(rule.id, interval):
            await self._run_cycle(entry, propagate=propagate)
        else:
            self._arm_primary(entry, self._recheck_delay(entry, interval))

    def _recheck_delay(self, entry: CycleState, interval: float) -> float:
        """Short re-check, or less if the rule becomes due sooner."""
        wait = self.registry.rate_limits.status(self.fetcher.endpoint).wait_seconds
        if entry.last_poll_timestamp is not None:
            remaining = interval - (self.clock.time() - entry.last_poll_timestamp)
            wait = max(wait, remaining)
        if wait <= 0:
            return self.recheck_interval
        return min(self.recheck_interval, wait)

    async def _on_primary(self, rule_id: str) -> None:
        entry = self.registry.get(rule_id)
        if entry is None:
            return
        entry.primary = None
        await self._evaluate_from_timer(entry)

    async def _on_delayed(self, rule_id: str) -> None:
        entry = self.registry.get(rule_id)
        if entry is None:
            return
        entry.delayed_start = None
        logger.info(f"[rule {rule_id}] Time window opened")
        await self._evaluate_from_timer(entry)

    async def _evaluate_from_timer(self, entry: CycleState) -> None:
        """Timer-driven evaluation. A rule whose timers cannot be re-armed is stopped."""
        rule_id = entry.rule.id
        try:
            await self._evaluate(entry)
        except Exception as e:
            logger.error(f"[rule {rule_id}] Could not schedule next cycle, stopping rule: {e}", exc_info=True)
            if self.registry.get(rule_id) is entry:
                self.stop(rule_id)

    def _arm_primary(self, entry: CycleState, delay: float) -> None:
        rule_id = entry.rule.id
        if entry.delayed_start is not None:
            entry.delayed_start.cancel()
            entry.delayed_start = None
        if entry.primary is not None:
            entry.primary.cancel()
        entry.primary = self.registry.timers.after(
            delay, functools.partial(self._on_primary, rule_id), name=f"{rule_id}:primary"
        )

    def _arm_delayed(self, entry: CycleState) -> None:
        rule = entry.rule
        delay = seconds_until_next_window(rule.time_windows, self.clock.now().astimezone(self.tz))
        if entry.primary is not None:
            entry.primary.cancel()
            entry.primary = None
        if entry.delayed_start is not None:
            entry.delayed_start.cancel()
        entry.delayed_start = self.registry.timers.after(
            delay, functools.partial(self._on_delayed, rule.id), name=f"{rule.id}:delayed"
        )
        logger.info(f"[rule {rule.id}] Outside time windows, next start in {delay / 60:.1f} min")

    # ----- Poll cycle -----

    async def _run_cycle(self, entry: CycleState, propagate: bool = False) -> None:
        rule = entry.rule
        if entry.processing:
            logger.warning(f"[rule {rule.id}] Cycle already in progress, skipping")
            return

        entry.processing = True
        started = self.clock.time()
        entry.last_poll_timestamp = started
        matches: List[MatchResult] = []
        try:
            matches = await self._poll(entry)
        except AccountNotFoundError:
            if propagate:
                raise
            logger.error(f"[rule {rule.id}] Account @{rule.account} not found, stopping rule")
            self.stop(rule.id)
            await self._deactivate(rule.id)
            return
        except Exception as e:
            # A broken cycle must not end the timer chain
            logger.error(f"[rule {rule.id}] Poll cycle failed: {e}", exc_info=True)
        finally:
            entry.processing = False

        if self.registry.get(rule.id) is not entry:
            return

        if entry.on_cycle_complete is not None:
            try:
                await entry.on_cycle_complete(matches)
            except Exception as e:
                logger.error(f"[rule {rule.id}] on_cycle_complete hook failed: {e}", exc_info=True)

        in_window, interval = self._current_interval(rule)
        if not in_window:
            self._arm_delayed(entry)
            return
        elapsed = self.clock.time() - started
        self._arm_primary(entry, max(0.0, interval - elapsed))

    async def _poll(self, entry: CycleState) -> List[MatchResult]:
        rule = entry.rule
        items = await self.fetcher.fetch_since(
            rule.account, self.registry.cursor_for(rule.id), self.max_count
        )

        matches: List[MatchResult] = []
        highest: Optional[str] = None
        for item in items:
            if self.registry.get(rule.id) is not entry:
                logger.info(f"[rule {rule.id}] Stopped mid-cycle, abandoning remaining items")
                break
            verdict = await self.classifier.classify(item.text, rule.criteria, backend=rule.scoring_backend)
            result = MatchResult(
                item_id=item.id,
                relevance_score=verdict.relevance_score,
                explanation=verdict.explanation,
                matched=verdict.relevance_score >= self.match_threshold,
                author_id=item.author_id,
                text=item.text,
            )
            highest = max_item_id(highest, item.id)
            if result.matched:
                entry.buffer.append(result)
                matches.append(result)

        cursor = self.registry.advance_cursor(rule.id, highest)
        logger.info(
            f"[rule {rule.id}] Cycle processed {len(items)} items, {len(matches)} matches (cursor={cursor})"
        )
        await self._persist(rule, cursor, matches)

        if entry.buffer and self.registry.get(rule.id) is entry:
            await self.dispatcher.dispatch(rule, entry.buffer)
        return matches

    async def _persist(self, rule: Rule, cursor: Optional[str], matches: List[MatchResult]) -> None:
        if self.store is None:
            return
        try:
            await self.store.update_poll_state(rule.id, cursor, self.clock.now())
            if matches:
                await self.store.upsert_matches(rule.id, matches)
        except Exception as e:
            logger.error(f"[rule {rule.id}] Failed to persist poll state: {e}")

    async def _deactivate(self, rule_id: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.deactivate_rule(rule_id)
        except Exception as e:
            logger.error(f"[rule {rule_id}] Failed to deactivate rule: {e}")
