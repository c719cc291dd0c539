"""
BootOrchestrator - reconcile persisted active rules with the in-memory registry.

On startup:
1. Reload the notified-set and per-rule cursors from storage
2. List rules marked active
3. stop_all() for a clean slate
4. Start each rule in creation order, pausing between batches when there
   are many rules, so startup does not burst the upstream platform
5. Compare registry against storage: missing rules are logged as failed,
   registry-only rules are orphans and get stopped

A background health loop repeats steps 2, 4 and 5 every few hours (without
the clean slate) to correct drift from out-of-band edits.

Concurrent or too-frequent runs are refused by an `initializing` flag and
a minimum-interval gate.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from ..config.settings import settings
from .engine import Scheduler
from .types import Rule

if TYPE_CHECKING:
    from ..archivist.storage import RuleStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""
    started: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    orphans_stopped: List[str] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "started": self.started,
            "failed": self.failed,
            "orphans_stopped": self.orphans_stopped,
            "skipped": self.skipped,
            "reason": self.reason,
        }


class BootOrchestrator:
    """Startup reconciliation and periodic self-healing for the scheduler."""

    def __init__(
        self,
        scheduler: Scheduler,
        store: "RuleStore",
        sleep: Sleeper = asyncio.sleep,
        batch_threshold: Optional[int] = None,
        batch_size: Optional[int] = None,
        batch_pause: Optional[float] = None,
        min_interval: Optional[float] = None,
    ):
        self.scheduler = scheduler
        self.registry = scheduler.registry
        self.store = store
        self._sleep = sleep
        self.batch_threshold = batch_threshold if batch_threshold is not None else settings.boot_batch_threshold
        self.batch_size = batch_size or settings.boot_batch_size
        self.batch_pause = batch_pause if batch_pause is not None else settings.boot_batch_pause_seconds
        self.min_interval = min_interval if min_interval is not None else settings.boot_min_interval_seconds

        self.initializing = False
        self._last_run: Optional[float] = None
        self._health_task: Optional[asyncio.Task] = None

    # ----- Reconciliation -----

    async def initialize(self, force: bool = False) -> ReconcileReport:
        """Full boot: rehydrate, clean slate, start every active rule."""
        gate = self._gate(force)
        if gate is not None:
            return gate

        self.initializing = True
        self._last_run = self.registry.clock.time()
        try:
            logger.info("[Boot] Initializing rule tracking...")
            await self._rehydrate()

            rules = await self.store.list_active_rules()
            logger.info(f"[Boot] {len(rules)} active rules in storage")

            stopped = self.registry.stop_all()
            if stopped:
                logger.info(f"[Boot] Cleared {stopped} previously scheduled rules")
            leftover = self.registry.get_active_rule_ids()
            if leftover:
                logger.error(f"[Boot] {len(leftover)} rules still registered after stop_all: {leftover}")

            report = ReconcileReport()
            await self._start_rules(rules, report)
            self._reconcile(rules, report)
            logger.info(
                f"[Boot] Initialization complete: started={len(report.started)} "
                f"failed={len(report.failed)} orphans={len(report.orphans_stopped)}"
            )
            return report
        finally:
            self.initializing = False

    async def health_check(self, force: bool = False) -> ReconcileReport:
        """Recover rules that should be polling and stop orphans."""
        gate = self._gate(force)
        if gate is not None:
            return gate

        self.initializing = True
        self._last_run = self.registry.clock.time()
        try:
            rules = await self.store.list_active_rules()
            missing = [r for r in rules if not self.registry.is_polling(r.id)]
            if missing:
                logger.warning(f"[HealthCheck] {len(missing)} active rules not polling, restarting")

            report = ReconcileReport()
            await self._start_rules(missing, report)
            self._reconcile(rules, report)
            logger.info(
                f"[HealthCheck] recovered={len(report.started)} failed={len(report.failed)} "
                f"orphans={len(report.orphans_stopped)}"
            )
            return report
        finally:
            self.initializing = False

    def _gate(self, force: bool) -> Optional[ReconcileReport]:
        if self.initializing:
            logger.info("[Boot] Reconciliation already in progress, skipping")
            return ReconcileReport(skipped=True, reason="in_progress")
        if force or self._last_run is None:
            return None
        since = self.registry.clock.time() - self._last_run
        if since < self.min_interval:
            logger.info(f"[Boot] Last reconciliation {since:.0f}s ago, skipping")
            return ReconcileReport(skipped=True, reason="too_soon")
        return None

    async def _rehydrate(self) -> None:
        notified = await self.store.load_notified_ids()
        added = self.registry.notified.load(notified)
        cursors = await self.store.load_cursors()
        self.registry.load_cursors(cursors)
        logger.info(f"[Boot] Loaded {added} notified items and {len(cursors)} cursors")

    async def _start_rules(self, rules: List[Rule], report: ReconcileReport) -> None:
        ordered = sorted(rules, key=lambda r: (r.created_at is None, r.created_at or 0))
        batching = len(ordered) > self.batch_threshold
        for index, rule in enumerate(ordered, start=1):
            try:
                logger.info(f"[Boot] Starting rule ({index}/{len(ordered)}): {rule.id} ({rule.name})")
                await self.scheduler.start(rule)
                if self.registry.is_polling(rule.id):
                    report.started.append(rule.id)
            except Exception as e:
                logger.error(f"[Boot] Failed to start rule {rule.id} ({rule.name}): {e}")

            if batching and index % self.batch_size == 0 and index < len(ordered):
                logger.info(f"[Boot] Pausing {self.batch_pause}s after {index} rules")
                await self._sleep(self.batch_pause)

    def _reconcile(self, rules: List[Rule], report: ReconcileReport) -> None:
        persisted = {r.id for r in rules}
        registered = set(self.registry.get_active_rule_ids())

        for rule_id in sorted(persisted - registered):
            logger.error(f"[Boot] Rule {rule_id} is active in storage but failed to recover")
            report.failed.append(rule_id)

        for rule_id in sorted(registered - persisted):
            logger.warning(f"[Boot] Stopping orphan rule {rule_id}")
            self.registry.force_cleanup(rule_id)
            report.orphans_stopped.append(rule_id)

    # ----- Health loop -----

    async def _health_loop(self, interval: float) -> None:
        logger.info(f"Health loop started (interval={interval / 3600:.1f}h)")
        while True:
            try:
                await self._sleep(interval)
                await self.health_check(force=True)
            except asyncio.CancelledError:
                logger.info("Health loop received cancellation")
                break
            except Exception as e:
                # Keep the loop alive
                logger.error(f"Health check error: {e}", exc_info=True)

    def start_health_loop(self, interval_hours: Optional[float] = None) -> None:
        if self._health_task is not None and not self._health_task.done():
            logger.warning("Health loop already running")
            return
        hours = interval_hours if interval_hours is not None else settings.health_check_interval_hours
        self._health_task = asyncio.create_task(self._health_loop(hours * 3600), name="rule_health_check")

    async def stop_health_loop(self) -> None:
        if self._health_task is None:
            return
        self._health_task.cancel()
        try:
            await self._health_task
        except asyncio.CancelledError:
            pass
        self._health_task = None
        logger.info("Health loop stopped")
