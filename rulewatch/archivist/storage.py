"""
Rule persistence for the scheduler.

The scheduler only sees the RuleStore interface; SqlRuleStore implements it
on the SQLModel tables. Rows are converted into frozen `Rule` objects at
this boundary, which is also where the notification target is resolved
(falling back to the default webhook from settings).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config.settings import settings
from ..harvester.base import max_item_id
from ..scheduler.types import MatchResult, NotificationTarget, Rule, TimeWindow
from .database import async_session_factory, get_session
from .models import MatchedItem, TrackingRule, TrackingTimeSlot, to_utc, utc_now

logger = logging.getLogger(__name__)


class RuleStore(ABC):
    """What the scheduler needs from persistence."""

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        ...

    @abstractmethod
    async def list_active_rules(self) -> List[Rule]:
        """Active rules with their time windows, oldest first."""

    @abstractmethod
    async def update_poll_state(self, rule_id: str, cursor: Optional[str], polled_at: datetime) -> None:
        ...

    @abstractmethod
    async def upsert_matches(self, rule_id: str, matches: Sequence[MatchResult]) -> int:
        ...

    @abstractmethod
    async def mark_notified(self, rule_id: str, item_ids: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def load_notified_ids(self) -> Set[str]:
        ...

    @abstractmethod
    async def load_cursors(self) -> Dict[str, Optional[str]]:
        ...

    @abstractmethod
    async def deactivate_rule(self, rule_id: str) -> None:
        ...

    @abstractmethod
    async def reset_notifications(self, rule_id: Optional[str] = None) -> List[str]:
        """Clear notified flags (one rule, or all). Returns the affected item ids."""


def resolve_target(
    channel: Optional[str],
    address: Optional[str],
    default: Optional[Tuple[str, str]] = None,
) -> Optional[NotificationTarget]:
    if channel and address:
        return NotificationTarget(channel=channel, address=address)
    if address:
        return NotificationTarget(channel="webhook", address=address)
    if default:
        return NotificationTarget(channel=default[0], address=default[1])
    return None


def rule_from_row(
    row: TrackingRule,
    slots: Sequence[TrackingTimeSlot] = (),
    default_target: Optional[Tuple[str, str]] = None,
) -> Rule:
    """Convert a TrackingRule row (plus its slots) into a scheduler Rule."""
    ordered = sorted(slots, key=lambda s: (s.position, s.id or 0))
    return Rule(
        id=row.id,
        name=row.name,
        account=row.account.lstrip("@"),
        criteria=row.criteria,
        is_active=row.is_active,
        polling_interval=row.polling_interval,
        time_windows=tuple(
            TimeWindow(start_time=s.start_time, end_time=s.end_time, polling_interval=s.polling_interval)
            for s in ordered
        ),
        last_polled_at=to_utc(row.last_polled_at),
        last_processed_item_id=row.last_processed_item_id,
        notification_target=resolve_target(row.notification_channel, row.notification_address, default_target),
        scoring_backend=row.scoring_backend,
        created_at=to_utc(row.created_at),
    )


class SqlRuleStore(RuleStore):
    """RuleStore on the SQLModel tables."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        default_target: Optional[Tuple[str, str]] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.default_target = default_target if default_target is not None else settings.default_notification

    async def _slots_for(self, session, rule_ids: List[str]) -> Dict[str, List[TrackingTimeSlot]]:
        slots: Dict[str, List[TrackingTimeSlot]] = {rule_id: [] for rule_id in rule_ids}
        if not rule_ids:
            return slots
        result = await session.execute(
            select(TrackingTimeSlot).where(TrackingTimeSlot.rule_id.in_(rule_ids))
        )
        for slot in result.scalars().all():
            slots[slot.rule_id].append(slot)
        return slots

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        async with get_session(self.session_factory) as session:
            row = await session.get(TrackingRule, rule_id)
            if row is None:
                return None
            slots = await self._slots_for(session, [rule_id])
            return rule_from_row(row, slots[rule_id], self.default_target)

    async def list_active_rules(self) -> List[Rule]:
        async with get_session(self.session_factory) as session:
            result = await session.execute(
                select(TrackingRule)
                .where(TrackingRule.is_active == True)  # noqa: E712
                .order_by(TrackingRule.created_at)
            )
            rows = result.scalars().all()
            slots = await self._slots_for(session, [r.id for r in rows])
            return [rule_from_row(r, slots[r.id], self.default_target) for r in rows]

    async def update_poll_state(self, rule_id: str, cursor: Optional[str], polled_at: datetime) -> None:
        async with get_session(self.session_factory) as session:
            row = await session.get(TrackingRule, rule_id)
            if row is None:
                logger.warning(f"[rule {rule_id}] Poll state update for missing rule")
                return
            row.last_processed_item_id = max_item_id(row.last_processed_item_id, cursor)
            row.last_polled_at = to_utc(polled_at)
            row.updated_at = utc_now()
            session.add(row)

    async def upsert_matches(self, rule_id: str, matches: Sequence[MatchResult]) -> int:
        if not matches:
            return 0
        async with get_session(self.session_factory) as session:
            item_ids = [m.item_id for m in matches]
            result = await session.execute(
                select(MatchedItem).where(
                    MatchedItem.rule_id == rule_id,
                    MatchedItem.item_id.in_(item_ids),
                )
            )
            existing = {row.item_id: row for row in result.scalars().all()}

            inserted = 0
            for match in matches:
                row = existing.get(match.item_id)
                if row is None:
                    row = MatchedItem(rule_id=rule_id, item_id=match.item_id)
                    existing[match.item_id] = row
                    inserted += 1
                # Re-scoring refreshes the verdict but never resets notification state
                row.author_id = match.author_id or row.author_id
                row.content = match.text or row.content
                row.relevance_score = match.relevance_score
                row.explanation = match.explanation
                session.add(row)
            return inserted

    async def mark_notified(self, rule_id: str, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        async with get_session(self.session_factory) as session:
            result = await session.execute(
                update(MatchedItem)
                .where(MatchedItem.rule_id == rule_id, MatchedItem.item_id.in_(ids))
                .values(notified=True, notified_at=utc_now())
            )
            return result.rowcount or 0

    async def load_notified_ids(self) -> Set[str]:
        async with get_session(self.session_factory) as session:
            result = await session.execute(
                select(MatchedItem.item_id).where(MatchedItem.notified == True)  # noqa: E712
            )
            return set(result.scalars().all())

    async def load_cursors(self) -> Dict[str, Optional[str]]:
        async with get_session(self.session_factory) as session:
            result = await session.execute(
                select(TrackingRule.id, TrackingRule.last_processed_item_id)
            )
            return {rule_id: cursor for rule_id, cursor in result.all()}

    async def deactivate_rule(self, rule_id: str) -> None:
        async with get_session(self.session_factory) as session:
            await session.execute(
                update(TrackingRule)
                .where(TrackingRule.id == rule_id)
                .values(is_active=False, updated_at=utc_now())
            )
        logger.warning(f"[rule {rule_id}] Deactivated")

    async def reset_notifications(self, rule_id: Optional[str] = None) -> List[str]:
        async with get_session(self.session_factory) as session:
            query = select(MatchedItem.item_id).where(MatchedItem.notified == True)  # noqa: E712
            reset = update(MatchedItem).where(MatchedItem.notified == True)  # noqa: E712
            if rule_id is not None:
                query = query.where(MatchedItem.rule_id == rule_id)
                reset = reset.where(MatchedItem.rule_id == rule_id)
            result = await session.execute(query)
            item_ids = list(result.scalars().all())
            await session.execute(reset.values(notified=False, notified_at=None))
        logger.info(f"Reset notification state for {len(item_ids)} items (rule={rule_id or 'all'})")
        return item_ids
