"""
Database models using SQLModel (SQLAlchemy + Pydantic).

Schema:
- TrackingRule: A watched account plus the criteria its posts are scored against
- TrackingTimeSlot: Optional time-of-day windows for a rule, each with its own interval
- MatchedItem: Posts that scored above the match threshold, with notification state
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime.

    Every timestamp column is TIMESTAMP WITH TIME ZONE; sqlmodel rejects
    naive values on write.
    """
    return datetime.now(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC. Naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


TIMESTAMPTZ = DateTime(timezone=True)


class TrackingRule(SQLModel, table=True):
    """A rule watching one account."""
    __tablename__ = "tracking_rules"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    account: str = Field(index=True)  # Handle without @
    criteria: str
    is_active: bool = Field(default=True, index=True)
    polling_interval: int = 300  # Seconds, used outside/without time slots
    last_polled_at: Optional[datetime] = Field(default=None, sa_type=TIMESTAMPTZ)
    last_processed_item_id: Optional[str] = None  # Cursor (highest item id processed)
    notification_channel: Optional[str] = None  # slack | discord | webhook | feishu
    notification_address: Optional[str] = None
    scoring_backend: Optional[str] = None  # anthropic | openai | dashscope
    created_at: datetime = Field(default_factory=utc_now, sa_type=TIMESTAMPTZ)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=TIMESTAMPTZ)


class TrackingTimeSlot(SQLModel, table=True):
    """A time-of-day window for a rule (local clock, "HH:MM")."""
    __tablename__ = "tracking_time_slots"

    id: Optional[int] = Field(default=None, primary_key=True)
    rule_id: str = Field(foreign_key="tracking_rules.id", index=True)
    start_time: str
    end_time: str
    polling_interval: int
    position: int = 0  # Order within the rule


class MatchedItem(SQLModel, table=True):
    """A post that matched a rule."""
    __tablename__ = "matched_items"
    __table_args__ = (
        UniqueConstraint("rule_id", "item_id", name="uq_matched_items_rule_item"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    rule_id: str = Field(foreign_key="tracking_rules.id", index=True)
    item_id: str = Field(index=True)
    author_id: Optional[str] = None
    content: Optional[str] = None
    relevance_score: float = 0.0
    explanation: Optional[str] = None
    notified: bool = Field(default=False, index=True)
    notified_at: Optional[datetime] = Field(default=None, sa_type=TIMESTAMPTZ)
    created_at: datetime = Field(default_factory=utc_now, sa_type=TIMESTAMPTZ)
