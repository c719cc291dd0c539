"""Database models and storage utilities."""

from .models import (
    TrackingRule,
    TrackingTimeSlot,
    MatchedItem,
)
from .database import get_session, init_db, close_db
from .storage import RuleStore, SqlRuleStore, rule_from_row

__all__ = [
    "TrackingRule",
    "TrackingTimeSlot",
    "MatchedItem",
    "get_session",
    "init_db",
    "close_db",
    "RuleStore",
    "SqlRuleStore",
    "rule_from_row",
]
