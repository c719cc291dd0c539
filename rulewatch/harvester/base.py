"""
Base types for content platform harvesting.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class FetchedItem:
    """A post pulled from the watched account."""
    id: str
    text: str
    author_id: str
    created_at: datetime


class PlatformClient(ABC):
    """Upstream content platform.

    fetch_items_since raises RateLimitedError on a rate-limit response and
    AccountNotFoundError when the account does not exist. Any other failure
    raises PlatformError (or an httpx error).
    """

    @abstractmethod
    async def fetch_items_since(
        self, account: str, cursor: Optional[str], limit: int
    ) -> List[FetchedItem]:
        ...


def item_id_key(item_id: str) -> Tuple[int, int, str]:
    """Sort key for opaque item ids.

    Snowflake ids are numeric strings and compare as integers; anything
    else falls back to (length, text), which orders fixed-alphabet ids the
    same way.
    """
    if item_id.isdigit():
        return (0, int(item_id), "")
    return (1, len(item_id), item_id)


def max_item_id(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """The larger of two cursors; None counts as lowest."""
    if not candidate:
        return current
    if not current:
        return candidate
    return candidate if item_id_key(candidate) > item_id_key(current) else current
