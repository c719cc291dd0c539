"""
Per-rule accumulator for matches found during the current poll cycle.
"""

from typing import TYPE_CHECKING, Iterator, List

if TYPE_CHECKING:
    from .types import MatchResult


class MatchBuffer:
    """Append-only list of matches, emptied once per cycle after dispatch."""

    def __init__(self):
        self._items: List["MatchResult"] = []

    def append(self, match: "MatchResult") -> None:
        self._items.append(match)

    def extend(self, matches: List["MatchResult"]) -> None:
        self._items.extend(matches)

    def snapshot(self) -> List["MatchResult"]:
        """Copy of the current contents."""
        return list(self._items)

    def clear(self) -> int:
        """Empty the buffer. Returns how many matches were dropped."""
        count = len(self._items)
        self._items.clear()
        return count

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator["MatchResult"]:
        return iter(list(self._items))
