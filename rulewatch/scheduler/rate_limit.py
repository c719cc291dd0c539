"""
Process-wide upstream rate-limit tracking.

One limit recorded by any rule's fetch suppresses fetches for every rule
sharing the same endpoint key until the reset time passes.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..common.timers import Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    is_limited: bool
    reset_epoch: float
    wait_seconds: float


class RateLimitTracker:
    """Endpoint key -> epoch second at which the upstream limit clears."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or Clock()
        self._resets: Dict[str, float] = {}

    def record_limit(self, endpoint: str, reset_epoch: float) -> None:
        """Record (overwrite) the reset time for an endpoint."""
        self._resets[endpoint] = float(reset_epoch)
        wait = max(0.0, reset_epoch - self._clock.time())
        logger.warning(f"RATE_LIMIT: {endpoint} limited for {wait:.0f}s (reset at {reset_epoch:.0f})")

    def status(self, endpoint: str) -> RateLimitStatus:
        reset_epoch = self._resets.get(endpoint, 0.0)
        wait_seconds = max(0.0, reset_epoch - self._clock.time())
        return RateLimitStatus(
            is_limited=wait_seconds > 0,
            reset_epoch=reset_epoch,
            wait_seconds=wait_seconds,
        )

    def clear(self, endpoint: Optional[str] = None) -> None:
        if endpoint is None:
            self._resets.clear()
        else:
            self._resets.pop(endpoint, None)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        """Current status of every tracked endpoint, for monitoring."""
        result = {}
        for endpoint in self._resets:
            status = self.status(endpoint)
            result[endpoint] = {
                "reset_epoch": status.reset_epoch,
                "wait_seconds": status.wait_seconds,
            }
        return result
