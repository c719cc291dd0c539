"""
Common utilities and shared modules.
"""

from .errors import (
    RuleWatchError,
    PlatformError,
    RateLimitedError,
    AccountNotFoundError,
)

from .http_client import (
    create_api_client,
    create_platform_client,
    USER_AGENT_BOT,
)

from .timers import (
    Clock,
    TimerHandle,
    TimerService,
    APSchedulerTimers,
)

__all__ = [
    # Errors
    "RuleWatchError",
    "PlatformError",
    "RateLimitedError",
    "AccountNotFoundError",
    # HTTP client utilities
    "create_api_client",
    "create_platform_client",
    "USER_AGENT_BOT",
    # Timers
    "Clock",
    "TimerHandle",
    "TimerService",
    "APSchedulerTimers",
]
