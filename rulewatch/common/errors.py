"""
Exception types shared across the harvester, scheduler and API layers.
"""

from typing import Optional


class RuleWatchError(Exception):
    """Base class for rulewatch errors."""


class PlatformError(RuleWatchError):
    """Upstream content platform call failed (transient unless subclassed)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(PlatformError):
    """Upstream reported a rate limit. reset_epoch is when it clears."""

    def __init__(self, endpoint: str, reset_epoch: float):
        super().__init__(f"Rate limited on {endpoint} until {reset_epoch:.0f}", status_code=429)
        self.endpoint = endpoint
        self.reset_epoch = reset_epoch


class AccountNotFoundError(PlatformError):
    """Watched account does not exist or was suspended. Fatal for the rule."""

    def __init__(self, account: str):
        super().__init__(f"Account @{account} not found", status_code=404)
        self.account = account


class NotificationError(RuleWatchError):
    """Notification provider answered but rejected the request."""

    def __init__(self, provider: str, code, message: str = ""):
        super().__init__(f"{provider} error {code}: {message}")
        self.provider = provider
        self.code = code
