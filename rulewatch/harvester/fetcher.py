"""
ContentFetcher - rate-limit aware wrapper around the platform client.

Only AccountNotFoundError escapes; rate limits and transient failures
become an empty batch so the poll cycle carries on.
"""

import logging
from typing import TYPE_CHECKING, List, Optional

import httpx

from ..common.errors import AccountNotFoundError, PlatformError, RateLimitedError
from ..config.settings import settings
from .base import FetchedItem, PlatformClient

if TYPE_CHECKING:
    from ..scheduler.rate_limit import RateLimitTracker

logger = logging.getLogger(__name__)


class ContentFetcher:
    """Fetches new items for an account, honouring the shared rate-limit state."""

    def __init__(
        self,
        client: PlatformClient,
        rate_limits: "RateLimitTracker",
        endpoint: Optional[str] = None,
    ):
        self.client = client
        self.rate_limits = rate_limits
        self.endpoint = endpoint or settings.platform_endpoint_key

    async def fetch_since(
        self, account: str, cursor: Optional[str], max_count: int
    ) -> List[FetchedItem]:
        """Items newer than cursor, oldest first. Raises AccountNotFoundError."""
        status = self.rate_limits.status(self.endpoint)
        if status.is_limited:
            logger.info(f"Skipping fetch for @{account}: {self.endpoint} limited for {status.wait_seconds:.0f}s")
            return []

        try:
            items = await self.client.fetch_items_since(account, cursor, max_count)
        except RateLimitedError as e:
            self.rate_limits.record_limit(e.endpoint or self.endpoint, e.reset_epoch)
            return []
        except AccountNotFoundError:
            raise
        except PlatformError as e:
            logger.warning(f"Fetch failed for @{account}: {e}")
            return []
        except httpx.HTTPError as e:
            logger.error(f"HTTP error fetching items for @{account}: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error fetching items for @{account}: {e}", exc_info=True)
            return []

        items = sorted(items, key=lambda i: i.created_at)
        logger.debug(f"Fetched {len(items)} items for @{account} since {cursor}")
        return items
