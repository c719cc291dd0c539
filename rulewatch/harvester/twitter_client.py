"""
Twitter/X API v2 client for watched accounts.

Resolves the account handle to a user id once (cached), then reads the
user's timeline newer than the cursor with `since_id`.

SETUP:
1. Apply for a Twitter Developer account: https://developer.twitter.com/
2. Create a project and app, get a Bearer Token
3. Set TWITTER_BEARER_TOKEN

Failure mapping:
- 429                 -> RateLimitedError (reset from x-rate-limit-reset)
- user missing / 404  -> AccountNotFoundError
- anything else       -> PlatformError
"""

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from ..common.errors import AccountNotFoundError, PlatformError, RateLimitedError
from ..common.http_client import create_platform_client
from ..config.settings import settings
from .base import FetchedItem, PlatformClient, item_id_key

logger = logging.getLogger(__name__)


class TwitterClient(PlatformClient):
    """PlatformClient backed by the Twitter API v2."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        endpoint: Optional[str] = None,
    ):
        self.client = client or create_platform_client()
        self.endpoint = endpoint or settings.platform_endpoint_key
        self._user_ids: Dict[str, str] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def fetch_items_since(
        self, account: str, cursor: Optional[str], limit: int
    ) -> List[FetchedItem]:
        user_id = await self._resolve_user_id(account)

        params = {
            # API accepts 5-100
            "max_results": max(5, min(limit, 100)),
            "tweet.fields": "created_at,author_id,text",
        }
        if cursor:
            params["since_id"] = cursor

        response = await self.client.get(f"/users/{user_id}/tweets", params=params)
        if response.status_code == 404:
            self._user_ids.pop(account.lstrip("@").lower(), None)
            raise AccountNotFoundError(account)
        self._raise_for_status(response, account)

        data = self._json(response, account)
        items = []
        for tweet in data.get("data", []) or []:
            item = self._parse_tweet(tweet, user_id)
            if item is not None:
                items.append(item)

        # API returns newest first; callers want oldest first
        items.sort(key=lambda i: (i.created_at, item_id_key(i.id)))
        return items

    async def _resolve_user_id(self, account: str) -> str:
        handle = account.lstrip("@")
        cached = self._user_ids.get(handle.lower())
        if cached:
            return cached

        response = await self.client.get(
            f"/users/by/username/{handle}",
            params={"user.fields": "id,name,username"},
        )
        if response.status_code == 404:
            raise AccountNotFoundError(handle)
        self._raise_for_status(response, handle)

        data = self._json(response, handle)
        user = data.get("data") or {}
        user_id = user.get("id")
        if not user_id:
            # Twitter answers 200 with an "errors" array for unknown or suspended users
            logger.warning(f"Twitter API: User @{handle} not found or suspended")
            raise AccountNotFoundError(handle)

        self._user_ids[handle.lower()] = user_id
        return user_id

    def _raise_for_status(self, response: httpx.Response, account: str) -> None:
        if response.status_code == 429:
            raise RateLimitedError(self.endpoint, self._reset_epoch(response))
        if response.status_code == 401:
            raise PlatformError("Twitter API: Invalid or expired Bearer Token", status_code=401)
        if response.status_code != 200:
            raise PlatformError(
                f"Twitter API: Unexpected status {response.status_code} for @{account}",
                status_code=response.status_code,
            )

    def _reset_epoch(self, response: httpx.Response) -> float:
        header = response.headers.get("x-rate-limit-reset")
        if header:
            try:
                return float(header)
            except ValueError:
                logger.warning(f"Invalid x-rate-limit-reset header: {header!r}")
        return time.time() + settings.rate_limit_fallback_seconds

    def _json(self, response: httpx.Response, account: str) -> dict:
        try:
            return response.json()
        except (ValueError, TypeError) as e:
            raise PlatformError(f"Failed to parse JSON response for @{account}: {e}") from e

    def _parse_tweet(self, tweet: dict, user_id: str) -> Optional[FetchedItem]:
        tweet_id = tweet.get("id")
        created_at_str = tweet.get("created_at")
        if not tweet_id or not created_at_str:
            logger.warning("Skipping tweet with missing id or created_at")
            return None
        try:
            created_at = datetime.fromisoformat(created_at_str.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning(f"Invalid created_at format: {created_at_str}")
            return None
        return FetchedItem(
            id=str(tweet_id),
            text=tweet.get("text", ""),
            author_id=str(tweet.get("author_id") or user_id),
            created_at=created_at,
        )
