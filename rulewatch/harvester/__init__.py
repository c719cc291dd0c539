from .base import FetchedItem, PlatformClient, item_id_key, max_item_id
from .fetcher import ContentFetcher
from .twitter_client import TwitterClient

__all__ = [
    "FetchedItem",
    "PlatformClient",
    "item_id_key",
    "max_item_id",
    "ContentFetcher",
    "TwitterClient",
]
