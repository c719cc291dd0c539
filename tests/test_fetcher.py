"""
Tests for ContentFetcher error translation and rate-limit short-circuit.
"""

import httpx
import pytest

from rulewatch.common.errors import AccountNotFoundError, PlatformError, RateLimitedError

from tests.conftest import ENDPOINT
from tests.test_helpers import make_item


class TestContentFetcher:

    @pytest.mark.asyncio
    async def test_returns_items_oldest_first(self, fetcher, platform):
        platform.queue([make_item("3", minutes=2), make_item("1", minutes=0), make_item("2", minutes=1)])

        items = await fetcher.fetch_since("watched", "0", 20)

        assert [i.id for i in items] == ["1", "2", "3"]
        assert platform.calls[0].cursor == "0"
        assert platform.calls[0].limit == 20

    @pytest.mark.asyncio
    async def test_limited_endpoint_skips_network(self, fetcher, platform, registry, clock):
        registry.rate_limits.record_limit(ENDPOINT, clock.time() + 60)

        assert await fetcher.fetch_since("watched", None, 20) == []
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_rate_limit_recorded_and_empty(self, fetcher, platform, registry, clock):
        platform.queue(RateLimitedError(ENDPOINT, clock.time() + 900))

        assert await fetcher.fetch_since("watched", None, 20) == []

        status = registry.rate_limits.status(ENDPOINT)
        assert status.is_limited
        assert status.wait_seconds == 900

    @pytest.mark.asyncio
    async def test_no_call_until_reset(self, fetcher, platform, clock):
        platform.queue(RateLimitedError(ENDPOINT, clock.time() + 300))
        await fetcher.fetch_since("watched", None, 20)

        clock.advance(299)
        await fetcher.fetch_since("watched", None, 20)
        assert len(platform.calls) == 1

        clock.advance(1)
        await fetcher.fetch_since("watched", None, 20)
        assert len(platform.calls) == 2

    @pytest.mark.asyncio
    async def test_account_not_found_propagates(self, fetcher, platform):
        platform.queue(AccountNotFoundError("gone"))

        with pytest.raises(AccountNotFoundError):
            await fetcher.fetch_since("gone", None, 20)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        PlatformError("boom", status_code=503),
        httpx.ConnectError("refused"),
        RuntimeError("unexpected"),
    ])
    async def test_transient_errors_become_empty(self, fetcher, platform, error):
        platform.queue(error)

        assert await fetcher.fetch_since("watched", None, 20) == []
