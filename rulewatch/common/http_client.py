"""
Shared HTTP Client Configuration.

Provides standardized HTTP client creation for the content platform and
the OpenAI-compatible scoring backends.

Usage:
    from rulewatch.common.http_client import create_platform_client

    async with create_platform_client() as client:
        response = await client.get("/users/by/username/jack")
"""

from typing import Optional

import httpx

from ..config.settings import settings


# Identifies our poller clearly to upstream APIs
USER_AGENT_BOT = "RuleWatch/1.0 (Account Monitor)"


def create_api_client(
    base_url: str = "",
    token: Optional[str] = None,
    timeout: Optional[float] = None,
    connect_timeout: Optional[float] = None,
    max_connections: int = 20,
    max_keepalive: int = 10,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create a standardized async HTTP client for a bearer-token JSON API.

    Args:
        base_url: Prefix for relative request URLs
        token: Bearer token sent in the Authorization header
        timeout: Total request timeout in seconds (default: settings.platform_request_timeout)
        connect_timeout: Connect timeout in seconds (defaults to timeout)
        max_connections: Maximum concurrent connections
        max_keepalive: Maximum keepalive connections
        transport: Custom transport (tests pass httpx.MockTransport)
    """
    headers = {"User-Agent": USER_AGENT_BOT}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    total = timeout or settings.platform_request_timeout
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=httpx.Timeout(total, connect=connect_timeout or total),
        headers=headers,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
        ),
        transport=transport,
    )


def create_platform_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Client for the Twitter API v2, authenticated with the bearer token."""
    return create_api_client(
        base_url=settings.platform_base_url,
        token=settings.twitter_bearer_token,
        timeout=settings.platform_request_timeout,
        transport=transport,
    )
