"""Ledger store connection management."""

from typing import Optional

import redis.asyncio as redis

from rebalancer.config import get_settings

# Global client
_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create the store client."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.redis_connect_timeout,
            retry_on_timeout=True,
        )
    return _client


async def close_redis() -> None:
    """Close the store connection."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
