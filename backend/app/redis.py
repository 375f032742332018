# app/redis.py
"""
Redis Client Setup.

Two clients: a synchronous one for the idempotency cache and an asyncio one
for publishing notifications.
"""

import redis
from redis import asyncio as aioredis

from app.config import get_settings


def get_redis_client():
    """Returns a synchronous Redis client."""
    return redis.from_url(get_settings().REDIS_URL, decode_responses=True)


def get_async_redis_client(url: str = None):
    """Returns an asyncio Redis client. Close it with ``await client.aclose()``."""
    return aioredis.from_url(url or get_settings().REDIS_URL, decode_responses=True)
