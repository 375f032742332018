# backend/app/middleware/idempotency.py
"""
Idempotency Middleware for order placement.

Prevents duplicate orders from clients that double-submit checkout.
Uses Redis to store the created-order response with a 24-hour TTL.

Usage:
    @router.post("")
    async def create_order(
        body: CreateOrderRequest,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        ...
    ):
        return await idempotency.ensure_idempotent(
            idempotency_key,
            user.id,
            "/api/orders",
            create_internal,
        )
"""

import json
import hashlib
import logging
from datetime import timedelta
from typing import Callable, Any, Optional

from app.redis import get_redis_client
from app.services.exceptions import IdempotencyConflictError

logger = logging.getLogger(__name__)

# Placeholder stored while the first request for a key is running
IN_FLIGHT = "__in_flight__"


class IdempotencyMiddleware:
    """
    Redis-backed idempotency for order placement.

    Features:
    - Caches successful results by idempotency key
    - 24-hour TTL for cached results
    - Per-user + endpoint scoping
    - Requests without a key run normally
    - A duplicate arriving while the first is still running gets a 409
    """

    TTL_HOURS = 24
    IN_FLIGHT_TTL_SECONDS = 60  # a crashed request releases its key after this

    def __init__(self, redis_client=None):
        self.redis = redis_client if redis_client is not None else get_redis_client()

    async def ensure_idempotent(
        self,
        key: Optional[str],
        user_id: str,
        endpoint: str,
        handler: Callable,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute handler with idempotency protection.

        Args:
            key: Client-provided idempotency key (UUID recommended). None skips caching.
            user_id: User making the request
            endpoint: API endpoint being called
            handler: Async function returning a JSON-serializable result
            *args, **kwargs: Arguments for handler

        Returns:
            Result from handler (or cached result if duplicate)
        """
        if not key:
            return await handler(*args, **kwargs)

        cache_key = self._build_cache_key(key, user_id, endpoint)

        # Reserve the key before running, so a concurrent duplicate can't slip past
        reserved = self.redis.set(cache_key, IN_FLIGHT, nx=True, ex=self.IN_FLIGHT_TTL_SECONDS)
        if not reserved:
            cached_result = self.redis.get(cache_key)
            if cached_result and cached_result != IN_FLIGHT:
                logger.info(f"Idempotency cache hit for key {key[:8]}... - returning cached result")
                return json.loads(cached_result)
            logger.warning(f"Idempotency key {key[:8]}... for {endpoint} is still in flight")
            raise IdempotencyConflictError(key)

        try:
            result = await handler(*args, **kwargs)
        except Exception as e:
            # Don't cache errors - release the key so the client can retry
            self.redis.delete(cache_key)
            logger.warning(f"Idempotent handler for {endpoint} failed, not caching: {e}")
            raise

        self.redis.setex(
            cache_key,
            int(timedelta(hours=self.TTL_HOURS).total_seconds()),
            json.dumps(result, default=str)
        )
        logger.debug(f"Idempotency cached result for key {key[:8]}...")
        return result

    def _build_cache_key(self, key: str, user_id: str, endpoint: str) -> str:
        """
        Build unique Redis key for this operation.

        Format: idempotency:{user_id}:{endpoint_hash}:{key}
        """
        endpoint_hash = hashlib.sha256(endpoint.encode()).hexdigest()[:8]
        return f"idempotency:{user_id}:{endpoint_hash}:{key}"


# Singleton instance
_idempotency_middleware = None


def get_idempotency_middleware() -> IdempotencyMiddleware:
    """Get or create the idempotency middleware singleton."""
    global _idempotency_middleware
    if _idempotency_middleware is None:
        _idempotency_middleware = IdempotencyMiddleware()
    return _idempotency_middleware
