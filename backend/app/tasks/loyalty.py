"""
Loyalty Celery Tasks
====================

Periodic points expiry. Run via Celery Beat once a day.
"""

import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(name="expire_loyalty_points")
def expire_loyalty_points():
    """
    Expire overdue EARNED points and warn about points expiring soon.

    Each grant is expired in its own transaction, so a failed run can simply
    be repeated.
    """
    import asyncio
    return asyncio.run(_expire_loyalty_points_async())


async def _expire_loyalty_points_async():
    """Async implementation of the expiry sweep."""
    from dataclasses import asdict

    from app.database import async_session_maker, engine
    from app.services.loyalty_ledger import expire_points
    from app.services.notifications.in_app import get_notification_service

    logger.info("🔄 Starting loyalty points expiry sweep...")
    try:
        summary = await expire_points(async_session_maker, get_notification_service())
        return asdict(summary)
    finally:
        # asyncio.run closes the loop; pooled connections must not outlive it
        await engine.dispose()
