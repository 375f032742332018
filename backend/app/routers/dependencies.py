"""
Router Dependencies
====================

Shared FastAPI dependencies for the order routers.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.services.notifications.base import Notifier
from app.services.notifications.in_app import get_notification_service
from app.services.order_lifecycle import OrderLifecycleService


def get_notifier() -> Notifier:
    """Persisted inbox + Redis broadcast. Overridden in tests."""
    return get_notification_service()


async def get_lifecycle_service(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> OrderLifecycleService:
    return OrderLifecycleService(db, notifier)
