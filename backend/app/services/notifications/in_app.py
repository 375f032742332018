"""
In-app notifications.

Every notice is stored as a Notification row (the user's inbox) and then
broadcast on the Redis channel ``notifications:{user_id}`` so connected
clients can refresh without polling.
"""

import json
import logging
from typing import List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from sqlalchemy import select, update, func, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from app.config import get_settings
from app.redis import get_async_redis_client
from app.models.base import utcnow
from app.models.notification import Notification, NotificationType
from app.services.notifications.base import Notifier

logger = logging.getLogger(__name__)


def notification_channel(user_id: str) -> str:
    return f"notifications:{user_id}"


class NotificationService(Notifier):
    """
    Persists then broadcasts.

    Uses its own session so a notification is never part of the order
    transaction that triggered it.
    """

    def __init__(self, session_maker: async_sessionmaker, redis_url: Optional[str] = None):
        self.session_maker = session_maker
        self.redis_url = redis_url or get_settings().REDIS_URL

    async def notify(
        self,
        user_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> None:
        async with self.session_maker() as session:
            notification = Notification(
                user_id=user_id,
                type=NotificationType(kind),
                title=title,
                message=message,
                link=link,
            )
            session.add(notification)
            await session.commit()
            notification_id = notification.id

        payload = json.dumps({
            "id": notification_id,
            "type": NotificationType(kind).value,
            "title": title,
            "message": message,
            "link": link,
            "timestamp": utcnow().isoformat(),
        })
        try:
            await self._publish(notification_channel(user_id), payload)
            logger.info(f"📣 Broadcasted {NotificationType(kind).value} to {user_id}")
        except Exception as e:
            # The row is already stored; the client picks it up on next fetch
            logger.error(f"Failed to broadcast notification {notification_id}: {e}")

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        stop=stop_after_attempt(3),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _publish(self, channel: str, payload: str) -> None:
        redis = get_async_redis_client(self.redis_url)
        try:
            await redis.publish(channel, payload)
        finally:
            await redis.aclose()


def _visible(user_id: str):
    """The user's inbox: their rows that haven't been deleted."""
    return (Notification.user_id == user_id, Notification.deleted_at.is_(None))


async def list_notifications(
    db: AsyncSession,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> List[Notification]:
    query = select(Notification).where(*_visible(user_id))
    if unread_only:
        query = query.where(Notification.read.is_(False))
    query = query.order_by(desc(Notification.created_at)).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_unread(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.count(Notification.id)).where(
            *_visible(user_id),
            Notification.read.is_(False),
        )
    )
    return result.scalar_one()


async def mark_read(db: AsyncSession, user_id: str, notification_id: str) -> bool:
    """Mark one of the user's notifications read. False if it isn't theirs or doesn't exist."""
    return await mark_many_read(db, user_id, [notification_id]) > 0


async def mark_many_read(db: AsyncSession, user_id: str, notification_ids: List[str]) -> int:
    """Mark the given notifications read. Ids that aren't the user's are ignored."""
    result = await db.execute(
        update(Notification)
        .where(*_visible(user_id), Notification.id.in_(notification_ids))
        .values(read=True)
    )
    await db.commit()
    return result.rowcount


async def mark_all_read(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        update(Notification)
        .where(*_visible(user_id), Notification.read.is_(False))
        .values(read=True)
    )
    await db.commit()
    return result.rowcount


async def delete_notifications(db: AsyncSession, user_id: str, notification_ids: List[str]) -> int:
    """
    Remove notifications from the user's inbox. Ids that aren't the user's are ignored.

    Rows are kept with ``deleted_at`` set: the points expiry sweep looks
    them up to avoid warning about the same grant twice.
    """
    result = await db.execute(
        update(Notification)
        .where(*_visible(user_id), Notification.id.in_(notification_ids))
        .values(deleted_at=utcnow())
    )
    await db.commit()
    return result.rowcount


async def delete_all(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        update(Notification)
        .where(*_visible(user_id))
        .values(deleted_at=utcnow())
    )
    await db.commit()
    logger.info(f"Cleared {result.rowcount} notifications for {user_id}")
    return result.rowcount


_notification_service = None


def get_notification_service() -> NotificationService:
    """Get or create the process-wide notification service."""
    global _notification_service
    if _notification_service is None:
        from app.database import async_session_maker
        _notification_service = NotificationService(async_session_maker)
    return _notification_service
