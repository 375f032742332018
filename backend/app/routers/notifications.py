"""
Notifications API Router.

The persisted inbox plus a Server-Sent Events stream that relays the
Redis broadcast for the current user.
"""

import asyncio
import json
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from app.auth_middleware import CurrentUser, get_current_user
from app.database import get_db
from app.models.notification import NotificationType
from app.redis import get_async_redis_client
from app.services.notifications import in_app

router = APIRouter()


class NotificationResponse(BaseModel):
    id: str
    type: NotificationType
    title: str
    message: str
    link: Optional[str]
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's notifications, newest first."""
    items = await in_app.list_notifications(db, user.id, unread_only=unread_only, limit=limit, offset=offset)
    unread = await in_app.count_unread(db, user.id)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in items],
        unread_count=unread,
    )


@router.post("/read-all")
async def mark_all_read(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await in_app.mark_all_read(db, user.id)
    return {"status": "ok", "updated": updated}


class BatchActionRequest(BaseModel):
    action: Literal["markAsRead", "delete"]
    notification_ids: List[str] = Field(min_length=1)


@router.post("/batch-action")
async def batch_action(
    body: BatchActionRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark read or delete several notifications. Ids that aren't the caller's are skipped."""
    if body.action == "delete":
        count = await in_app.delete_notifications(db, user.id, body.notification_ids)
    else:
        count = await in_app.mark_many_read(db, user.id, body.notification_ids)
    return {"status": "ok", "action": body.action, "count": count}


@router.delete("/delete-all")
async def delete_all(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    deleted = await in_app.delete_all(db, user.id)
    return {"status": "ok", "deleted": deleted}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark one notification read."""
    if not await in_app.mark_read(db, user.id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "ok", "id": notification_id}


@router.get("/stream")
async def stream_notifications(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
):
    """
    Server-Sent Events endpoint for real-time notifications.
    The client refetches the inbox on every "notification" event.
    """
    async def event_generator():
        redis = get_async_redis_client()
        pubsub = redis.pubsub()
        channel = in_app.notification_channel(user.id)
        await pubsub.subscribe(channel)

        try:
            yield {
                "event": "connected",
                "data": json.dumps({"status": "live", "user_id": user.id})
            }

            while True:
                if await request.is_disconnected():
                    break

                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message:
                    yield {
                        "event": "notification",
                        "data": message["data"]
                    }

                await asyncio.sleep(0.1)
        finally:
            await pubsub.unsubscribe(channel)
            await redis.aclose()

    return EventSourceResponse(event_generator())
