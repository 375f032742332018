"""
Tests for notification delivery, the persisted inbox and message copy.
"""

import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select, func

from app.models import Notification, NotificationType, OrderStatus, PaymentStatus
from app.services.notifications import Notice, Notifier, dispatch_notices
from app.services.notifications import in_app, templates


def _notice(user_id="user-1", title="Hello"):
    return Notice(user_id=user_id, kind=NotificationType.ORDER_STATUS, title=title, message="...")


class TestDispatchNotices:

    @pytest.mark.asyncio
    async def test_delivers_in_order(self, notifier):
        delivered = await dispatch_notices(notifier, [_notice(title="a"), _notice(title="b")], timeout=1)

        assert delivered == 2
        assert [n.title for n in notifier.sent] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_slow_notifier_is_cut_off(self):
        class SlowNotifier(Notifier):
            async def notify(self, user_id, kind, title, message, link=None):
                await asyncio.sleep(5)

        delivered = await dispatch_notices(SlowNotifier(), [_notice()], timeout=0.05)

        assert delivered == 0

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_rest(self):
        calls = []

        class FlakyNotifier(Notifier):
            async def notify(self, user_id, kind, title, message, link=None):
                calls.append(title)
                if title == "a":
                    raise RuntimeError("boom")

        delivered = await dispatch_notices(FlakyNotifier(), [_notice(title="a"), _notice(title="b")], timeout=1)

        assert delivered == 1
        assert calls == ["a", "b"]


@pytest.fixture
def mock_async_redis():
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    redis.aclose = AsyncMock()
    with patch("app.services.notifications.in_app.get_async_redis_client", return_value=redis):
        yield redis


class TestNotificationService:

    @pytest.mark.asyncio
    async def test_persists_then_publishes(self, session_maker, customer, mock_async_redis):
        service = in_app.NotificationService(session_maker, redis_url="redis://test")

        await service.notify(customer.id, NotificationType.ORDER_STATUS, "Order Received", "Thanks!", "/orders/1")

        async with session_maker() as session:
            stored = (await session.execute(select(Notification))).scalar_one()
        assert stored.user_id == customer.id
        assert stored.read is False

        channel, payload = mock_async_redis.publish.call_args.args
        assert channel == f"notifications:{customer.id}"
        assert json.loads(payload)["id"] == stored.id
        assert datetime.fromisoformat(json.loads(payload)["timestamp"]).tzinfo is None
        mock_async_redis.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_failure_keeps_the_row(self, session_maker, customer, mock_async_redis):
        mock_async_redis.publish.side_effect = RedisConnectionError("down")
        service = in_app.NotificationService(session_maker, redis_url="redis://test")

        await service.notify(customer.id, NotificationType.NEW_ORDER, "New Order Received", "...")

        assert mock_async_redis.publish.await_count == 3  # retried
        async with session_maker() as session:
            assert (await session.execute(select(Notification))).scalar_one().title == "New Order Received"


class TestInbox:

    async def _seed(self, session_maker, user_id, count):
        async with session_maker() as session:
            for i in range(count):
                session.add(Notification(
                    user_id=user_id, type=NotificationType.ORDER_STATUS, title=f"n{i}", message="..."
                ))
            await session.commit()

    @pytest.mark.asyncio
    async def test_mark_read(self, session_maker, customer, other_customer):
        await self._seed(session_maker, customer.id, 3)

        async with session_maker() as session:
            first = (await in_app.list_notifications(session, customer.id))[0]

        async with session_maker() as session:
            assert not await in_app.mark_read(session, other_customer.id, first.id)
        async with session_maker() as session:
            assert await in_app.mark_read(session, customer.id, first.id)
        async with session_maker() as session:
            assert await in_app.count_unread(session, customer.id) == 2
        async with session_maker() as session:
            assert await in_app.mark_all_read(session, customer.id) == 2
        async with session_maker() as session:
            assert await in_app.list_notifications(session, customer.id, unread_only=True) == []

    @pytest.mark.asyncio
    async def test_inbox_over_http(self, session_maker, app_client, customer):
        await self._seed(session_maker, customer.id, 2)

        async with app_client(customer) as client:
            listing = (await client.get("/api/notifications")).json()
            read_all = (await client.post("/api/notifications/read-all")).json()
            missing = await client.post("/api/notifications/does-not-exist/read")

        assert listing["unread_count"] == 2
        assert len(listing["notifications"]) == 2
        assert read_all["updated"] == 2
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_deleted_notifications_leave_the_inbox(self, session_maker, customer, other_customer):
        await self._seed(session_maker, customer.id, 3)
        await self._seed(session_maker, other_customer.id, 1)

        async with session_maker() as session:
            first, *rest = await in_app.list_notifications(session, customer.id)
            theirs = (await in_app.list_notifications(session, other_customer.id))[0]

        async with session_maker() as session:
            assert await in_app.delete_notifications(session, customer.id, [first.id, theirs.id]) == 1
        async with session_maker() as session:
            assert {n.id for n in await in_app.list_notifications(session, customer.id)} == {n.id for n in rest}
            assert await in_app.count_unread(session, customer.id) == 2
            assert not await in_app.mark_read(session, customer.id, first.id)
            assert len(await in_app.list_notifications(session, other_customer.id)) == 1

        async with session_maker() as session:
            assert await in_app.delete_all(session, customer.id) == 2
        async with session_maker() as session:
            assert await in_app.list_notifications(session, customer.id) == []
            # Rows are kept for de-duplication
            stored = (await session.execute(
                select(func.count(Notification.id)).where(Notification.user_id == customer.id)
            )).scalar_one()
        assert stored == 3

    @pytest.mark.asyncio
    async def test_batch_action_over_http(self, session_maker, app_client, customer):
        await self._seed(session_maker, customer.id, 3)
        async with session_maker() as session:
            ids = [n.id for n in await in_app.list_notifications(session, customer.id)]

        async with app_client(customer) as client:
            marked = (await client.post(
                "/api/notifications/batch-action",
                json={"action": "markAsRead", "notification_ids": ids[:2]},
            )).json()
            deleted = (await client.post(
                "/api/notifications/batch-action",
                json={"action": "delete", "notification_ids": [ids[0], "not-mine"]},
            )).json()
            bad_action = await client.post(
                "/api/notifications/batch-action", json={"action": "archive", "notification_ids": ids}
            )
            empty = await client.post(
                "/api/notifications/batch-action", json={"action": "delete", "notification_ids": []}
            )
            listing = (await client.get("/api/notifications")).json()
            cleared = (await client.delete("/api/notifications/delete-all")).json()
            after = (await client.get("/api/notifications")).json()

        assert marked == {"status": "ok", "action": "markAsRead", "count": 2}
        assert deleted["count"] == 1
        assert bad_action.status_code == 422
        assert empty.status_code == 422
        assert {n["id"] for n in listing["notifications"]} == set(ids[1:])
        assert listing["unread_count"] == 1
        assert cleared["deleted"] == 2
        assert after == {"notifications": [], "unread_count": 0}

    @pytest.mark.asyncio
    async def test_rejects_negative_paging(self, app_client, customer):
        async with app_client(customer) as client:
            negative = await client.get("/api/notifications", params={"offset": -1})
            zero = await client.get("/api/notifications", params={"limit": 0})

        assert negative.status_code == 422
        assert zero.status_code == 422


class TestTemplates:

    def test_status_copy_uses_short_reference(self):
        order_id = "3f2a9c1e-0000-4000-8000-000000000000"
        notice = templates.order_status_notice("user-1", order_id, OrderStatus.OUT_FOR_DELIVERY)

        assert notice.title == "Order Out for Delivery"
        assert "#3f2a9c1e " in notice.message
        assert notice.link == f"/orders/{order_id}"

    def test_payment_rejection_falls_back_to_generic_reason(self):
        notice = templates.payment_status_notice("user-1", "abcdefgh-1", PaymentStatus.REJECTED)

        assert notice.title == "Payment Rejected"
        assert notice.message.endswith("Please check your payment details and try again.")

    def test_expiring_notice_links_to_entry(self):
        notice = templates.points_expiring_notice("user-1", 12, "entry-9")

        assert notice.kind == NotificationType.POINTS_EXPIRING
        assert notice.link == "/profile?points_entry=entry-9"
