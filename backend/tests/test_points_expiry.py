"""
Tests for the loyalty points expiry sweep.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from app.models import (
    LoyaltyAccount, Notification, NotificationType, Order, PointsAction, PointsLedgerEntry,
    DeliveryMethod, PaymentMethod,
)
from app.services.loyalty_ledger import expire_points
from app.services.notifications import in_app
from app.services.notifications.in_app import NotificationService

NOW = datetime(2026, 6, 1, 3, 0, 0)


async def _grant(session_maker, user_id, points, created_at, expires_at="default"):
    """An order and its EARNED entry, written as if awarded at ``created_at``."""
    async with session_maker() as session:
        order = Order(
            id=str(uuid.uuid4()),
            user_id=user_id,
            delivery_method=DeliveryMethod.PICKUP,
            payment_method=PaymentMethod.IN_STORE,
            subtotal=Decimal(points * 100),
            total=Decimal(points * 100),
            points_earned=points,
        )
        session.add(order)
        await session.flush()
        entry = PointsLedgerEntry(
            user_id=user_id,
            order_id=order.id,
            action=PointsAction.EARNED,
            points=points,
            created_at=created_at,
            expires_at=created_at + timedelta(days=365) if expires_at == "default" else expires_at,
        )
        session.add(entry)
        await session.commit()
        return entry.id


async def _balance(session_maker, user_id):
    async with session_maker() as session:
        return (await session.execute(
            select(LoyaltyAccount.points).where(LoyaltyAccount.user_id == user_id)
        )).scalar_one()


async def _expired_entries(session_maker):
    async with session_maker() as session:
        result = await session.execute(
            select(PointsLedgerEntry).where(PointsLedgerEntry.action == PointsAction.EXPIRED)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_expires_overdue_grants(session_maker, notifier, make_user):
    user = await make_user(points=12)
    await _grant(session_maker, user.id, 5, NOW - timedelta(days=400))
    await _grant(session_maker, user.id, 7, NOW - timedelta(days=10))

    summary = await expire_points(session_maker, notifier, now=NOW)

    assert summary.entries_expired == 1
    assert summary.points_expired == 5
    assert await _balance(session_maker, user.id) == 7
    [expired] = await _expired_entries(session_maker)
    assert expired.points == 5
    assert notifier.titles_for(user.id) == ["Points Expired"]


@pytest.mark.asyncio
async def test_second_sweep_is_noop(session_maker, notifier, make_user):
    user = await make_user(points=5)
    await _grant(session_maker, user.id, 5, NOW - timedelta(days=400))

    await expire_points(session_maker, notifier, now=NOW)
    summary = await expire_points(session_maker, notifier, now=NOW)

    assert summary.entries_expired == 0
    assert await _balance(session_maker, user.id) == 0
    assert len(await _expired_entries(session_maker)) == 1


@pytest.mark.asyncio
async def test_deduction_never_goes_negative(session_maker, notifier, make_user):
    """Points already spent can't be clawed back below zero."""
    user = await make_user(points=2)
    await _grant(session_maker, user.id, 5, NOW - timedelta(days=400))

    await expire_points(session_maker, notifier, now=NOW)

    assert await _balance(session_maker, user.id) == 0
    [expired] = await _expired_entries(session_maker)
    assert expired.points == 5


@pytest.mark.asyncio
async def test_backfills_missing_expiry(session_maker, notifier, make_user):
    user = await make_user(points=9)
    await _grant(session_maker, user.id, 4, NOW - timedelta(days=500), expires_at=None)
    fresh = await _grant(session_maker, user.id, 5, NOW - timedelta(days=5), expires_at=None)

    summary = await expire_points(session_maker, notifier, now=NOW)

    assert summary.expiry_backfilled == 2
    assert summary.entries_expired == 1
    assert await _balance(session_maker, user.id) == 5
    async with session_maker() as session:
        entry = await session.get(PointsLedgerEntry, fresh)
    assert entry.expires_at == NOW - timedelta(days=5) + timedelta(days=365)


@pytest.mark.asyncio
async def test_warns_once_about_expiring_grants(session_maker, make_user):
    service = NotificationService(session_maker)

    async def _no_publish(channel, payload):
        return None

    service._publish = _no_publish

    user = await make_user(points=6)
    await _grant(session_maker, user.id, 6, NOW - timedelta(days=350))

    first = await expire_points(session_maker, service, now=NOW)
    second = await expire_points(session_maker, service, now=NOW)

    assert first.warnings_sent == 1
    assert second.warnings_sent == 0
    async with session_maker() as session:
        warnings = (await session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user.id,
                Notification.type == NotificationType.POINTS_EXPIRING,
            )
        )).scalar_one()
    assert warnings == 1
    assert await _balance(session_maker, user.id) == 6


@pytest.mark.asyncio
async def test_deleted_warning_is_not_resent(session_maker, make_user):
    service = NotificationService(session_maker)

    async def _no_publish(channel, payload):
        return None

    service._publish = _no_publish

    user = await make_user(points=6)
    await _grant(session_maker, user.id, 6, NOW - timedelta(days=350))

    await expire_points(session_maker, service, now=NOW)
    async with session_maker() as session:
        assert await in_app.delete_all(session, user.id) == 1

    again = await expire_points(session_maker, service, now=NOW)

    assert again.warnings_sent == 0
    async with session_maker() as session:
        assert await in_app.list_notifications(session, user.id) == []


@pytest.mark.asyncio
async def test_grants_outside_warning_window_are_left_alone(session_maker, notifier, make_user):
    user = await make_user(points=3)
    await _grant(session_maker, user.id, 3, NOW - timedelta(days=100))

    summary = await expire_points(session_maker, notifier, now=NOW)

    assert summary.entries_expired == 0
    assert summary.warnings_sent == 0
    assert notifier.sent == []
