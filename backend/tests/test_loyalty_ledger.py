"""
Tests for the loyalty ledger: redemption, exactly-once award and refund.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, func

from app.models import (
    LoyaltyAccount, PointsLedgerEntry, PointsAction, Order,
    OrderStatus, DeliveryMethod, PaymentMethod, PaymentStatus,
)
from app.services.exceptions import AccountNotFoundError, InsufficientBalanceError
from app.services.loyalty_ledger import LoyaltyLedgerService, compute_points_earned


def _order(user_id: str, **overrides) -> Order:
    values = dict(
        id=str(uuid.uuid4()),
        user_id=user_id,
        status=OrderStatus.RECEIVED,
        delivery_method=DeliveryMethod.PICKUP,
        payment_method=PaymentMethod.IN_STORE,
        payment_status=PaymentStatus.VERIFIED,
        subtotal=Decimal("300.00"),
        delivery_fee=Decimal("0.00"),
        total=Decimal("300.00"),
        points_used=0,
        points_earned=3,
    )
    values.update(overrides)
    return Order(**values)


async def _persist_order(session_maker, user_id: str, **overrides) -> str:
    async with session_maker() as session:
        order = _order(user_id, **overrides)
        session.add(order)
        await session.commit()
        return order.id


async def _balance(session_maker, user_id: str):
    async with session_maker() as session:
        result = await session.execute(select(LoyaltyAccount.points).where(LoyaltyAccount.user_id == user_id))
        return result.scalar_one_or_none()


async def _entry_count(session_maker, user_id: str, action: PointsAction) -> int:
    async with session_maker() as session:
        result = await session.execute(
            select(func.count(PointsLedgerEntry.id)).where(
                PointsLedgerEntry.user_id == user_id,
                PointsLedgerEntry.action == action,
            )
        )
        return result.scalar_one()


class TestComputePointsEarned:

    @pytest.mark.parametrize("total,expected", [
        (Decimal("550.00"), 5),
        (Decimal("99.99"), 0),
        (Decimal("100.00"), 1),
        (Decimal("0"), 0),
        (Decimal("-20"), 0),
    ])
    def test_floor_of_total_over_rate(self, total, expected):
        assert compute_points_earned(total) == expected

    def test_custom_rate(self):
        assert compute_points_earned(Decimal("550.00"), pesos_per_point=50) == 11


class TestRedeem:

    @pytest.mark.asyncio
    async def test_redeem_debits_and_records_entry(self, session_maker, make_user):
        user = await make_user(points=50)

        async with session_maker() as session:
            ledger = LoyaltyLedgerService(session)
            order = _order(user.id, points_used=20)
            session.add(order)
            result = await ledger.redeem(user.id, 20, order)
            await session.commit()

        assert result.points == 20
        assert result.balance == 30
        assert await _balance(session_maker, user.id) == 30
        assert await _entry_count(session_maker, user.id, PointsAction.REDEEMED) == 1

    @pytest.mark.asyncio
    async def test_redeem_without_account_fails(self, session_maker, customer):
        async with session_maker() as session:
            ledger = LoyaltyLedgerService(session)
            with pytest.raises(AccountNotFoundError):
                await ledger.redeem(customer.id, 5, _order(customer.id))

    @pytest.mark.asyncio
    async def test_redeem_more_than_balance_fails(self, session_maker, make_user):
        user = await make_user(points=10)

        async with session_maker() as session:
            ledger = LoyaltyLedgerService(session)
            with pytest.raises(InsufficientBalanceError) as exc_info:
                await ledger.redeem(user.id, 20, _order(user.id))
            await session.rollback()

        assert exc_info.value.details == {"user_id": user.id, "available": 10, "requested": 20}
        assert await _balance(session_maker, user.id) == 10


class TestAward:

    @pytest.mark.asyncio
    async def test_award_creates_account_lazily(self, session_maker, customer):
        order_id = await _persist_order(session_maker, customer.id)

        async with session_maker() as session:
            result = await LoyaltyLedgerService(session).award(customer.id, order_id, 3)
            await session.commit()

        assert result.applied
        assert result.balance == 3
        assert await _balance(session_maker, customer.id) == 3

    @pytest.mark.asyncio
    async def test_award_sets_expiry(self, session_maker, customer):
        order_id = await _persist_order(session_maker, customer.id)

        async with session_maker() as session:
            await LoyaltyLedgerService(session).award(customer.id, order_id, 3)
            await session.commit()

        async with session_maker() as session:
            entry = (await session.execute(
                select(PointsLedgerEntry).where(PointsLedgerEntry.action == PointsAction.EARNED)
            )).scalar_one()
        assert entry.expires_at is not None
        assert (entry.expires_at - entry.created_at).days in (364, 365)

    @pytest.mark.asyncio
    async def test_second_award_is_noop(self, session_maker, make_user):
        user = await make_user(points=0)
        order_id = await _persist_order(session_maker, user.id)

        for _ in range(2):
            async with session_maker() as session:
                result = await LoyaltyLedgerService(session).award(user.id, order_id, 3)
                await session.commit()

        assert not result.applied
        assert await _balance(session_maker, user.id) == 3
        assert await _entry_count(session_maker, user.id, PointsAction.EARNED) == 1

    @pytest.mark.asyncio
    async def test_unique_constraint_is_the_noop_signal(self, session_maker, make_user):
        """Even if the existence check misses a concurrent award, the constraint catches it."""
        user = await make_user(points=0)
        order_id = await _persist_order(session_maker, user.id)

        async with session_maker() as session:
            await LoyaltyLedgerService(session).award(user.id, order_id, 3)
            await session.commit()

        async with session_maker() as session:
            ledger = LoyaltyLedgerService(session)
            with patch.object(ledger, "entry_exists", AsyncMock(return_value=False)):
                result = await ledger.award(user.id, order_id, 3)
            # The enclosing transaction survives the failed savepoint
            await session.commit()

        assert not result.applied
        assert await _balance(session_maker, user.id) == 3
        assert await _entry_count(session_maker, user.id, PointsAction.EARNED) == 1

    @pytest.mark.asyncio
    async def test_zero_points_is_noop(self, session_maker, customer):
        order_id = await _persist_order(session_maker, customer.id, points_earned=0)

        async with session_maker() as session:
            result = await LoyaltyLedgerService(session).award(customer.id, order_id, 0)

        assert not result.applied
        assert await _balance(session_maker, customer.id) is None


class TestRefund:

    @pytest.mark.asyncio
    async def test_refund_once(self, session_maker, make_user):
        user = await make_user(points=5)
        order_id = await _persist_order(session_maker, user.id, points_used=10)

        results = []
        for _ in range(2):
            async with session_maker() as session:
                results.append(await LoyaltyLedgerService(session).refund(user.id, order_id, 10))
                await session.commit()

        assert [r.applied for r in results] == [True, False]
        assert await _balance(session_maker, user.id) == 15
        assert await _entry_count(session_maker, user.id, PointsAction.REFUNDED) == 1


class TestSummary:

    @pytest.mark.asyncio
    async def test_missing_account_reads_as_zero_without_creating(self, session_maker, customer):
        async with session_maker() as session:
            summary = await LoyaltyLedgerService(session).get_summary(customer.id)

        assert summary.points == 0
        assert summary.history == []
        assert await _balance(session_maker, customer.id) is None

    @pytest.mark.asyncio
    async def test_history_newest_first(self, session_maker, make_user):
        user = await make_user(points=0)
        first = await _persist_order(session_maker, user.id)
        second = await _persist_order(session_maker, user.id)

        for order_id in (first, second):
            async with session_maker() as session:
                await LoyaltyLedgerService(session).award(user.id, order_id, 3)
                await session.commit()

        async with session_maker() as session:
            summary = await LoyaltyLedgerService(session).get_summary(user.id)

        assert summary.points == 6
        assert [e.order_id for e in summary.history] == [second, first]
