"""
Loyalty Ledger Service
======================

Balance integrity for loyalty points.

Every mutating method runs inside the caller's transaction: it takes the
caller's AsyncSession and never commits. The account row is always read
with SELECT ... FOR UPDATE before it is changed, so concurrent redemptions
and awards on one account are serialized and the balance can never go
negative.

Idempotency is enforced by the (user_id, order_id, action) unique
constraint on the ledger. award/refund/expire first check for an existing
entry, then insert inside a SAVEPOINT; a constraint violation on that
insert is treated as "already applied" and rolls back only the savepoint,
never the enclosing order transaction.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, exists, and_, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.models.base import utcnow
from app.models.loyalty import LoyaltyAccount, PointsLedgerEntry, PointsAction
from app.models.notification import Notification, NotificationType
from app.models.order import Order
from app.services.exceptions import AccountNotFoundError, InsufficientBalanceError, LedgerTimeoutError
from app.services.notifications.base import Notifier, dispatch_notices
from app.services.notifications.templates import (
    expiring_points_link, loyalty_points_notice, points_expiring_notice,
)
from app.services.transactions import ledger_transaction

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    points: int
    balance: int


@dataclass
class AwardResult:
    """Outcome of award/refund. ``applied`` is False on the idempotent no-op path."""
    applied: bool
    points: int = 0
    balance: Optional[int] = None

    @classmethod
    def noop(cls) -> "AwardResult":
        return cls(applied=False)


@dataclass
class ExpireResult:
    applied: bool
    points: int = 0
    deducted: int = 0


@dataclass
class LoyaltySummary:
    user_id: str
    points: int
    history: List[PointsLedgerEntry] = field(default_factory=list)


def compute_points_earned(total: Decimal, pesos_per_point: Optional[int] = None) -> int:
    """floor(total / rate), never negative."""
    rate = pesos_per_point or get_settings().POINTS_PESOS_PER_POINT
    if total is None or total <= 0:
        return 0
    return max(0, math.floor(Decimal(total) / Decimal(rate)))


class LoyaltyLedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Account access
    # ------------------------------------------------------------------

    async def lock_account(self, user_id: str) -> Optional[LoyaltyAccount]:
        result = await self.db.execute(
            select(LoyaltyAccount)
            .where(LoyaltyAccount.user_id == user_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_or_create_account(self, user_id: str) -> LoyaltyAccount:
        """Locked account for user_id, created with a zero balance if missing."""
        account = await self.lock_account(user_id)
        if account is not None:
            return account
        await self.db.flush()
        try:
            async with self.db.begin_nested():
                account = LoyaltyAccount(user_id=user_id, points=0)
                self.db.add(account)
            logger.info(f"Opened loyalty account for user {user_id}")
            return account
        except IntegrityError:
            # A concurrent transaction created it first
            account = await self.lock_account(user_id)
            if account is None:
                raise
            return account

    async def entry_exists(self, user_id: str, order_id: str, action: PointsAction) -> bool:
        result = await self.db.execute(
            select(
                exists().where(
                    PointsLedgerEntry.user_id == user_id,
                    PointsLedgerEntry.order_id == order_id,
                    PointsLedgerEntry.action == action,
                )
            )
        )
        return bool(result.scalar())

    # ------------------------------------------------------------------
    # Mutations (caller's transaction)
    # ------------------------------------------------------------------

    async def redeem(self, user_id: str, points: int, order: Order) -> RedemptionResult:
        """
        Debit ``points`` and record a REDEEMED entry tagged with ``order``.

        ``order`` may still be pending in the session; the entry references
        it through the relationship so the flush inserts the order first.

        Raises:
            AccountNotFoundError: the user has no loyalty account.
            InsufficientBalanceError: balance is lower than ``points``.
        """
        account = await self.lock_account(user_id)
        if account is None:
            logger.warning(f"Redemption of {points} points rejected: no account for user {user_id}")
            raise AccountNotFoundError(user_id)
        if account.points < points:
            logger.warning(
                f"Redemption of {points} points rejected for user {user_id}: balance {account.points}"
            )
            raise InsufficientBalanceError(user_id, available=account.points, requested=points)

        account.points -= points
        entry = PointsLedgerEntry(
            user_id=user_id,
            action=PointsAction.REDEEMED,
            points=points,
        )
        entry.order = order
        self.db.add(entry)
        logger.info(f"Redeemed {points} points for user {user_id} (balance {account.points})")
        return RedemptionResult(points=points, balance=account.points)

    async def award(self, user_id: str, order_id: str, points: int, now: Optional[datetime] = None) -> AwardResult:
        """
        Credit the order's pre-computed points exactly once.

        Returns AwardResult.noop() if an EARNED entry already exists for
        (user_id, order_id), including when a concurrent award wins the race.
        """
        now = now or utcnow()
        expires_at = now + timedelta(days=get_settings().POINTS_EXPIRY_DAYS)
        return await self._credit(user_id, order_id, points, PointsAction.EARNED, expires_at)

    async def refund(self, user_id: str, order_id: str, points: int) -> AwardResult:
        """Return redeemed points for a cancelled order, at most once per order."""
        return await self._credit(user_id, order_id, points, PointsAction.REFUNDED, None)

    async def _credit(
        self,
        user_id: str,
        order_id: str,
        points: int,
        action: PointsAction,
        expires_at: Optional[datetime],
    ) -> AwardResult:
        if points <= 0:
            return AwardResult.noop()

        if await self.entry_exists(user_id, order_id, action):
            logger.info(f"{action.value} entry already exists for order {order_id}; skipping")
            return AwardResult.noop()

        await self.db.flush()
        try:
            async with self.db.begin_nested():
                self.db.add(PointsLedgerEntry(
                    user_id=user_id,
                    order_id=order_id,
                    action=action,
                    points=points,
                    expires_at=expires_at,
                ))
        except IntegrityError:
            logger.info(f"Concurrent {action.value} for order {order_id} detected; skipping")
            return AwardResult.noop()

        account = await self.get_or_create_account(user_id)
        account.points += points
        await self.db.flush()
        logger.info(f"{action.value} {points} points for user {user_id} on order {order_id} (balance {account.points})")
        return AwardResult(applied=True, points=points, balance=account.points)

    async def expire_entry(self, entry_id: str) -> ExpireResult:
        """
        Expire one EARNED grant: deduct min(balance, points) and append an
        EXPIRED entry for the same order. No-op if already expired.
        """
        entry = await self.db.get(PointsLedgerEntry, entry_id)
        if entry is None or entry.action != PointsAction.EARNED or entry.order_id is None:
            return ExpireResult(applied=False)

        if await self.entry_exists(entry.user_id, entry.order_id, PointsAction.EXPIRED):
            return ExpireResult(applied=False)

        account = await self.lock_account(entry.user_id)
        if account is None:
            return ExpireResult(applied=False)

        await self.db.flush()
        try:
            async with self.db.begin_nested():
                self.db.add(PointsLedgerEntry(
                    user_id=entry.user_id,
                    order_id=entry.order_id,
                    action=PointsAction.EXPIRED,
                    points=entry.points,
                ))
        except IntegrityError:
            return ExpireResult(applied=False)

        deducted = min(account.points, entry.points)
        account.points -= deducted
        await self.db.flush()
        return ExpireResult(applied=True, points=entry.points, deducted=deducted)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_summary(self, user_id: str, limit: int = 100) -> LoyaltySummary:
        """Balance and newest-first history. Does not create the account."""
        account = (await self.db.execute(
            select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
        )).scalar_one_or_none()
        if account is None:
            return LoyaltySummary(user_id=user_id, points=0)

        result = await self.db.execute(
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.user_id == user_id)
            .order_by(desc(PointsLedgerEntry.created_at))
            .limit(limit)
        )
        return LoyaltySummary(user_id=user_id, points=account.points, history=list(result.scalars().all()))

    async def find_expired_grants(self, now: datetime) -> List[str]:
        """Ids of EARNED entries past expiry with no EXPIRED entry for the same order."""
        expired = PointsLedgerEntry.__table__.alias("expired")
        result = await self.db.execute(
            select(PointsLedgerEntry.id)
            .where(
                PointsLedgerEntry.action == PointsAction.EARNED,
                PointsLedgerEntry.order_id.is_not(None),
                PointsLedgerEntry.expires_at < now,
                ~exists().where(and_(
                    expired.c.user_id == PointsLedgerEntry.user_id,
                    expired.c.order_id == PointsLedgerEntry.order_id,
                    expired.c.action == PointsAction.EXPIRED.value,
                )),
            )
            .order_by(PointsLedgerEntry.expires_at)
        )
        return list(result.scalars().all())

    async def find_expiring_grants(self, now: datetime, warning_days: int) -> List[PointsLedgerEntry]:
        """EARNED entries that expire within the warning window and are not yet expired."""
        expired = PointsLedgerEntry.__table__.alias("expired")
        result = await self.db.execute(
            select(PointsLedgerEntry)
            .where(
                PointsLedgerEntry.action == PointsAction.EARNED,
                PointsLedgerEntry.order_id.is_not(None),
                PointsLedgerEntry.expires_at >= now,
                PointsLedgerEntry.expires_at < now + timedelta(days=warning_days),
                ~exists().where(and_(
                    expired.c.user_id == PointsLedgerEntry.user_id,
                    expired.c.order_id == PointsLedgerEntry.order_id,
                    expired.c.action == PointsAction.EXPIRED.value,
                )),
            )
        )
        return list(result.scalars().all())


# ----------------------------------------------------------------------
# Expiry sweep
# ----------------------------------------------------------------------

@dataclass
class ExpirySweepResult:
    entries_expired: int = 0
    points_expired: int = 0
    skipped: int = 0
    expiry_backfilled: int = 0
    warnings_sent: int = 0


async def expire_points(
    session_maker: async_sessionmaker,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> ExpirySweepResult:
    """
    Expire overdue EARNED grants, one transaction per grant, then warn
    about grants expiring within POINTS_EXPIRY_WARNING_DAYS.

    Safe to run concurrently: a grant expired by another sweep is counted
    as skipped.
    """
    settings = get_settings()
    now = now or utcnow()
    summary = ExpirySweepResult()

    async with session_maker() as session:
        async with ledger_transaction(session, "backfill_points_expiry"):
            summary.expiry_backfilled = await _backfill_expiry(session, settings.POINTS_EXPIRY_DAYS)
        entry_ids = await LoyaltyLedgerService(session).find_expired_grants(now)

    for entry_id in entry_ids:
        async with session_maker() as session:
            ledger = LoyaltyLedgerService(session)
            try:
                async with ledger_transaction(session, "expire_points"):
                    result = await ledger.expire_entry(entry_id)
                    entry = await session.get(PointsLedgerEntry, entry_id)
            except LedgerTimeoutError:
                logger.warning(f"Expiry of ledger entry {entry_id} timed out; will retry next sweep")
                summary.skipped += 1
                continue

        if not result.applied:
            summary.skipped += 1
            continue

        summary.entries_expired += 1
        summary.points_expired += result.points
        await dispatch_notices(
            notifier,
            [loyalty_points_notice(entry.user_id, result.points, "expired", entry.order_id)],
            settings.NOTIFY_TIMEOUT_SECONDS,
        )

    async with session_maker() as session:
        expiring = await LoyaltyLedgerService(session).find_expiring_grants(now, settings.POINTS_EXPIRY_WARNING_DAYS)
        pending = []
        for entry in expiring:
            already_warned = (await session.execute(
                select(exists().where(
                    Notification.user_id == entry.user_id,
                    Notification.type == NotificationType.POINTS_EXPIRING,
                    Notification.link == expiring_points_link(entry.id),
                ))
            )).scalar()
            if not already_warned:
                pending.append(points_expiring_notice(entry.user_id, entry.points, entry.id))

    summary.warnings_sent = await dispatch_notices(notifier, pending, settings.NOTIFY_TIMEOUT_SECONDS)

    logger.info(
        f"Points expiry sweep: {summary.entries_expired} grants expired "
        f"({summary.points_expired} points), {summary.skipped} skipped, "
        f"{summary.expiry_backfilled} backfilled, {summary.warnings_sent} warnings sent"
    )
    return summary


async def _backfill_expiry(session: AsyncSession, expiry_days: int) -> int:
    """Give EARNED entries written without an expiry one based on their creation time."""
    result = await session.execute(
        select(PointsLedgerEntry).where(
            PointsLedgerEntry.action == PointsAction.EARNED,
            PointsLedgerEntry.expires_at.is_(None),
        )
    )
    entries = result.scalars().all()
    for entry in entries:
        entry.expires_at = entry.created_at + timedelta(days=expiry_days)
    return len(entries)
