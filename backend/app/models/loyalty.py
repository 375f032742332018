"""
Loyalty models - per-user point balance and the append-only points ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime, ForeignKey, Index, Integer,
    CheckConstraint, UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin


class PointsAction(str, Enum):
    EARNED = "EARNED"
    REDEEMED = "REDEEMED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class LoyaltyAccount(Base, UUIDMixin, TimestampMixin):
    """
    One row per user holding the spendable balance.
    Mutated only under SELECT ... FOR UPDATE in the same transaction as the
    order write it belongs to.
    """
    __tablename__ = "loyalty_accounts"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_loyalty_points_non_negative"),
    )


class PointsLedgerEntry(Base, UUIDMixin, CreatedAtMixin):
    """
    Append-only record of a balance change.

    (user_id, order_id, action) is unique: an order can be redeemed against,
    awarded, refunded and expired at most once each. A violation of this
    constraint is how concurrent duplicates are detected.
    """
    __tablename__ = "points_ledger_entries"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[PointsAction] = mapped_column(
        SAEnum(PointsAction, native_enum=False, length=20, validate_strings=True), nullable=False
    )
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)  # EARNED only

    # Lets a redemption reference an order inserted in the same flush
    order: Mapped[Optional["Order"]] = relationship("Order")

    __table_args__ = (
        UniqueConstraint("user_id", "order_id", "action", name="uq_points_ledger_user_order_action"),
        CheckConstraint("points > 0", name="ck_points_ledger_points_positive"),
        Index("idx_points_ledger_user_created", "user_id", "created_at"),
        Index("idx_points_ledger_action_expiry", "action", "expires_at"),
        Index("idx_points_ledger_order", "order_id"),
    )
