"""
Notification model - the persisted in-app inbox behind the real-time push.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, ForeignKey, Index, Text, Boolean, DateTime, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDMixin, CreatedAtMixin


class NotificationType(str, Enum):
    ORDER_STATUS = "ORDER_STATUS"
    NEW_ORDER = "NEW_ORDER"
    PAYMENT_VERIFICATION = "PAYMENT_VERIFICATION"
    LOYALTY_POINTS = "LOYALTY_POINTS"
    POINTS_EXPIRING = "POINTS_EXPIRING"


class Notification(Base, UUIDMixin, CreatedAtMixin):
    """A message delivered to one user."""
    __tablename__ = "notifications"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType, native_enum=False, length=32), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[Optional[str]] = mapped_column(String(512))
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Hidden from the inbox but kept, so one-time warnings stay de-duplicated
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "read"),
        Index("idx_notification_user_created", "user_id", "created_at"),
    )
