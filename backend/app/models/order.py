"""
Order models - orders, immutable line items, and the status audit trail.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, DateTime, Numeric, ForeignKey, Index, Integer, Text,
    CheckConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin, utcnow


class OrderStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PREPARING = "PREPARING"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class DeliveryMethod(str, Enum):
    DELIVERY = "DELIVERY"
    PICKUP = "PICKUP"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    IN_STORE = "IN_STORE"
    GCASH = "GCASH"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class Size(str, Enum):
    SIXTEEN_OZ = "SIXTEEN_OZ"
    TWENTY_TWO_OZ = "TWENTY_TWO_OZ"


class Temperature(str, Enum):
    HOT = "HOT"
    ICED = "ICED"


def _enum_column(enum_cls, length: int = 32):
    return SAEnum(enum_cls, native_enum=False, length=length, validate_strings=True)


class Order(Base, UUIDMixin, TimestampMixin):
    """
    One customer purchase.

    Status only moves through the order state machine. Once COMPLETED or
    CANCELLED, status and point columns are frozen.
    """
    __tablename__ = "orders"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus), default=OrderStatus.RECEIVED, nullable=False
    )
    delivery_method: Mapped[DeliveryMethod] = mapped_column(_enum_column(DeliveryMethod), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(_enum_column(PaymentMethod), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), default=PaymentStatus.VERIFIED, nullable=False
    )
    payment_proof_ref: Mapped[Optional[str]] = mapped_column(String(512))

    # Money (snapshotted at checkout, never re-priced)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Loyalty
    points_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Fulfilment contact
    delivery_address: Mapped[Optional[str]] = mapped_column(Text)
    contact_number: Mapped[Optional[str]] = mapped_column(String(50))

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", order_by="OrderItem.position"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("points_used >= 0", name="ck_order_points_used_non_negative"),
        CheckConstraint("points_earned >= 0", name="ck_order_points_earned_non_negative"),
        Index("idx_order_user_created", "user_id", "created_at"),
        Index("idx_order_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def record_status(self, status: OrderStatus) -> "OrderStatusHistory":
        """
        Set the status and stamp completion/cancellation time.

        Returns the history row for the caller to add to the same session.
        The order must already have its primary key (flushed).
        """
        now = utcnow()
        self.status = status
        if status == OrderStatus.COMPLETED:
            self.completed_at = now
        elif status == OrderStatus.CANCELLED:
            self.cancelled_at = now
        return OrderStatusHistory(order_id=self.id, status=status, created_at=now)


class OrderItem(Base, UUIDMixin, CreatedAtMixin):
    """A line item. Prices are copied from the catalog at checkout and never change."""
    __tablename__ = "order_items"

    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    product_name: Mapped[Optional[str]] = mapped_column(String(255))
    size: Mapped[Size] = mapped_column(_enum_column(Size), nullable=False)
    temperature: Mapped[Temperature] = mapped_column(_enum_column(Temperature), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Relationships
    order: Mapped["Order"] = relationship("Order", back_populates="items")
    addons: Mapped[List["OrderItemAddon"]] = relationship(
        "OrderItemAddon",
        back_populates="order_item",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_orderitem_quantity_positive"),
        Index("idx_orderitem_order", "order_id"),
    )

    @property
    def line_total(self) -> Decimal:
        addon_total = sum((a.price for a in self.addons), Decimal("0.00"))
        return (self.unit_price + addon_total) * self.quantity


class OrderItemAddon(Base, UUIDMixin):
    """Price snapshot of an addon attached to a line item."""
    __tablename__ = "order_item_addons"

    order_item_id: Mapped[str] = mapped_column(ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False)
    addon_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order_item: Mapped["OrderItem"] = relationship("OrderItem", back_populates="addons")


class OrderStatusHistory(Base):
    """Append-only record of every status an order has entered, including RECEIVED."""
    __tablename__ = "order_status_history"

    # Integer key so insertion order doubles as chronological order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(_enum_column(OrderStatus), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")

    __table_args__ = (
        Index("idx_status_history_order", "order_id"),
    )
