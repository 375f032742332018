"""
SQLAlchemy Models for the Order Lifecycle backend.

This package is organized by domain:
- base.py: Base class and mixins
- user.py: Storefront accounts and roles
- order.py: Orders, line items, addon snapshots, and status history
- loyalty.py: Loyalty balances and the points ledger
- notification.py: In-app notifications
- audit.py: Audit logging for admin actions

All models are re-exported from this module.
"""

# Base
from app.models.base import Base, UUIDMixin, TimestampMixin, CreatedAtMixin, utcnow

# Accounts
from app.models.user import User, UserRole, ADMIN_ROLES

# Orders
from app.models.order import (
    Order,
    OrderItem,
    OrderItemAddon,
    OrderStatusHistory,
    OrderStatus,
    DeliveryMethod,
    PaymentMethod,
    PaymentStatus,
    Size,
    Temperature,
)

# Loyalty
from app.models.loyalty import LoyaltyAccount, PointsLedgerEntry, PointsAction

# Notifications
from app.models.notification import Notification, NotificationType

# Audit
from app.models.audit import AuditLog


__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "CreatedAtMixin",
    "utcnow",

    # Accounts
    "User",
    "UserRole",
    "ADMIN_ROLES",

    # Orders
    "Order",
    "OrderItem",
    "OrderItemAddon",
    "OrderStatusHistory",
    "OrderStatus",
    "DeliveryMethod",
    "PaymentMethod",
    "PaymentStatus",
    "Size",
    "Temperature",

    # Loyalty
    "LoyaltyAccount",
    "PointsLedgerEntry",
    "PointsAction",

    # Notifications
    "Notification",
    "NotificationType",

    # Audit
    "AuditLog",
]
