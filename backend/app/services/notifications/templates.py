"""
Notification copy for order and loyalty events.
"""

from typing import Optional

from app.config import get_settings
from app.models.notification import NotificationType
from app.models.order import OrderStatus, PaymentStatus
from app.services.notifications.base import Notice


_STATUS_COPY = {
    OrderStatus.RECEIVED: (
        "Order Received",
        "Your order #{ref} has been successfully received. We'll begin preparing it shortly.",
    ),
    OrderStatus.PREPARING: ("Order Being Prepared", "Your order #{ref} is now being prepared."),
    OrderStatus.OUT_FOR_DELIVERY: ("Order Out for Delivery", "Your order #{ref} is on its way to you!"),
    OrderStatus.READY_FOR_PICKUP: ("Order Ready for Pickup", "Your order #{ref} is ready for pickup."),
    OrderStatus.COMPLETED: ("Order Completed", "Your order #{ref} has been completed. We hope you enjoyed it!"),
    OrderStatus.CANCELLED: ("Order Cancelled", "Your order #{ref} has been cancelled."),
}


def order_ref(order_id: str) -> str:
    return order_id[: get_settings().ORDER_ID_DISPLAY_LENGTH]


def order_status_notice(user_id: str, order_id: str, status: OrderStatus) -> Notice:
    title, template = _STATUS_COPY.get(
        OrderStatus(status), ("Order Update", "Your order #{ref} has been updated.")
    )
    return Notice(
        user_id=user_id,
        kind=NotificationType.ORDER_STATUS,
        title=title,
        message=template.format(ref=order_ref(order_id)),
        link=f"/orders/{order_id}",
    )


def new_order_notice(admin_id: str, order_id: str, customer_name: Optional[str]) -> Notice:
    return Notice(
        user_id=admin_id,
        kind=NotificationType.NEW_ORDER,
        title="New Order Received",
        message=f"New order #{order_ref(order_id)} received from {customer_name or 'a customer'}.",
        link=f"/admin/orders/{order_id}",
    )


def payment_verification_notice(admin_id: str, order_id: str, customer_name: Optional[str], payment_method: str) -> Notice:
    return Notice(
        user_id=admin_id,
        kind=NotificationType.PAYMENT_VERIFICATION,
        title=f"{payment_method} Payment Verification Needed",
        message=(
            f"New {payment_method} payment from {customer_name or 'a customer'} "
            f"for order #{order_ref(order_id)} needs verification."
        ),
        link=f"/admin/orders/{order_id}",
    )


def payment_status_notice(user_id: str, order_id: str, status: PaymentStatus, reason: Optional[str] = None) -> Notice:
    ref = order_ref(order_id)
    if status == PaymentStatus.VERIFIED:
        title = "Payment Verified"
        message = f"Your payment for order #{ref} has been verified. Your order is now being processed."
    else:
        title = "Payment Rejected"
        message = (
            f"Your payment for order #{ref} has been rejected. "
            f"{reason or 'Please check your payment details and try again.'}"
        )
    return Notice(
        user_id=user_id,
        kind=NotificationType.PAYMENT_VERIFICATION,
        title=title,
        message=message,
        link=f"/orders/{order_id}",
    )


def admin_cancellation_notice(admin_id: str, order_id: str, cancelled_by: Optional[str]) -> Notice:
    return Notice(
        user_id=admin_id,
        kind=NotificationType.ORDER_STATUS,
        title="Order Cancelled by Admin",
        message=f"Order #{order_ref(order_id)} has been cancelled by {cancelled_by or 'an admin'}.",
        link=f"/admin/orders/{order_id}",
    )


def loyalty_points_notice(user_id: str, points: int, action: str, order_id: Optional[str] = None) -> Notice:
    """action is one of: earned, redeemed, expired, refunded."""
    link = f"/orders/{order_id}" if order_id else "/profile"
    if action == "earned":
        title = "Points Earned"
        message = f"You earned {points} loyalty points{' from your order' if order_id else ''}."
    elif action == "redeemed":
        title = "Points Redeemed"
        message = f"You redeemed {points} loyalty points{' for your order' if order_id else ''}."
    elif action == "expired":
        title = "Points Expired"
        message = f"{points} of your loyalty points have expired."
        link = "/profile"
    elif action == "refunded":
        title = "Points Refunded"
        message = f"{points} loyalty points have been refunded to your account due to order cancellation."
    else:
        title = "Loyalty Points Update"
        message = "Your loyalty points have been updated."
    return Notice(user_id=user_id, kind=NotificationType.LOYALTY_POINTS, title=title, message=message, link=link)


def points_expiring_notice(user_id: str, points: int, entry_id: str) -> Notice:
    # The link carries the ledger entry id so each expiring grant is warned about once
    return Notice(
        user_id=user_id,
        kind=NotificationType.POINTS_EXPIRING,
        title="Points Expiring Soon",
        message=f"{points} loyalty points will expire soon. Use them before they're gone!",
        link=expiring_points_link(entry_id),
    )


def expiring_points_link(entry_id: str) -> str:
    return f"/profile?points_entry={entry_id}"
