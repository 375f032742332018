"""
Order Lifecycle Service
=======================

Orchestrates every order mutation:

    validate input -> lock the order -> consult the state machine
        -> write order + history + ledger in ONE transaction -> commit
        -> notify (best-effort, outside the transaction)

Notices are collected while the transaction is open and dispatched only
after commit, so a slow or failing notifier can never hold a lock or
undo a committed order.

Usage:
    service = OrderLifecycleService(db, notifier)
    created = await service.create_order(user, CreateOrderInput(...))
    await service.transition_order(created.order_id, OrderStatus.PREPARING, actor=admin)
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select, delete, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import get_settings
from app.models.audit import AuditLog
from app.models.loyalty import PointsLedgerEntry
from app.models.order import (
    Order, OrderItem, OrderItemAddon, OrderStatusHistory,
    OrderStatus, DeliveryMethod, PaymentMethod, PaymentStatus, Size, Temperature,
)
from app.models.user import User, UserRole, ADMIN_ROLES
from app.services.exceptions import (
    OrderValidationError,
    MissingPaymentProofError,
    OrderNotFoundError,
    OrderTerminalError,
    OrderInUseError,
    OrderAccessDeniedError,
    IllegalTransitionError,
    PaymentStatusError,
)
from app.services.loyalty_ledger import LoyaltyLedgerService, AwardResult, compute_points_earned
from app.services.notifications.base import Notice, Notifier, dispatch_notices
from app.services.notifications import templates
from app.services.order_state_machine import ensure_transition_legal, next_allowed_statuses
from app.services.transactions import ledger_transaction

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass
class AddonInput:
    addon_id: str
    name: str
    price: Decimal


@dataclass
class OrderItemInput:
    """A line item as priced by the catalog. Prices are trusted as given."""
    product_id: str
    quantity: int
    size: str
    temperature: str
    unit_price: Decimal
    product_name: Optional[str] = None
    addons: List[AddonInput] = field(default_factory=list)


@dataclass
class CreateOrderInput:
    items: List[OrderItemInput]
    subtotal: Decimal
    payment_method: str
    delivery_method: str
    delivery_fee: Decimal = Decimal("0")
    delivery_address: Optional[str] = None
    contact_number: Optional[str] = None
    points_to_redeem: int = 0
    payment_proof_ref: Optional[str] = None


@dataclass
class _ValidatedItem:
    source: OrderItemInput
    size: Size
    temperature: Temperature


@dataclass
class _ValidatedOrder:
    delivery_method: DeliveryMethod
    payment_method: PaymentMethod
    items: List[_ValidatedItem]


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

@dataclass
class CreateOrderResult:
    order_id: str
    points_earned: int
    points_used: int
    total: Decimal


@dataclass
class OrderDetail:
    order: Order
    status_history: List[OrderStatusHistory]
    allowed_next_statuses: List[OrderStatus]


@dataclass
class TransitionOutcome:
    previous_status: OrderStatus
    status: OrderStatus
    award: Optional[AwardResult] = None
    refund: Optional[AwardResult] = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_SIZE_ALIASES = {
    "SIXTEEN_OZ": Size.SIXTEEN_OZ,
    "16OZ": Size.SIXTEEN_OZ,
    "16 OZ": Size.SIXTEEN_OZ,
    "TWENTY_TWO_OZ": Size.TWENTY_TWO_OZ,
    "22OZ": Size.TWENTY_TWO_OZ,
    "22 OZ": Size.TWENTY_TWO_OZ,
}


def normalize_size(value) -> Optional[Size]:
    if isinstance(value, Size):
        return value
    if not isinstance(value, str):
        return None
    return _SIZE_ALIASES.get(value.strip().upper())


def normalize_temperature(value) -> Optional[Temperature]:
    if isinstance(value, Temperature):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Temperature(value.strip().upper())
    except ValueError:
        return None


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        return None


def _is_negative(value) -> bool:
    try:
        return Decimal(value) < 0
    except (InvalidOperation, TypeError, ValueError):
        return True


def validate_order_input(data: CreateOrderInput) -> _ValidatedOrder:
    """Reject malformed input before any transaction is opened."""
    errors = []

    delivery_method = _parse_enum(DeliveryMethod, data.delivery_method)
    if delivery_method is None:
        errors.append(f"delivery_method must be one of {[m.value for m in DeliveryMethod]}")

    payment_method = _parse_enum(PaymentMethod, data.payment_method)
    if payment_method is None:
        errors.append(f"payment_method must be one of {[m.value for m in PaymentMethod]}")

    if not data.items:
        errors.append("Order must contain at least one item")

    if _is_negative(data.subtotal):
        errors.append("subtotal must be >= 0")
    if _is_negative(data.delivery_fee):
        errors.append("delivery_fee must be >= 0")
    if data.points_to_redeem is None or data.points_to_redeem < 0:
        errors.append("points_to_redeem must be >= 0")

    if delivery_method == DeliveryMethod.DELIVERY:
        if not (data.delivery_address or "").strip():
            errors.append("delivery_address is required for delivery orders")
        if not (data.contact_number or "").strip():
            errors.append("contact_number is required for delivery orders")

    items = []
    for index, item in enumerate(data.items or []):
        prefix = f"items[{index}]"
        if not item.product_id:
            errors.append(f"{prefix}.product_id is required")
        if item.quantity is None or item.quantity < 1:
            errors.append(f"{prefix}.quantity must be >= 1")
        if _is_negative(item.unit_price):
            errors.append(f"{prefix}.unit_price must be >= 0")
        for addon_index, addon in enumerate(item.addons):
            if _is_negative(addon.price):
                errors.append(f"{prefix}.addons[{addon_index}].price must be >= 0")

        size = normalize_size(item.size)
        if size is None:
            errors.append(f"{prefix}.size must be SIXTEEN_OZ or TWENTY_TWO_OZ")
        temperature = normalize_temperature(item.temperature)
        if temperature is None:
            errors.append(f"{prefix}.temperature must be HOT or ICED")
        items.append(_ValidatedItem(source=item, size=size, temperature=temperature))

    if errors:
        logger.warning(f"Order rejected by validation: {errors}")
        raise OrderValidationError(errors)

    return _ValidatedOrder(delivery_method=delivery_method, payment_method=payment_method, items=items)


def requires_payment_proof(payment_method: PaymentMethod) -> bool:
    return PaymentMethod(payment_method).value in get_settings().PROOF_REQUIRED_PAYMENT_METHODS


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class OrderLifecycleService:
    """
    All lifecycle operations for one request.

    ``db`` is the request's session; every mutating operation commits it.
    """

    def __init__(self, db: AsyncSession, notifier: Notifier):
        self.db = db
        self.notifier = notifier
        self.ledger = LoyaltyLedgerService(db)
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_order(self, user, data: CreateOrderInput) -> CreateOrderResult:
        """
        Create an order with its items, initial history and any point
        redemption in a single transaction.
        """
        validated = validate_order_input(data)

        proof_required = requires_payment_proof(validated.payment_method)
        if proof_required and not (data.payment_proof_ref or "").strip():
            logger.warning(f"Order from {user.id} rejected: no payment proof for {validated.payment_method.value}")
            raise MissingPaymentProofError(validated.payment_method.value)

        subtotal = Decimal(data.subtotal)
        delivery_fee = Decimal(data.delivery_fee or 0)
        # Redemption value is already netted into the subtotal by the caller
        total = subtotal + delivery_fee
        points_earned = compute_points_earned(total)
        points_used = data.points_to_redeem

        order = Order(
            id=str(uuid4()),
            user_id=user.id,
            status=OrderStatus.RECEIVED,
            delivery_method=validated.delivery_method,
            payment_method=validated.payment_method,
            payment_status=PaymentStatus.PENDING if proof_required else PaymentStatus.VERIFIED,
            payment_proof_ref=data.payment_proof_ref,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=total,
            points_used=points_used,
            points_earned=points_earned,
            delivery_address=data.delivery_address,
            contact_number=data.contact_number,
        )

        async with ledger_transaction(self.db, "create_order"):
            await self._sync_user(user)
            self.db.add(order)
            if points_used > 0:
                await self.ledger.redeem(user.id, points_used, order)
            await self.db.flush()

            self.db.add(order.record_status(OrderStatus.RECEIVED))
            for position, item in enumerate(validated.items):
                line = OrderItem(
                    order_id=order.id,
                    position=position,
                    product_id=item.source.product_id,
                    product_name=item.source.product_name,
                    size=item.size,
                    temperature=item.temperature,
                    quantity=item.source.quantity,
                    unit_price=Decimal(item.source.unit_price),
                )
                line.addons = [
                    OrderItemAddon(addon_id=addon.addon_id, name=addon.name, price=Decimal(addon.price))
                    for addon in item.source.addons
                ]
                self.db.add(line)

            admin_ids = await self._admin_ids()
            customer_name = getattr(user, "name", None) or await self._user_name(user.id)

        logger.info(
            f"Order {order.id} created for {user.id}: total {total}, "
            f"{points_used} points used, {points_earned} points pending"
        )

        notices = [templates.new_order_notice(admin_id, order.id, customer_name) for admin_id in admin_ids]
        notices.append(templates.order_status_notice(user.id, order.id, OrderStatus.RECEIVED))
        if proof_required:
            notices.extend(
                templates.payment_verification_notice(admin_id, order.id, customer_name, validated.payment_method.value)
                for admin_id in admin_ids
            )
        if points_used > 0:
            notices.append(templates.loyalty_points_notice(user.id, points_used, "redeemed", order.id))
        await self._dispatch(notices)

        return CreateOrderResult(
            order_id=order.id,
            points_earned=points_earned,
            points_used=points_used,
            total=total,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition_order(self, order_id: str, requested_status, actor=None) -> Order:
        """Move an order one step through the state machine (admin operation)."""
        requested = self._parse_status(requested_status)
        admin_ids = []

        async with ledger_transaction(self.db, "transition_order"):
            await self._sync_user(actor)
            order = await self._lock_order(order_id)
            self._ensure_mutable(order, order_id)
            ensure_transition_legal(order.status, requested, order.delivery_method)

            outcome = await self._apply_transition(order, requested)
            if requested == OrderStatus.CANCELLED and actor is not None and actor.is_admin:
                self._audit(actor, "cancel_order", order, {"previous_status": outcome.previous_status.value})
                admin_ids = await self._admin_ids()

        logger.info(f"Order {order.id}: {outcome.previous_status.value} -> {outcome.status.value}")

        notices = self._transition_notices(order, outcome)
        if admin_ids:
            notices.extend(self._admin_cancel_notices(order, actor, admin_ids))
        await self._dispatch(notices)
        return order

    async def cancel_order(self, order_id: str, actor) -> Order:
        """
        Cancel on behalf of the owner (only while RECEIVED) or an admin
        (from any non-terminal state). Redeemed points are refunded when
        REFUND_POINTS_ON_CANCEL is set.
        """
        admin_ids = []

        async with ledger_transaction(self.db, "cancel_order"):
            await self._sync_user(actor)
            order = await self._lock_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.user_id != actor.id and not actor.is_admin:
                raise OrderAccessDeniedError(order_id)
            self._ensure_mutable(order, order_id)

            if not actor.is_admin and order.status != OrderStatus.RECEIVED:
                raise IllegalTransitionError(
                    current_status=order.status.value,
                    requested_status=OrderStatus.CANCELLED.value,
                    allowed_next=[],
                    delivery_method=order.delivery_method.value,
                )
            ensure_transition_legal(order.status, OrderStatus.CANCELLED, order.delivery_method)

            outcome = await self._apply_transition(order, OrderStatus.CANCELLED)
            if actor.is_admin:
                self._audit(actor, "cancel_order", order, {"previous_status": outcome.previous_status.value})
                admin_ids = await self._admin_ids()

        logger.info(f"Order {order.id} cancelled by {actor.id} (was {outcome.previous_status.value})")

        notices = self._transition_notices(order, outcome)
        if admin_ids:
            notices.extend(self._admin_cancel_notices(order, actor, admin_ids))
        await self._dispatch(notices)
        return order

    async def confirm_receipt(self, order_id: str, actor) -> Order:
        """The owner confirms they received the order. Same as completing it."""
        async with ledger_transaction(self.db, "confirm_receipt"):
            await self._sync_user(actor)
            order = await self._lock_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.user_id != actor.id:
                raise OrderAccessDeniedError(order_id)
            self._ensure_mutable(order, order_id)
            ensure_transition_legal(order.status, OrderStatus.COMPLETED, order.delivery_method)

            outcome = await self._apply_transition(order, OrderStatus.COMPLETED)

        logger.info(f"Order {order.id} receipt confirmed by {actor.id}")
        await self._dispatch(self._transition_notices(order, outcome))
        return order

    async def update_payment_status(self, order_id: str, payment_status, actor, reason: Optional[str] = None) -> Order:
        """Admin verdict on an out-of-band payment: VERIFIED or REJECTED."""
        status = _parse_enum(PaymentStatus, payment_status)
        if status not in (PaymentStatus.VERIFIED, PaymentStatus.REJECTED):
            raise OrderValidationError(["status must be VERIFIED or REJECTED"])

        async with ledger_transaction(self.db, "update_payment_status"):
            await self._sync_user(actor)
            order = await self._lock_order(order_id)
            self._ensure_mutable(order, order_id)

            if not requires_payment_proof(order.payment_method):
                raise PaymentStatusError(
                    f"{order.payment_method.value} payments do not require verification",
                    {"order_id": order_id, "payment_method": order.payment_method.value},
                )
            if order.payment_status != PaymentStatus.PENDING:
                raise PaymentStatusError(
                    f"Payment has already been {order.payment_status.value.lower()}",
                    {"order_id": order_id, "payment_status": order.payment_status.value},
                )

            previous = order.payment_status
            order.payment_status = status
            self._audit(actor, "update_payment_status", order, {
                "previous": previous.value,
                "new": status.value,
                "reason": reason,
            })

        logger.info(f"Payment for order {order.id} marked {status.value} by {actor.id}")
        await self._dispatch([templates.payment_status_notice(order.user_id, order.id, status, reason)])
        return order

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_order(self, order_id: str, actor) -> None:
        """Hard delete, only for orders with no items and no ledger entries."""
        async with ledger_transaction(self.db, "delete_order"):
            await self._sync_user(actor)
            order = await self._lock_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            item_count = await self._count(OrderItem.id, OrderItem.order_id == order_id)
            ledger_count = await self._count(PointsLedgerEntry.id, PointsLedgerEntry.order_id == order_id)
            if item_count or ledger_count:
                raise OrderInUseError(order_id, item_count, ledger_count)

            self._audit(actor, "delete_order", order, {
                "status": order.status.value,
                "user_id": order.user_id,
                "total": str(order.total),
            })
            await self.db.flush()
            try:
                async with self.db.begin_nested():
                    await self.db.execute(delete(Order).where(Order.id == order_id))
            except IntegrityError:
                raise OrderInUseError(order_id, item_count, ledger_count)

        logger.info(f"Order {order_id} deleted by {actor.id}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str, actor=None) -> OrderDetail:
        """Order with items, history and the statuses it can move to next."""
        result = await self.db.execute(
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.status_history))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        if actor is not None and not actor.is_admin and order.user_id != actor.id:
            raise OrderAccessDeniedError(order_id)

        allowed = next_allowed_statuses(order.status, order.delivery_method)
        return OrderDetail(
            order=order,
            status_history=list(order.status_history),
            allowed_next_statuses=sorted(allowed, key=lambda s: s.value),
        )

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status=None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        """Newest first. ``user_id`` None lists every order (admin view)."""
        query = select(Order).options(selectinload(Order.items))
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        if status is not None:
            query = query.where(Order.status == self._parse_status(status))
        query = query.order_by(desc(Order.created_at)).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _lock_order(self, order_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _ensure_mutable(self, order: Optional[Order], order_id: str) -> None:
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.is_terminal:
            raise OrderTerminalError(order_id, order.status.value)

    async def _apply_transition(self, order: Order, requested: OrderStatus) -> TransitionOutcome:
        """Status, history and ledger effects of an already-validated transition."""
        outcome = TransitionOutcome(previous_status=order.status, status=requested)
        self.db.add(order.record_status(requested))

        if requested == OrderStatus.COMPLETED and order.points_earned > 0:
            outcome.award = await self.ledger.award(order.user_id, order.id, order.points_earned)
        elif (
            requested == OrderStatus.CANCELLED
            and self.settings.REFUND_POINTS_ON_CANCEL
            and order.points_used > 0
        ):
            outcome.refund = await self.ledger.refund(order.user_id, order.id, order.points_used)
        return outcome

    def _transition_notices(self, order: Order, outcome: TransitionOutcome) -> List[Notice]:
        notices = [templates.order_status_notice(order.user_id, order.id, outcome.status)]
        if outcome.award is not None and outcome.award.applied:
            notices.append(templates.loyalty_points_notice(order.user_id, outcome.award.points, "earned", order.id))
        if outcome.refund is not None and outcome.refund.applied:
            notices.append(templates.loyalty_points_notice(order.user_id, outcome.refund.points, "refunded", order.id))
        return notices

    def _admin_cancel_notices(self, order: Order, actor, admin_ids: List[str]) -> List[Notice]:
        cancelled_by = getattr(actor, "name", None)
        return [
            templates.admin_cancellation_notice(admin_id, order.id, cancelled_by)
            for admin_id in admin_ids
            if admin_id != actor.id
        ]

    def _audit(self, actor, action: str, order: Order, metadata: dict) -> None:
        self.db.add(AuditLog(
            actor_id=getattr(actor, "id", None),
            actor_type="human" if actor is not None else "system",
            action=action,
            entity_type="Order",
            entity_id=order.id,
            metadata_json=metadata,
        ))

    async def _sync_user(self, actor) -> None:
        """
        Keep the local User row in step with the caller's token.

        Accounts are issued by the auth service, so the first order or admin
        action from a user is what creates their row here. Orders reference
        it, and admin fan-out reads roles from it.
        """
        if actor is None:
            return
        role = getattr(actor, "role", None) or UserRole.CUSTOMER
        name = getattr(actor, "name", None)

        user = await self.db.get(User, actor.id)
        if user is None:
            await self.db.flush()
            try:
                async with self.db.begin_nested():
                    self.db.add(User(id=actor.id, name=name, role=role))
                logger.info(f"Recorded {role.value} {actor.id} from auth token")
            except IntegrityError:
                # A concurrent request recorded the same user first
                pass
            return

        if user.role != role:
            logger.info(f"User {actor.id} role changed {user.role.value} -> {role.value}")
            user.role = role
        if name and user.name != name:
            user.name = name

    async def _admin_ids(self) -> List[str]:
        result = await self.db.execute(select(User.id).where(User.role.in_(ADMIN_ROLES)))
        return list(result.scalars().all())

    async def _user_name(self, user_id: str) -> Optional[str]:
        result = await self.db.execute(select(User.name).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _count(self, column, condition) -> int:
        result = await self.db.execute(select(func.count(column)).where(condition))
        return result.scalar_one()

    def _parse_status(self, value) -> OrderStatus:
        status = _parse_enum(OrderStatus, value)
        if status is None:
            raise OrderValidationError([f"status must be one of {[s.value for s in OrderStatus]}"])
        return status

    async def _dispatch(self, notices: List[Notice]) -> None:
        await dispatch_notices(self.notifier, notices, self.settings.NOTIFY_TIMEOUT_SECONDS)
