"""
Orders API Router.

Customer-facing order placement, tracking, cancellation and receipt
confirmation. Lifecycle errors propagate as OrderingError and are turned
into structured JSON by the handler in main.py.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.auth_middleware import CurrentUser, get_current_user
from app.middleware.idempotency import IdempotencyMiddleware, get_idempotency_middleware
from app.models.order import (
    OrderStatus, DeliveryMethod, PaymentMethod, PaymentStatus, Size, Temperature,
)
from app.routers.dependencies import get_lifecycle_service
from app.services.order_lifecycle import (
    AddonInput,
    CreateOrderInput,
    OrderDetail,
    OrderItemInput,
    OrderLifecycleService,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class AddonRequest(BaseModel):
    addon_id: str
    name: str
    price: Decimal


class OrderItemRequest(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    quantity: int
    size: str
    temperature: str
    unit_price: Decimal
    addons: List[AddonRequest] = Field(default_factory=list)


class CreateOrderRequest(BaseModel):
    """Checkout payload. Prices come from the catalog and are trusted as given."""
    items: List[OrderItemRequest]
    subtotal: Decimal
    delivery_fee: Decimal = Decimal("0")
    payment_method: str
    delivery_method: str
    delivery_address: Optional[str] = None
    contact_number: Optional[str] = None
    points_to_redeem: int = 0
    payment_proof_ref: Optional[str] = None

    def to_input(self) -> CreateOrderInput:
        return CreateOrderInput(
            items=[
                OrderItemInput(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    size=item.size,
                    temperature=item.temperature,
                    unit_price=item.unit_price,
                    addons=[AddonInput(addon_id=a.addon_id, name=a.name, price=a.price) for a in item.addons],
                )
                for item in self.items
            ],
            subtotal=self.subtotal,
            delivery_fee=self.delivery_fee,
            payment_method=self.payment_method,
            delivery_method=self.delivery_method,
            delivery_address=self.delivery_address,
            contact_number=self.contact_number,
            points_to_redeem=self.points_to_redeem,
            payment_proof_ref=self.payment_proof_ref,
        )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class CreateOrderResponse(BaseModel):
    order_id: str
    points_earned: int
    points_used: int
    total: Decimal


class OrderItemAddonResponse(BaseModel):
    addon_id: str
    name: str
    price: Decimal

    class Config:
        from_attributes = True


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    product_name: Optional[str]
    size: Size
    temperature: Temperature
    quantity: int
    unit_price: Decimal
    addons: List[OrderItemAddonResponse] = []

    class Config:
        from_attributes = True


class StatusHistoryResponse(BaseModel):
    status: OrderStatus
    created_at: datetime

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response model for orders."""
    id: str
    user_id: str
    status: OrderStatus
    delivery_method: DeliveryMethod
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal
    points_used: int
    points_earned: int
    delivery_address: Optional[str]
    contact_number: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class OrderDetailResponse(BaseModel):
    order: OrderResponse
    status_history: List[StatusHistoryResponse]
    allowed_next_statuses: List[str]

    @classmethod
    def from_detail(cls, detail: OrderDetail) -> "OrderDetailResponse":
        return cls(
            order=OrderResponse.model_validate(detail.order),
            status_history=[StatusHistoryResponse.model_validate(h) for h in detail.status_history],
            allowed_next_statuses=[s.value for s in detail.allowed_next_statuses],
        )


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("", status_code=201, response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    idempotency: IdempotencyMiddleware = Depends(get_idempotency_middleware),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """
    Place an order.

    Supports optional Idempotency-Key header to prevent duplicate orders.
    If provided, a repeated request with the same key returns the first result.
    """
    async def _create_internal():
        result = await service.create_order(user, body.to_input())
        return CreateOrderResponse(
            order_id=result.order_id,
            points_earned=result.points_earned,
            points_used=result.points_used,
            total=result.total,
        ).model_dump(mode="json")

    return await idempotency.ensure_idempotent(idempotency_key, user.id, "/api/orders", _create_internal)


@router.get("", response_model=OrderListResponse)
async def list_my_orders(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """List the caller's orders, newest first."""
    orders = await service.list_orders(user_id=user.id, status=status, limit=limit, offset=offset)
    return OrderListResponse(orders=[OrderResponse.model_validate(o) for o in orders])


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """Order with history and the statuses it can legally move to next."""
    detail = await service.get_order(order_id, actor=user)
    return OrderDetailResponse.from_detail(detail)


@router.post("/{order_id}/cancel", response_model=OrderDetailResponse)
async def cancel_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """Cancel an order. Customers can only cancel orders that are still RECEIVED."""
    await service.cancel_order(order_id, user)
    return OrderDetailResponse.from_detail(await service.get_order(order_id, actor=user))


@router.post("/{order_id}/confirm", response_model=OrderDetailResponse)
async def confirm_receipt(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """Confirm receipt of an order that is out for delivery or ready for pickup."""
    await service.confirm_receipt(order_id, user)
    return OrderDetailResponse.from_detail(await service.get_order(order_id, actor=user))
