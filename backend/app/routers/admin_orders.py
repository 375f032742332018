"""
Admin Orders API Router.

Status progression, payment verification and cleanup for store staff.
Every route requires an ADMIN or SUPER_ADMIN token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel

from app.auth_middleware import CurrentUser, require_admin
from app.routers.dependencies import get_lifecycle_service
from app.routers.orders import OrderDetailResponse, OrderListResponse, OrderResponse
from app.services.order_lifecycle import OrderLifecycleService

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    status: str


class PaymentStatusUpdateRequest(BaseModel):
    status: str
    reason: Optional[str] = None


@router.get("", response_model=OrderListResponse)
async def list_all_orders(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    admin: CurrentUser = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """List every order, newest first, optionally filtered by status."""
    orders = await service.list_orders(status=status, limit=limit, offset=offset)
    return OrderListResponse(orders=[OrderResponse.model_validate(o) for o in orders])


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    detail = await service.get_order(order_id, actor=admin)
    return OrderDetailResponse.from_detail(detail)


@router.patch("/{order_id}", response_model=OrderDetailResponse)
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    admin: CurrentUser = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """
    Move the order to its next status.

    Illegal moves return 409 with the current status and the legal next
    statuses so the dashboard can offer only valid actions.
    """
    await service.transition_order(order_id, body.status, actor=admin)
    return OrderDetailResponse.from_detail(await service.get_order(order_id, actor=admin))


@router.patch("/{order_id}/payment-status", response_model=OrderDetailResponse)
async def update_payment_status(
    order_id: str,
    body: PaymentStatusUpdateRequest,
    admin: CurrentUser = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """Verify or reject a payment that needs proof."""
    await service.update_payment_status(order_id, body.status, admin, reason=body.reason)
    return OrderDetailResponse.from_detail(await service.get_order(order_id, actor=admin))


@router.delete("/{order_id}", status_code=204)
async def delete_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_lifecycle_service),
):
    """Hard delete. Only orders with no items or ledger entries can be removed."""
    await service.delete_order(order_id, admin)
    return Response(status_code=204)
