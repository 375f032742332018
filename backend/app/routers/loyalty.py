"""
Loyalty API Router.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_middleware import CurrentUser, get_current_user
from app.database import get_db
from app.models.loyalty import PointsAction
from app.services.loyalty_ledger import LoyaltyLedgerService

router = APIRouter()


class LedgerEntryResponse(BaseModel):
    id: str
    action: PointsAction
    points: int
    order_id: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class LoyaltySummaryResponse(BaseModel):
    points: int
    history: List[LedgerEntryResponse]


@router.get("", response_model=LoyaltySummaryResponse)
async def get_loyalty_points(
    limit: int = Query(100, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current balance and points history, newest first."""
    summary = await LoyaltyLedgerService(db).get_summary(user.id, limit=limit)
    return LoyaltySummaryResponse(
        points=summary.points,
        history=[LedgerEntryResponse.model_validate(e) for e in summary.history],
    )
