from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.site_enums import UserRole
from app.data.dbinit import get_db
from app.data.user import User
from app.model.subscription import PlanSummary, SubscriptionDetail
from app.service.subscription import get_subscription_details, list_plans
from app.service.user import require_role

router = APIRouter()


@router.get("/plans", response_model=List[PlanSummary])
async def get_plans(db: AsyncSession = Depends(get_db)):
    """Active plans, cheapest first."""
    return await list_plans(db)


@router.get("/me", response_model=SubscriptionDetail)
async def get_my_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.OWNER)),
):
    return await get_subscription_details(db, current_user.user_id)
