from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.payment import get_payment_service
from app.common.exception import AccessDenied, RecordNotFoundException
from app.common.site_enums import UserRole
from app.config.config import Settings, get_settings
from app.data.dbinit import get_db
from app.data.user import User, get_user
from app.model.user import OwnerRegister, RegistrationResponse, User as UserSchema
from app.service.payment import PaymentService
from app.service.subscription import start_trial
from app.service.user import get_current_user, register_owner, require_role

router = APIRouter()


@router.post("/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: OwnerRegister,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """
    Register a restaurant owner. Paid plans come back with a checkout URL;
    the account is activated once the payment is confirmed.
    """
    owner, sub_status, checkout_url = await register_owner(db, settings, payment_service, payload)
    return RegistrationResponse(
        user=UserSchema.model_validate(owner),
        subscription_status=sub_status,
        checkout_url=checkout_url,
    )


@router.get("/me", response_model=UserSchema)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/{user_id}/activate", response_model=UserSchema)
async def activate_owner(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    current_user: User = Depends(require_role(UserRole.ADMIN)),
):
    """Admin activation of an owner account; opens the free trial."""
    owner = await get_user(db, user_id)
    if owner is None:
        raise RecordNotFoundException("User not found", context={"user_id": str(user_id)})
    if UserRole(owner.role) != UserRole.OWNER:
        raise AccessDenied(current_user.user_id, reason="Only owner accounts start a trial")

    await start_trial(db, settings, owner.user_id)
    await db.commit()
    await db.refresh(owner)
    return owner
