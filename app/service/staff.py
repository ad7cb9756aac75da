from __future__ import annotations

from typing import List
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.exception import AccessDenied
from app.common.messaging import NotificationSink, notify
from app.common.passwd import generate_password, get_password_hash
from app.common.site_enums import GatedResource, NotificationType, UserRole
from app.data.user import User, create_user, list_staff_by_owner
from app.model.restaurant import StaffCreate
from app.service.restaurant import load_restaurant_for_actor
from app.service.tier_gate import TierGate

logger = structlog.get_logger()


async def create_staff(
    db: AsyncSession,
    sink: NotificationSink,
    actor: User,
    restaurant_id: UUID,
    payload: StaffCreate,
) -> User:
    """
    Create a staff account bound to one restaurant of the owner. The account
    gets a generated password which is sent out in the welcome notification.
    """
    if UserRole(actor.role) == UserRole.STAFF:
        raise AccessDenied(actor.user_id, reason="Staff cannot create staff accounts")

    restaurant = await load_restaurant_for_actor(db, restaurant_id, actor)
    await TierGate(db).check(actor, GatedResource.STAFF, restaurant.restaurant_id)

    password = generate_password()
    staff = await create_user(
        db,
        email=payload.email,
        hashed_password=get_password_hash(password),
        full_name=payload.full_name,
        role=UserRole.STAFF,
        owner_id=restaurant.owner_id,
        restaurant_id=restaurant.restaurant_id,
        phone=payload.phone,
        is_active=True,
    )
    await db.commit()
    logger.info(f"Staff {staff.user_id} created for restaurant {restaurant.restaurant_id}")

    await notify(
        sink,
        NotificationType.STAFF_WELCOME,
        {
            "email": staff.email,
            "name": staff.full_name,
            "restaurant_name": restaurant.name,
            "temporary_password": password,
        },
    )
    return staff


async def list_staff(db: AsyncSession, actor: User) -> List[User]:
    if UserRole(actor.role) != UserRole.OWNER:
        raise AccessDenied(actor.user_id, reason="Only owners can list their staff")
    return await list_staff_by_owner(db, actor.user_id)
