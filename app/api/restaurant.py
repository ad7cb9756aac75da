from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.messaging import NotificationSink, get_notification_sink
from app.common.site_enums import UserRole
from app.data.dbinit import get_db
from app.data.restaurant import list_restaurants_by_owner
from app.data.user import User
from app.model.restaurant import (
    CategoryCreate,
    CategoryDetail,
    MenuItemCreate,
    MenuItemDetail,
    RestaurantCreate,
    RestaurantDetail,
    StaffCreate,
    StaffDetail,
)
from app.service import restaurant as restaurant_svc
from app.service.staff import create_staff, list_staff
from app.service.user import get_current_user, require_role

router = APIRouter()


@router.get("", response_model=List[RestaurantDetail])
async def get_my_restaurants(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.OWNER)),
):
    return await list_restaurants_by_owner(db, current_user.user_id)


@router.post("", response_model=RestaurantDetail, status_code=status.HTTP_201_CREATED)
async def create_restaurant(
    payload: RestaurantCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await restaurant_svc.create_restaurant(db, current_user, payload)


@router.post("/{restaurant_id}/categories", response_model=CategoryDetail, status_code=status.HTTP_201_CREATED)
async def create_category(
    restaurant_id: UUID,
    payload: CategoryCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await restaurant_svc.create_category(db, current_user, restaurant_id, payload)


@router.post("/{restaurant_id}/items", response_model=MenuItemDetail, status_code=status.HTTP_201_CREATED)
async def create_menu_item(
    restaurant_id: UUID,
    payload: MenuItemCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await restaurant_svc.create_menu_item(db, current_user, restaurant_id, payload)


@router.post("/{restaurant_id}/staff", response_model=StaffDetail, status_code=status.HTTP_201_CREATED)
async def add_staff(
    restaurant_id: UUID,
    payload: StaffCreate,
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    current_user: User = Depends(get_current_user),
):
    return await create_staff(db, sink, current_user, restaurant_id, payload)


@router.get("/staff", response_model=List[StaffDetail])
async def get_my_staff(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.OWNER)),
):
    return await list_staff(db, current_user)
