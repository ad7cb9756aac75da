from __future__ import annotations

import re
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.exception import AccessDenied, BillingValidationError, RecordNotFoundException
from app.common.site_enums import GatedResource, UserRole
from app.data import restaurant as restaurant_data
from app.data.restaurant import Category, MenuItem, Restaurant
from app.data.user import User
from app.model.restaurant import CategoryCreate, MenuItemCreate, RestaurantCreate
from app.service.tier_gate import TierGate

logger = structlog.get_logger()


def normalize_slug(raw: str) -> str:
    """
    Simple slugify helper. Lowercases the input, replaces non-alphanumeric
    sequences with '-', and trims leading/trailing dashes.
    """
    slug = raw.strip().lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug


async def load_restaurant_for_actor(
    db: AsyncSession,
    restaurant_id: UUID,
    actor: User,
) -> Restaurant:
    """
    Fetch a restaurant and make sure the actor may work on it.
    Admins pass, owners must own it, staff must be bound to it.
    """
    restaurant = await restaurant_data.get_restaurant(db, restaurant_id)
    if restaurant is None:
        raise RecordNotFoundException(
            "Restaurant not found",
            context={"restaurant_id": str(restaurant_id)},
        )

    role = UserRole(actor.role)
    if role == UserRole.ADMIN:
        return restaurant
    elif role == UserRole.OWNER:
        if restaurant.owner_id != actor.user_id:
            raise AccessDenied(actor.user_id, reason="You do not own this restaurant")
        return restaurant
    elif role == UserRole.STAFF:
        if actor.restaurant_id != restaurant.restaurant_id:
            raise AccessDenied(actor.user_id, reason="You are not assigned to this restaurant")
        return restaurant
    raise ValueError(f"Unhandled role: {role}")


async def create_restaurant(
    db: AsyncSession,
    actor: User,
    payload: RestaurantCreate,
) -> Restaurant:
    role = UserRole(actor.role)
    if role == UserRole.STAFF:
        raise AccessDenied(actor.user_id, reason="Staff cannot create restaurants")

    await TierGate(db).check(actor, GatedResource.RESTAURANT)

    slug = normalize_slug(payload.slug or payload.name)
    if not slug:
        raise BillingValidationError("slug", "Restaurant name must contain letters or digits")

    restaurant = await restaurant_data.create_restaurant(
        db,
        owner_id=actor.user_id,
        name=payload.name,
        slug=slug,
        description=payload.description,
    )
    logger.info(f"Restaurant {restaurant.restaurant_id} created by {actor.user_id}")
    return restaurant


async def create_category(
    db: AsyncSession,
    actor: User,
    restaurant_id: UUID,
    payload: CategoryCreate,
) -> Category:
    restaurant = await load_restaurant_for_actor(db, restaurant_id, actor)
    await TierGate(db).check(actor, GatedResource.CATEGORY, restaurant.restaurant_id)

    return await restaurant_data.create_category(
        db,
        restaurant_id=restaurant.restaurant_id,
        name=payload.name,
        description=payload.description,
        display_order=payload.display_order,
        is_active=payload.is_active,
        created_by=actor.user_id,
    )


async def create_menu_item(
    db: AsyncSession,
    actor: User,
    restaurant_id: UUID,
    payload: MenuItemCreate,
) -> MenuItem:
    restaurant = await load_restaurant_for_actor(db, restaurant_id, actor)
    await TierGate(db).check(actor, GatedResource.MENU_ITEM, restaurant.restaurant_id)

    category_id: Optional[UUID] = payload.category_id
    if category_id is not None:
        category = await restaurant_data.get_category(db, category_id)
        if category is None or category.restaurant_id != restaurant.restaurant_id:
            raise BillingValidationError("category_id", "Category does not belong to this restaurant")

    return await restaurant_data.create_menu_item(
        db,
        restaurant_id=restaurant.restaurant_id,
        category_id=category_id,
        name=payload.name,
        description=payload.description,
        price_cents=payload.price_cents,
        is_available=payload.is_available,
        created_by=actor.user_id,
    )
