from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UUID,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.data.dbinit import Base, utcnow
from app.common.exception import IntegrityException


# ----------------------------------------------------------------------
# Restaurant
# ----------------------------------------------------------------------


class Restaurant(Base):
    """A tenant's public venue. Owned by exactly one owner user."""
    __tablename__ = "restaurant"

    restaurant_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(
        UUID(as_uuid=True),
        ForeignKey("app_user.user_id"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    description = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


async def get_restaurant(db: AsyncSession, restaurant_id: uuid.UUID) -> Optional[Restaurant]:
    result = await db.execute(
        select(Restaurant).where(Restaurant.restaurant_id == restaurant_id)
    )
    return result.scalar_one_or_none()


async def list_restaurants_by_owner(db: AsyncSession, owner_id: uuid.UUID) -> List[Restaurant]:
    result = await db.execute(
        select(Restaurant)
        .where(Restaurant.owner_id == owner_id)
        .order_by(Restaurant.created_at.asc())
    )
    return result.scalars().all()


async def count_restaurants_by_owner(db: AsyncSession, owner_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(Restaurant).where(Restaurant.owner_id == owner_id)
    )
    return result.scalar_one()


async def create_restaurant(
    db: AsyncSession,
    *,
    owner_id: uuid.UUID,
    name: str,
    slug: str,
    description: Optional[str] = None,
) -> Restaurant:
    try:
        restaurant = Restaurant(
            owner_id=owner_id,
            name=name,
            slug=slug,
            description=description,
        )
        db.add(restaurant)
        await db.flush()
        await db.refresh(restaurant)
        return restaurant
    except IntegrityError as exc:
        raise IntegrityException(
            "Integrity error when inserting restaurant",
            context={"detail": f"Slug '{slug}' is already taken"},
        ) from exc


# ----------------------------------------------------------------------
# Category / MenuItem
# ----------------------------------------------------------------------


class Category(Base):
    __tablename__ = "category"

    category_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(
        UUID(as_uuid=True),
        ForeignKey("restaurant.restaurant_id"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    display_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class MenuItem(Base):
    __tablename__ = "menu_item"

    item_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(
        UUID(as_uuid=True),
        ForeignKey("restaurant.restaurant_id"),
        nullable=False,
        index=True,
    )
    category_id = Column(
        UUID(as_uuid=True),
        ForeignKey("category.category_id"),
        nullable=True,
        index=True,
    )
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


async def count_categories_by_restaurant(db: AsyncSession, restaurant_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(Category).where(Category.restaurant_id == restaurant_id)
    )
    return result.scalar_one()


async def count_menu_items_by_restaurant(db: AsyncSession, restaurant_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(MenuItem).where(MenuItem.restaurant_id == restaurant_id)
    )
    return result.scalar_one()


async def get_category(db: AsyncSession, category_id: uuid.UUID) -> Optional[Category]:
    result = await db.execute(select(Category).where(Category.category_id == category_id))
    return result.scalar_one_or_none()


async def create_category(
    db: AsyncSession,
    *,
    restaurant_id: uuid.UUID,
    name: str,
    description: Optional[str],
    display_order: int,
    is_active: bool,
    created_by: uuid.UUID,
) -> Category:
    category = Category(
        restaurant_id=restaurant_id,
        name=name,
        description=description,
        display_order=display_order,
        is_active=is_active,
        created_by=created_by,
    )
    db.add(category)
    await db.flush()
    await db.refresh(category)
    return category


async def create_menu_item(
    db: AsyncSession,
    *,
    restaurant_id: uuid.UUID,
    category_id: Optional[uuid.UUID],
    name: str,
    description: Optional[str],
    price_cents: int,
    is_available: bool,
    created_by: uuid.UUID,
) -> MenuItem:
    item = MenuItem(
        restaurant_id=restaurant_id,
        category_id=category_id,
        name=name,
        description=description,
        price_cents=price_cents,
        is_available=is_available,
        created_by=created_by,
    )
    db.add(item)
    await db.flush()
    await db.refresh(item)
    return item
