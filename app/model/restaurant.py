from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class RestaurantCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = None


class RestaurantDetail(BaseModel):
    restaurant_id: UUID
    owner_id: UUID
    name: str
    slug: str
    description: Optional[str] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    display_order: int = 0
    is_active: bool = True


class CategoryDetail(BaseModel):
    category_id: UUID
    restaurant_id: UUID
    name: str
    description: Optional[str] = None
    display_order: int
    is_active: bool

    class Config:
        from_attributes = True


class MenuItemCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    price_cents: int = Field(0, ge=0)
    is_available: bool = True


class MenuItemDetail(BaseModel):
    item_id: UUID
    restaurant_id: UUID
    category_id: Optional[UUID] = None
    name: str
    description: Optional[str] = None
    price_cents: int
    is_available: bool

    class Config:
        from_attributes = True


class StaffCreate(BaseModel):
    email: EmailStr
    full_name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class StaffDetail(BaseModel):
    user_id: UUID
    email: EmailStr
    full_name: str
    role: str
    owner_id: Optional[UUID] = None
    restaurant_id: Optional[UUID] = None
    is_active: bool

    class Config:
        from_attributes = True
