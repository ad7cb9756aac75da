from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional
from datetime import datetime
from uuid import UUID


class OwnerRegister(BaseModel):
    email: EmailStr
    full_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    password: str = Field(..., min_length=8)
    # Omitted means the free plan
    plan_slug: Optional[str] = None

    @field_validator('password')
    def password_strength(cls, v):
        if not any(char.isdigit() for char in v):
            raise ValueError('Password must contain at least one digit')
        if not any(char.isupper() for char in v):
            raise ValueError('Password must contain at least one uppercase letter')
        return v


class User(BaseModel):
    user_id: UUID
    email: EmailStr
    full_name: str
    role: str
    owner_id: Optional[UUID] = None
    restaurant_id: Optional[UUID] = None
    is_active: bool
    email_verified: bool
    created_dt: Optional[datetime] = None

    class Config:
        from_attributes = True


class RegistrationResponse(BaseModel):
    user: User
    subscription_status: str
    checkout_url: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str
