from typing import Optional, Tuple
from uuid import UUID

import structlog
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.common import passwd
from app.common.exception import AccessDenied, IntegrityException
from app.common.site_enums import UserRole
from app.config.config import Settings, get_settings
from app.data.dbinit import get_db
from app.data.user import User, create_user, get_user, get_user_by_email
from app.model.user import OwnerRegister
from app.service.subscription import register_owner_subscription

logger = structlog.get_logger()


async def authenticate_user(db: AsyncSession, email: str, password: str) -> Optional[User]:
    """Authenticate a user with email and password"""
    user = await get_user_by_email(db, email)
    if not user:
        return None
    if not passwd.verify_password(password, user.hashed_password):
        return None
    return user


async def register_owner(
    db: AsyncSession,
    settings: Settings,
    payment_service,
    payload: OwnerRegister,
) -> Tuple[User, str, Optional[str]]:
    """
    Create an owner account with its initial subscription.
    Returns (owner, subscription status, checkout url or None).
    """
    existing = await get_user_by_email(db, payload.email)
    if existing:
        raise IntegrityException(
            "Email already registered",
            context={"detail": f"Email may already be registered: {payload.email}"},
        )

    owner = await create_user(
        db,
        email=payload.email,
        hashed_password=passwd.get_password_hash(payload.password),
        full_name=payload.full_name,
        role=UserRole.OWNER,
        phone=payload.phone,
        is_active=False,
    )
    sub, checkout_url = await register_owner_subscription(
        db, settings, payment_service, owner, payload.plan_slug
    )
    logger.info(f"Registered owner {owner.user_id} on plan {sub.plan.slug} ({sub.status})")
    return owner, sub.status, checkout_url


async def get_current_user(
    token: str = Depends(passwd.oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not verify credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    payload = passwd.decode_jwt(token, settings.SECRET_KEY)
    subject = payload.get("sub")
    if subject is None:
        raise credentials_exception
    try:
        user_id = UUID(subject)
    except ValueError:
        raise credentials_exception

    user = await get_user(db, user_id)
    if user is None:
        raise credentials_exception
    return user


def require_role(*roles: UserRole):
    """Dependency factory that only lets the given roles through."""
    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if UserRole(current_user.role) not in roles:
            raise AccessDenied(current_user.user_id)
        return current_user
    return checker
