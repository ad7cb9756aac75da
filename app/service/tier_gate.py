from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.exception import AccessDenied, BillingValidationError, TierLimitExceeded
from app.common.site_enums import GatedResource, UserRole
from app.data.restaurant import (
    count_categories_by_restaurant,
    count_menu_items_by_restaurant,
    count_restaurants_by_owner,
)
from app.data.user import User, count_staff_by_owner, get_user
from app.service.subscription import get_feature_limits

logger = structlog.get_logger()


def resolve_owner_id(actor: User) -> Optional[UUID]:
    """
    The owner whose subscription governs what `actor` may create.
    None for admins, who are never limited.
    """
    role = UserRole(actor.role)
    if role == UserRole.ADMIN:
        return None
    elif role == UserRole.OWNER:
        return actor.user_id
    elif role == UserRole.STAFF:
        if actor.owner_id is None:
            raise AccessDenied(actor.user_id, reason="Staff account is not linked to an owner")
        return actor.owner_id
    raise ValueError(f"Unhandled role: {role}")


class TierGate:
    """Checks a tenant mutation against the feature limits of the owner's plan."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _count(self, resource: GatedResource, owner_id: UUID, restaurant_id: Optional[UUID]) -> int:
        if resource == GatedResource.RESTAURANT:
            return await count_restaurants_by_owner(self.db, owner_id)
        elif resource == GatedResource.STAFF:
            return await count_staff_by_owner(self.db, owner_id)
        elif resource in (GatedResource.CATEGORY, GatedResource.MENU_ITEM):
            if restaurant_id is None:
                raise BillingValidationError("restaurant_id", "A restaurant is required for this check")
            if resource == GatedResource.CATEGORY:
                return await count_categories_by_restaurant(self.db, restaurant_id)
            return await count_menu_items_by_restaurant(self.db, restaurant_id)
        raise ValueError(f"Unhandled resource: {resource}")

    async def check(
        self,
        actor: User,
        resource: GatedResource,
        restaurant_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> None:
        owner_id = resolve_owner_id(actor)
        if owner_id is None:
            return

        limits = await get_feature_limits(self.db, owner_id, now)
        limit = limits.limit_for(resource)
        count = await self._count(resource, owner_id, restaurant_id)

        if limits.decode_failed:
            raise TierLimitExceeded(
                resource.value,
                count,
                limit,
                reason="Plan limits could not be read. Please contact support.",
            )

        if limit > 0 and count >= limit:
            logger.info(
                f"Tier limit hit for owner {owner_id}",
                resource=resource.value,
                count=count,
                limit=limit,
            )
            raise TierLimitExceeded(resource.value, count, limit)

    async def check_for_user_id(
        self,
        actor_id: UUID,
        resource: GatedResource,
        restaurant_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> None:
        actor = await get_user(self.db, actor_id)
        if actor is None:
            raise AccessDenied(actor_id, reason="User not found")
        await self.check(actor, resource, restaurant_id, now)
