from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UUID,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import relationship, selectinload

from app.data.dbinit import Base, utcnow
from app.common.exception import GeneralDataException, IntegrityException
from app.common.site_enums import SubscriptionStatus

JSONType = JSON().with_variant(JSONB, "postgresql")


# ----------------------------------------------------------------------
# SubscriptionPlan – immutable catalog row
# ----------------------------------------------------------------------


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plan"

    plan_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    description = Column(String, nullable=True)

    price_monthly_cents = Column(Integer, nullable=False, default=0)
    price_annual_cents = Column(Integer, nullable=True)
    currency = Column(String, nullable=False, default="ETB")

    # FeatureLimits blob, see app.model.subscription.FeatureLimits
    features = Column(JSONType, nullable=False, default=dict)

    display_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


async def get_subscription_plan_by_slug(
    db: AsyncSession,
    slug: str,
) -> Optional[SubscriptionPlan]:
    """Fetch a subscription plan using its slug (e.g. 'bronze')."""
    result = await db.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.slug == slug)
    )
    return result.scalar_one_or_none()


async def list_subscription_plans(
    db: AsyncSession,
    *,
    only_active: bool = True,
) -> List[SubscriptionPlan]:
    stmt = select(SubscriptionPlan).order_by(
        SubscriptionPlan.display_order.asc(),
        SubscriptionPlan.price_monthly_cents.asc(),
    )
    if only_active:
        stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
    result = await db.execute(stmt)
    return result.scalars().all()


async def create_subscription_plan(
    db: AsyncSession,
    *,
    name: str,
    slug: str,
    price_monthly_cents: int,
    currency: str,
    features: Dict[str, Any],
    description: Optional[str] = None,
    price_annual_cents: Optional[int] = None,
    display_order: int = 0,
    is_active: bool = True,
) -> SubscriptionPlan:
    """Insert a new catalog plan. Used by the seed script and tests."""
    try:
        plan = SubscriptionPlan(
            name=name,
            slug=slug,
            description=description,
            price_monthly_cents=price_monthly_cents,
            price_annual_cents=price_annual_cents,
            currency=currency,
            features=features,
            display_order=display_order,
            is_active=is_active,
        )
        db.add(plan)
        await db.flush()
        await db.refresh(plan)
        return plan
    except IntegrityError as exc:
        raise IntegrityException(
            "Integrity error when inserting subscription plan",
            context={"slug": slug, "detail": str(exc)},
        ) from exc


# ----------------------------------------------------------------------
# Subscription – an owner's plan lineage
# ----------------------------------------------------------------------


class Subscription(Base):
    """
    One row per subscription attempt of an owner.

    Only the row flagged `is_current` decides what the tenant may do. Rows
    created for a checkout start out non-current and become current when the
    payment is reconciled; the rows they replace are kept for history.
    """

    __tablename__ = "subscription"

    subscription_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    owner_id = Column(
        UUID(as_uuid=True),
        ForeignKey("app_user.user_id"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscription_plan.plan_id"),
        nullable=False,
        index=True,
    )

    # trialing / active / past_due / cancelled / incomplete
    status = Column(String, nullable=False)
    is_current = Column(Boolean, nullable=False, default=False)

    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    payment_provider_subscription_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    plan = relationship("SubscriptionPlan", backref="subscriptions")


# ----------------------------------------------------------------------
# Subscription helpers
# ----------------------------------------------------------------------


async def get_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(Subscription.subscription_id == subscription_id)
    )
    return result.scalar_one_or_none()


async def get_current_subscription_for_owner(
    db: AsyncSession,
    owner_id: uuid.UUID,
) -> Optional[Subscription]:
    """
    The subscription currently in force for an owner, with its plan loaded.

    Owners can have several rows; never assume a single match.
    """
    result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(Subscription.owner_id == owner_id)
        .where(Subscription.is_current.is_(True))
        .order_by(Subscription.created_at.desc())
        .limit(1)
        # Bulk status updates elsewhere in the session must not be masked by the identity map
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_latest_subscription_for_owner(
    db: AsyncSession,
    owner_id: uuid.UUID,
) -> Optional[Subscription]:
    """Most recently created subscription of any status."""
    result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(Subscription.owner_id == owner_id)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def create_subscription(
    db: AsyncSession,
    *,
    owner_id: uuid.UUID,
    plan: SubscriptionPlan,
    status: SubscriptionStatus,
    current_period_start: datetime,
    current_period_end: datetime,
    trial_end: Optional[datetime] = None,
    is_current: bool = False,
) -> Subscription:
    """
    Create a subscription row.

    - trial on account activation: status=trialing, is_current=True, trial_end set
    - free plan: status=active, is_current=True
    - paid plan awaiting checkout: status=incomplete, is_current=False
    """
    try:
        sub = Subscription(
            owner_id=owner_id,
            plan_id=plan.plan_id,
            status=status.value,
            is_current=is_current,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            trial_end=trial_end,
        )
        db.add(sub)
        await db.flush()
        await db.refresh(sub, attribute_names=["plan"])
        return sub
    except IntegrityError as exc:
        raise IntegrityException(
            "Integrity error when inserting subscription",
            context={"owner_id": str(owner_id), "detail": str(exc)},
        ) from exc
    except SQLAlchemyError as exc:
        raise GeneralDataException(
            "Unexpected error when inserting subscription",
            context={"owner_id": str(owner_id), "detail": str(exc)},
        ) from exc


async def activate_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    *,
    period_start: datetime,
    period_end: datetime,
    plan_id: Optional[uuid.UUID] = None,
) -> bool:
    """Make a subscription the active, current row. Returns False when no row matched."""
    values: Dict[str, Any] = {
        "status": SubscriptionStatus.ACTIVE.value,
        "is_current": True,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancelled_at": None,
        "updated_at": utcnow(),
    }
    if plan_id is not None:
        values["plan_id"] = plan_id
    result = await db.execute(
        update(Subscription)
        .where(Subscription.subscription_id == subscription_id)
        .values(**values)
    )
    return result.rowcount > 0


async def set_subscription_status(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    status: SubscriptionStatus,
) -> bool:
    result = await db.execute(
        update(Subscription)
        .where(Subscription.subscription_id == subscription_id)
        .values(status=status.value, updated_at=utcnow())
    )
    return result.rowcount > 0


async def supersede_owner_subscriptions(
    db: AsyncSession,
    owner_id: uuid.UUID,
    *,
    keep_subscription_id: uuid.UUID,
    now: datetime,
) -> int:
    """
    Demote every other current row of the owner. Rows that were still granting
    access (active / trialing) are closed as cancelled; the rest keep their
    status for history. Returns the number of demoted rows.
    """
    others = (
        Subscription.owner_id == owner_id,
        Subscription.subscription_id != keep_subscription_id,
        Subscription.is_current.is_(True),
    )
    closed = await db.execute(
        update(Subscription)
        .where(*others)
        .where(Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value]))
        .values(
            status=SubscriptionStatus.CANCELLED.value,
            cancelled_at=now,
            is_current=False,
            updated_at=now,
        )
    )
    demoted = await db.execute(
        update(Subscription)
        .where(*others)
        .values(is_current=False, updated_at=now)
    )
    return closed.rowcount + demoted.rowcount
