from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.config import Settings
from app.common.exception import (
    BillingValidationError,
    PaymentProviderError,
    RecordNotFoundException,
    SubscriptionInactive,
)
from app.common.site_enums import PaymentType, SubscriptionStatus
from app.data.subscription import (
    Subscription,
    create_subscription,
    get_current_subscription_for_owner,
    get_subscription_plan_by_slug,
    list_subscription_plans,
    supersede_owner_subscriptions,
)
from app.data.user import User, set_user_active
from app.model.subscription import FeatureLimits, PlanSummary, SubscriptionDetail

logger = structlog.get_logger()


def utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def add_month(dt: datetime) -> datetime:
    return dt + relativedelta(months=1)


def is_subscription_valid(sub: Subscription, now: datetime) -> bool:
    """
    active   -> valid until current_period_end
    trialing -> valid until trial_end (a trial without trial_end is never valid)
    anything else is invalid.
    """
    if sub.status == SubscriptionStatus.ACTIVE.value:
        return now < utc(sub.current_period_end)
    if sub.status == SubscriptionStatus.TRIALING.value:
        return sub.trial_end is not None and now < utc(sub.trial_end)
    return False


def days_remaining(sub: Subscription, now: datetime) -> int:
    if sub.status == SubscriptionStatus.TRIALING.value and sub.trial_end is not None:
        end = utc(sub.trial_end)
    else:
        end = utc(sub.current_period_end)
    return max((end - now).days, 0)


async def get_valid_subscription(
    db: AsyncSession,
    owner_id: UUID,
    now: Optional[datetime] = None,
) -> Subscription:
    """The owner's current subscription, or SubscriptionInactive when none grants access."""
    now = now or datetime.now(timezone.utc)
    sub = await get_current_subscription_for_owner(db, owner_id)
    if sub is None:
        raise SubscriptionInactive(owner_id, reason="No active subscription found")
    if not is_subscription_valid(sub, now):
        logger.info(
            f"Subscription {sub.subscription_id} of owner {owner_id} is not valid",
            status=sub.status,
        )
        raise SubscriptionInactive(owner_id)
    return sub


async def get_feature_limits(
    db: AsyncSession,
    owner_id: UUID,
    now: Optional[datetime] = None,
) -> FeatureLimits:
    sub = await get_valid_subscription(db, owner_id, now)
    limits = FeatureLimits.decode(sub.plan.features)
    if limits.decode_failed:
        logger.error(f"Plan {sub.plan.slug} has unreadable features; all limits closed")
    return limits


async def list_plans(db: AsyncSession) -> List[PlanSummary]:
    plans = await list_subscription_plans(db)
    return [
        PlanSummary(
            plan_id=p.plan_id,
            name=p.name,
            slug=p.slug,
            description=p.description,
            price_monthly_cents=p.price_monthly_cents,
            price_annual_cents=p.price_annual_cents,
            currency=p.currency,
            features=FeatureLimits.decode(p.features),
            display_order=p.display_order,
        )
        for p in plans
    ]


async def get_subscription_details(
    db: AsyncSession,
    owner_id: UUID,
    now: Optional[datetime] = None,
) -> SubscriptionDetail:
    now = now or datetime.now(timezone.utc)
    sub = await get_current_subscription_for_owner(db, owner_id)
    if sub is None:
        raise RecordNotFoundException(
            "Subscription not found",
            context={"owner_id": str(owner_id)},
        )
    return SubscriptionDetail(
        subscription_id=sub.subscription_id,
        plan_name=sub.plan.name,
        plan_slug=sub.plan.slug,
        price_monthly_cents=sub.plan.price_monthly_cents,
        currency=sub.plan.currency,
        status=sub.status,
        current_period_start=utc(sub.current_period_start),
        current_period_end=utc(sub.current_period_end),
        trial_end=utc(sub.trial_end),
        days_remaining=days_remaining(sub, now),
        features=FeatureLimits.decode(sub.plan.features),
    )


async def start_trial(
    db: AsyncSession,
    settings: Settings,
    owner_id: UUID,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Activate an owner account and open the trial window on the trial plan.
    The trial becomes the owner's current subscription.
    """
    now = now or datetime.now(timezone.utc)
    plan = await get_subscription_plan_by_slug(db, settings.TRIAL_PLAN_SLUG)
    if plan is None:
        raise BillingValidationError("plan_slug", f"Trial plan '{settings.TRIAL_PLAN_SLUG}' is not configured")

    await set_user_active(db, owner_id, email_verified=True)

    trial_end = now + timedelta(days=settings.TRIAL_DAYS)
    sub = await create_subscription(
        db,
        owner_id=owner_id,
        plan=plan,
        status=SubscriptionStatus.TRIALING,
        current_period_start=now,
        current_period_end=trial_end,
        trial_end=trial_end,
        is_current=True,
    )
    await supersede_owner_subscriptions(
        db, owner_id, keep_subscription_id=sub.subscription_id, now=now
    )
    logger.info(f"Started {settings.TRIAL_DAYS}-day trial for owner {owner_id}")
    return sub


async def register_owner_subscription(
    db: AsyncSession,
    settings: Settings,
    payment_service,
    owner: User,
    plan_slug: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Subscription, Optional[str]]:
    """
    Initial subscription of a newly registered owner.

    A free plan is active straight away. A paid plan starts incomplete and a
    checkout is opened for it; the returned checkout URL is None when no
    payment is needed.
    """
    now = now or datetime.now(timezone.utc)
    slug = plan_slug or settings.FREE_PLAN_SLUG
    plan = await get_subscription_plan_by_slug(db, slug)
    if plan is None or not plan.is_active:
        raise BillingValidationError("plan_slug", f"Unknown subscription plan '{slug}'")

    paid = plan.price_monthly_cents > 0
    sub = await create_subscription(
        db,
        owner_id=owner.user_id,
        plan=plan,
        status=SubscriptionStatus.INCOMPLETE if paid else SubscriptionStatus.ACTIVE,
        current_period_start=now,
        current_period_end=add_month(now),
        is_current=not paid,
    )
    if not paid:
        return sub, None

    try:
        checkout = await payment_service.initiate_payment(
            owner.user_id,
            plan.slug,
            PaymentType.REGISTRATION,
            email=owner.email,
            name=owner.full_name,
            subscription_id=sub.subscription_id,
        )
    except PaymentProviderError as e:
        # The account exists; the owner can start the checkout again later
        logger.warning(f"Registration checkout for owner {owner.user_id} failed: {e.reason}")
        return sub, None
    return sub, checkout.checkout_url
