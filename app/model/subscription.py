from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, ValidationError

from app.common.site_enums import GatedResource, PaymentType

import structlog

logger = structlog.get_logger()


class FeatureLimits(BaseModel):
    """
    Entitlements of a plan, decoded from SubscriptionPlan.features.

    Numeric limits of 0 or below mean "no limit". `decode_failed` is set when
    the stored blob could not be read; callers must not treat such a value
    as unlimited.
    """

    max_restaurants: int = 0
    max_categories: int = 0
    max_menu_items: int = 0
    max_staff_accounts: int = 0
    activity_log_enabled: bool = False
    activity_log_days: int = 0
    analytics_enabled: bool = False
    analytics_history_days: int = 0
    search_priority_boost: int = 0

    decode_failed: bool = Field(default=False, exclude=True)

    @classmethod
    def decode(cls, raw: Any) -> "FeatureLimits":
        try:
            if raw is None:
                raise ValueError("features blob is empty")
            if isinstance(raw, (str, bytes, bytearray)):
                raw = json.loads(raw)
            return cls.model_validate(raw)
        except (ValueError, TypeError, ValidationError) as e:
            logger.error(f"Failed to decode plan features: {e}")
            return cls(decode_failed=True)

    def limit_for(self, resource: GatedResource) -> int:
        if resource == GatedResource.RESTAURANT:
            return self.max_restaurants
        elif resource == GatedResource.CATEGORY:
            return self.max_categories
        elif resource == GatedResource.MENU_ITEM:
            return self.max_menu_items
        elif resource == GatedResource.STAFF:
            return self.max_staff_accounts
        raise ValueError(f"Unknown gated resource: {resource}")


class PlanSummary(BaseModel):
    plan_id: UUID
    name: str
    slug: str
    description: Optional[str] = None
    price_monthly_cents: int
    price_annual_cents: Optional[int] = None
    currency: str
    features: FeatureLimits
    display_order: int = 0

    class Config:
        from_attributes = True


class SubscriptionDetail(BaseModel):
    subscription_id: UUID
    plan_name: str
    plan_slug: str
    price_monthly_cents: int
    currency: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime] = None
    days_remaining: int
    features: FeatureLimits


class PriceQuote(BaseModel):
    """Amount charged for a checkout, with the period figures it was based on."""
    amount_cents: int
    currency: str
    remaining_days: Optional[int] = None
    total_days: Optional[int] = None
    previous_plan_slug: Optional[str] = None


class PaymentInitiateRequest(BaseModel):
    plan_slug: str = Field(..., min_length=1)
    payment_type: PaymentType = PaymentType.UPGRADE
    email: Optional[EmailStr] = None
    name: Optional[str] = None


class PlanSelectRequest(BaseModel):
    plan_slug: str = Field(..., min_length=1)


class PaymentInitiateResponse(BaseModel):
    checkout_url: str
    tx_ref: str
    amount_cents: int
    currency: str
