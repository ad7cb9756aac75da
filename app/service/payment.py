from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.config import Settings
from app.common.chapa import ChapaClient
from app.common.exception import BillingValidationError, RecordNotFoundException
from app.common.messaging import NotificationSink, notify
from app.common.site_enums import (
    InvoiceStatus,
    NotificationType,
    PaymentType,
    SubscriptionStatus,
)
from app.data.payment import (
    create_invoice,
    create_payment_transaction,
    get_payment_transaction_by_tx_ref,
    mark_transaction_completed,
    set_invoice_status,
)
from app.data.subscription import (
    Subscription,
    SubscriptionPlan,
    activate_subscription,
    create_subscription,
    get_current_subscription_for_owner,
    get_latest_subscription_for_owner,
    get_subscription,
    get_subscription_plan_by_slug,
    supersede_owner_subscriptions,
)
from app.data.user import get_user, set_user_active
from app.model.subscription import PaymentInitiateResponse, PriceQuote
from app.service.subscription import add_month, utc

logger = structlog.get_logger()

# An active period with more days left than this is carried into a plan switch
CARRY_OVER_MIN_DAYS = 5


def encode_reference(payment_type: PaymentType, plan_slug: str) -> str:
    return f"{payment_type.value}:{plan_slug}"


def decode_reference(reference: Optional[str]) -> Optional[str]:
    """Plan slug encoded in a transaction reference, if any."""
    if not reference or ":" not in reference:
        return None
    _, slug = reference.split(":", 1)
    return slug or None


class PaymentService:
    """Checkout initiation and reconciliation against Chapa."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        chapa: ChapaClient,
        sink: NotificationSink,
    ):
        self.db = db
        self.settings = settings
        self.chapa = chapa
        self.sink = sink

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def calculate_amount(
        self,
        current: Optional[Subscription],
        new_plan: SubscriptionPlan,
        payment_type: PaymentType,
        now: datetime,
    ) -> PriceQuote:
        """
        Price of a checkout for `new_plan`.

        Every branch charges the new plan's flat monthly price. The period
        figures are still worked out and returned so that callers can log
        what a pro-rata charge would have been based on.
        """
        quote = PriceQuote(amount_cents=new_plan.price_monthly_cents, currency=new_plan.currency)

        if current is None or current.status != SubscriptionStatus.ACTIVE.value:
            return quote

        period_start = utc(current.current_period_start)
        period_end = utc(current.current_period_end)
        remaining = period_end - now
        if remaining <= timedelta(days=CARRY_OVER_MIN_DAYS):
            return quote

        total_days = (period_end - period_start).days
        if total_days <= 0:
            return quote

        remaining_days = remaining.days
        quote.remaining_days = remaining_days
        quote.total_days = total_days
        quote.previous_plan_slug = current.plan.slug if current.plan else None

        old_price = current.plan.price_monthly_cents if current.plan else 0
        if new_plan.price_monthly_cents > old_price and payment_type != PaymentType.UPDATE:
            logger.info(
                f"Upgrade from {quote.previous_plan_slug} to {new_plan.slug} charged at full price",
                remaining_days=remaining_days,
                total_days=total_days,
            )
        return quote

    async def _resolve_subscription(
        self,
        owner_id: UUID,
        plan: SubscriptionPlan,
        current: Optional[Subscription],
        subscription_id: Optional[UUID],
        now: datetime,
    ) -> Subscription:
        if subscription_id is not None:
            sub = await get_subscription(self.db, subscription_id)
            if sub is None or sub.owner_id != owner_id:
                raise BillingValidationError("subscription_id", "Subscription not found for this owner")
            return sub

        latest = await get_latest_subscription_for_owner(self.db, owner_id)
        if (
            latest is not None
            and latest.status == SubscriptionStatus.INCOMPLETE.value
            and latest.plan_id == plan.plan_id
        ):
            logger.info(f"Reusing incomplete subscription {latest.subscription_id} for owner {owner_id}")
            return latest

        period_end = add_month(now)
        if current is not None and current.status == SubscriptionStatus.ACTIVE.value:
            current_end = utc(current.current_period_end)
            if current_end - now > timedelta(days=CARRY_OVER_MIN_DAYS):
                period_end = current_end

        return await create_subscription(
            self.db,
            owner_id=owner_id,
            plan=plan,
            status=SubscriptionStatus.INCOMPLETE,
            current_period_start=now,
            current_period_end=period_end,
            is_current=False,
        )

    async def initiate_payment(
        self,
        owner_id: UUID,
        plan_slug: str,
        payment_type: PaymentType,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        subscription_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> PaymentInitiateResponse:
        now = now or datetime.now(timezone.utc)

        plan = await get_subscription_plan_by_slug(self.db, plan_slug)
        if plan is None or not plan.is_active:
            raise BillingValidationError("plan_slug", f"Unknown subscription plan '{plan_slug}'")
        if plan.price_monthly_cents <= 0:
            raise BillingValidationError("plan_slug", f"Plan '{plan_slug}' does not require payment")

        owner = await get_user(self.db, owner_id)
        if owner is None:
            raise RecordNotFoundException("Owner not found", context={"owner_id": str(owner_id)})

        current = await get_current_subscription_for_owner(self.db, owner_id)
        sub = await self._resolve_subscription(owner_id, plan, current, subscription_id, now)

        billing_email = email or owner.email
        billing_name = name or owner.full_name

        quote = self.calculate_amount(current, plan, payment_type, now)

        tx_ref = f"tx_{uuid.uuid4()}"
        await create_payment_transaction(
            self.db,
            owner_id=owner_id,
            tx_ref=tx_ref,
            amount_cents=quote.amount_cents,
            currency=quote.currency,
            reference=encode_reference(payment_type, plan.slug),
        )
        await create_invoice(
            self.db,
            owner_id=owner_id,
            subscription_id=sub.subscription_id,
            invoice_number=tx_ref,
            amount_cents=quote.amount_cents,
            currency=quote.currency,
            billing_period_start=utc(sub.current_period_start),
            billing_period_end=utc(sub.current_period_end),
        )
        # Pending rows are kept even when the provider call below fails
        await self.db.commit()

        logger.info(
            f"Initiating {payment_type.value} payment {tx_ref} for owner {owner_id}",
            plan=plan.slug,
            amount_cents=quote.amount_cents,
            subscription_id=str(sub.subscription_id),
        )

        checkout_url = await self.chapa.initialize_transaction(
            amount_cents=quote.amount_cents,
            currency=quote.currency,
            email=billing_email,
            first_name=billing_name,
            tx_ref=tx_ref,
            callback_url=self.settings.CHAPA_CALLBACK_URL,
            return_url=f"{self.settings.CHAPA_RETURN_URL}?tx_ref={tx_ref}",
            title=f"{plan.name} Plan",
            description="Monthly subscription",
        )
        return PaymentInitiateResponse(
            checkout_url=checkout_url,
            tx_ref=tx_ref,
            amount_cents=quote.amount_cents,
            currency=quote.currency,
        )

    async def renew(self, owner_id: UUID, now: Optional[datetime] = None) -> PaymentInitiateResponse:
        """Checkout for another period of the owner's current plan."""
        current = await get_current_subscription_for_owner(self.db, owner_id)
        if current is None:
            raise BillingValidationError("subscription", "No subscription to renew")
        return await self.initiate_payment(owner_id, current.plan.slug, PaymentType.RENEWAL, now=now)

    async def upgrade(self, owner_id: UUID, plan_slug: str, now: Optional[datetime] = None) -> PaymentInitiateResponse:
        return await self.initiate_payment(owner_id, plan_slug, PaymentType.UPGRADE, now=now)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def complete_payment(
        self,
        tx_ref: str,
        provider_ref: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move a checkout to its paid state and activate the subscription it
        was for. Safe to call any number of times for the same tx_ref: only
        the first call changes anything and returns True.
        """
        now = now or datetime.now(timezone.utc)
        subscription_id = None
        try:
            if not await mark_transaction_completed(self.db, tx_ref, provider_ref):
                tx = await get_payment_transaction_by_tx_ref(self.db, tx_ref)
                if tx is None:
                    raise RecordNotFoundException(
                        "Payment transaction not found",
                        context={"tx_ref": tx_ref},
                    )
                logger.info(f"Payment {tx_ref} already completed")
                return False

            tx = await get_payment_transaction_by_tx_ref(self.db, tx_ref)
            invoice = await set_invoice_status(self.db, tx_ref, InvoiceStatus.PAID, paid_at=now)
            if invoice is None or invoice.subscription_id is None:
                raise RecordNotFoundException(
                    "Invoice for payment not found",
                    context={"tx_ref": tx_ref},
                )
            subscription_id = invoice.subscription_id

            plan_id = None
            slug = decode_reference(tx.reference)
            if slug:
                plan = await get_subscription_plan_by_slug(self.db, slug)
                if plan is not None:
                    plan_id = plan.plan_id

            activated = await activate_subscription(
                self.db,
                subscription_id,
                period_start=now,
                period_end=add_month(now),
                plan_id=plan_id,
            )
            if not activated:
                raise RecordNotFoundException(
                    "Subscription for invoice not found",
                    context={"tx_ref": tx_ref, "subscription_id": str(subscription_id)},
                )
        except Exception:
            await self.db.rollback()
            logger.error(
                f"Failed to complete payment {tx_ref}",
                invoice_number=tx_ref,
                subscription_id=str(subscription_id) if subscription_id else None,
            )
            raise

        owner_id = invoice.owner_id
        try:
            async with self.db.begin_nested():
                await supersede_owner_subscriptions(
                    self.db, owner_id, keep_subscription_id=subscription_id, now=now
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to supersede old subscriptions of owner {owner_id}: {e}")
        try:
            async with self.db.begin_nested():
                await set_user_active(self.db, owner_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to activate owner {owner_id}: {e}")

        owner = await get_user(self.db, owner_id)
        await self.db.commit()
        logger.info(f"Payment {tx_ref} completed, subscription {subscription_id} active")

        if owner is not None:
            await notify(
                self.sink,
                NotificationType.PAYMENT_SUCCESS,
                {
                    "email": owner.email,
                    "name": owner.full_name,
                    "invoice_number": invoice.invoice_number,
                    "amount": f"{invoice.amount_cents / 100:.2f}",
                    "currency": invoice.currency,
                },
            )
        return True
