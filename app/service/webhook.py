from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.config import Settings
from app.common.exception import (
    BillingValidationError,
    RecordNotFoundException,
    WebhookSignatureInvalid,
)
from app.common.messaging import NotificationSink, notify
from app.common.site_enums import (
    InvoiceStatus,
    NotificationType,
    SubscriptionStatus,
    WebhookEventType,
)
from app.data.payment import (
    create_retry_job,
    create_webhook_event,
    get_payment_transaction_by_tx_ref,
    mark_transaction_failed,
    mark_webhook_processed,
    set_invoice_status,
)
from app.data.subscription import set_subscription_status
from app.data.user import get_user
from app.model.payment import ChapaWebhookData, ChapaWebhookPayload, WebhookOutcome
from app.service.payment import PaymentService

logger = structlog.get_logger()

RETRY_DELAY = timedelta(days=1)


class WebhookService:
    """Signed Chapa webhook ingestion."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        payment_service: PaymentService,
        sink: NotificationSink,
    ):
        self.db = db
        self.settings = settings
        self.payment_service = payment_service
        self.sink = sink

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """HMAC-SHA256 of the raw body, hex encoded. Raises WebhookSignatureInvalid."""
        secret = self.settings.CHAPA_WEBHOOK_SECRET
        if not secret:
            logger.error("CHAPA_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise WebhookSignatureInvalid("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureInvalid("Missing webhook signature")

        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        provided = signature.strip().lower().encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode(), provided):
            logger.warning("Invalid Chapa webhook signature", provided_sig=signature[:8] + "...")
            raise WebhookSignatureInvalid()

    async def process_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        self.verify_signature(raw_body, signature)

        try:
            payload = ChapaWebhookPayload.model_validate_json(raw_body)
        except ValidationError as e:
            logger.error(f"Malformed Chapa webhook payload: {e}")
            raise BillingValidationError("payload", "Malformed webhook payload") from e

        data = payload.data
        logger.info(f"Chapa webhook received: {payload.event}", tx_ref=data.tx_ref)

        # Raises DuplicateWebhook for a repeated delivery
        event = await create_webhook_event(
            self.db,
            provider_event_id=data.event_key,
            event_type=payload.event,
            payload=json.loads(raw_body),
        )
        event_id = event.event_id
        # The ledger row must survive a failed dispatch below
        await self.db.commit()

        try:
            handled = await self._dispatch(payload.event, data)
        except Exception as e:
            await self.db.rollback()
            await mark_webhook_processed(self.db, event_id, error_message=str(e)[:500])
            await self.db.commit()
            logger.error(f"Chapa webhook {payload.event} for {data.tx_ref} failed: {e}")
            raise

        await mark_webhook_processed(self.db, event_id)
        await self.db.commit()
        return WebhookOutcome(event=payload.event, tx_ref=data.tx_ref, handled=handled)

    async def _dispatch(self, event: str, data: ChapaWebhookData) -> bool:
        if event == WebhookEventType.PAYMENT_SUCCESS.value:
            await self.handle_success(data)
        elif event == WebhookEventType.PAYMENT_FAILED.value:
            await self.handle_failed(data)
        elif event == WebhookEventType.PAYMENT_PENDING.value:
            await self.handle_pending(data)
        else:
            logger.info(f"Ignoring unhandled Chapa event type: {event}")
            return False
        return True

    async def handle_success(self, data: ChapaWebhookData) -> None:
        await self.payment_service.complete_payment(data.tx_ref, data.reference)

    async def handle_failed(self, data: ChapaWebhookData, now: Optional[datetime] = None) -> None:
        """
        Failed payment: transaction and invoice failed, subscription past_due,
        a retry scheduled a day out, and the owner told to update billing.
        """
        now = now or datetime.now(timezone.utc)
        tx = await get_payment_transaction_by_tx_ref(self.db, data.tx_ref)
        if tx is None:
            raise RecordNotFoundException("Payment transaction not found", context={"tx_ref": data.tx_ref})
        if not await mark_transaction_failed(self.db, data.tx_ref, data.reference):
            logger.warning(f"Ignoring failure event for completed payment {data.tx_ref}")
            return

        invoice = await set_invoice_status(self.db, data.tx_ref, InvoiceStatus.FAILED)
        if invoice is not None and invoice.subscription_id is not None:
            await set_subscription_status(self.db, invoice.subscription_id, SubscriptionStatus.PAST_DUE)
            await create_retry_job(
                self.db,
                subscription_id=invoice.subscription_id,
                scheduled_for=now + RETRY_DELAY,
                tx_ref=data.tx_ref,
            )
        owner = await get_user(self.db, tx.owner_id)
        await self.db.commit()
        logger.info(f"Payment {data.tx_ref} failed; retry scheduled")

        if owner is not None:
            await notify(
                self.sink,
                NotificationType.PAYMENT_FAILED,
                {
                    "email": owner.email,
                    "name": owner.full_name,
                    "update_payment_url": f"{self.settings.APP_BASE_URL}/billing",
                },
            )

    async def handle_pending(self, data: ChapaWebhookData) -> None:
        email = data.email
        name = " ".join(p for p in (data.first_name, data.last_name) if p)
        if not email:
            tx = await get_payment_transaction_by_tx_ref(self.db, data.tx_ref)
            owner = await get_user(self.db, tx.owner_id) if tx is not None else None
            if owner is None:
                logger.warning(f"No contact for pending payment {data.tx_ref}")
                return
            email, name = owner.email, owner.full_name

        await notify(
            self.sink,
            NotificationType.PAYMENT_PENDING,
            {"email": email, "name": name, "tx_ref": data.tx_ref},
        )
