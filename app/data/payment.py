from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UUID,
    UniqueConstraint,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import relationship

from app.data.dbinit import Base, utcnow
from app.common.exception import (
    DuplicateWebhook,
    GeneralDataException,
    IntegrityException,
)
from app.common.site_enums import InvoiceStatus, PaymentStatus

import structlog

logger = structlog.get_logger()

JSONType = JSON().with_variant(JSONB, "postgresql")


# ----------------------------------------------------------------------
# PaymentTransaction – one checkout attempt at the provider
# ----------------------------------------------------------------------


class PaymentTransaction(Base):
    """
    A single checkout attempt. Created pending at initiation and moved to a
    terminal status exactly once by reconciliation.
    """

    __tablename__ = "payment_transaction"

    transaction_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    owner_id = Column(
        UUID(as_uuid=True),
        ForeignKey("app_user.user_id"),
        nullable=False,
        index=True,
    )

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    # 'pending','completed','failed'
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)

    tx_ref = Column(String, nullable=False, unique=True)            # "tx_<uuid>"
    provider_transaction_ref = Column(String, nullable=True)         # Chapa reference
    # "{payment_type}:{plan_slug}", read back when the payment completes
    reference = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# ----------------------------------------------------------------------
# PaymentTransaction helpers
# ----------------------------------------------------------------------


async def create_payment_transaction(
    db: AsyncSession,
    *,
    owner_id: uuid.UUID,
    tx_ref: str,
    amount_cents: int,
    currency: str,
    reference: str,
) -> PaymentTransaction:
    """Insert a new pending payment transaction row."""
    try:
        tx = PaymentTransaction(
            owner_id=owner_id,
            tx_ref=tx_ref,
            amount_cents=amount_cents,
            currency=currency,
            reference=reference,
            status=PaymentStatus.PENDING.value,
        )
        db.add(tx)
        await db.flush()
        await db.refresh(tx)
        return tx
    except IntegrityError as exc:
        raise IntegrityException(
            "Integrity error when inserting payment transaction",
            context={"tx_ref": tx_ref, "detail": str(exc)},
        ) from exc
    except SQLAlchemyError as exc:
        raise GeneralDataException(
            "Unexpected error when inserting payment transaction",
            context={"tx_ref": tx_ref, "detail": str(exc)},
        ) from exc


async def get_payment_transaction_by_tx_ref(
    db: AsyncSession,
    tx_ref: str,
) -> Optional[PaymentTransaction]:
    """Fetch a transaction by the reference we generated at checkout."""
    result = await db.execute(
        select(PaymentTransaction).where(PaymentTransaction.tx_ref == tx_ref)
    )
    return result.scalar_one_or_none()


async def mark_transaction_completed(
    db: AsyncSession,
    tx_ref: str,
    provider_transaction_ref: Optional[str],
) -> bool:
    """
    Conditional check-and-set. Only the first caller for a given tx_ref flips
    the row; concurrent or repeated callers get False.
    """
    result = await db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.tx_ref == tx_ref)
        .where(PaymentTransaction.status != PaymentStatus.COMPLETED.value)
        .values(
            status=PaymentStatus.COMPLETED.value,
            provider_transaction_ref=provider_transaction_ref,
            updated_at=utcnow(),
        )
    )
    return result.rowcount > 0


async def mark_transaction_failed(
    db: AsyncSession,
    tx_ref: str,
    provider_transaction_ref: Optional[str],
) -> bool:
    # A completed transaction is terminal; a late failure event does not undo it
    result = await db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.tx_ref == tx_ref)
        .where(PaymentTransaction.status != PaymentStatus.COMPLETED.value)
        .values(
            status=PaymentStatus.FAILED.value,
            provider_transaction_ref=provider_transaction_ref,
            updated_at=utcnow(),
        )
    )
    return result.rowcount > 0


# ----------------------------------------------------------------------
# Invoice – billing record, joined to the transaction by tx_ref
# ----------------------------------------------------------------------


class Invoice(Base):
    __tablename__ = "invoice"

    invoice_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    owner_id = Column(
        UUID(as_uuid=True),
        ForeignKey("app_user.user_id"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscription.subscription_id"),
        nullable=True,
        index=True,
    )

    invoice_number = Column(String, nullable=False, unique=True)  # same value as tx_ref

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    status = Column(String, nullable=False, default=InvoiceStatus.PENDING.value)  # 'pending','paid','failed'

    billing_period_start = Column(DateTime(timezone=True), nullable=True)
    billing_period_end = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    subscription = relationship("Subscription", backref="invoices")


# ----------------------------------------------------------------------
# Invoice helpers
# ----------------------------------------------------------------------


async def create_invoice(
    db: AsyncSession,
    *,
    owner_id: uuid.UUID,
    subscription_id: Optional[uuid.UUID],
    invoice_number: str,
    amount_cents: int,
    currency: str,
    billing_period_start: Optional[datetime],
    billing_period_end: Optional[datetime],
) -> Invoice:
    try:
        invoice = Invoice(
            owner_id=owner_id,
            subscription_id=subscription_id,
            invoice_number=invoice_number,
            amount_cents=amount_cents,
            currency=currency,
            status=InvoiceStatus.PENDING.value,
            billing_period_start=billing_period_start,
            billing_period_end=billing_period_end,
        )
        db.add(invoice)
        await db.flush()
        await db.refresh(invoice)
        return invoice
    except IntegrityError as exc:
        raise IntegrityException(
            "Integrity error when inserting invoice",
            context={"invoice_number": invoice_number, "detail": str(exc)},
        ) from exc


async def get_invoice_by_number(
    db: AsyncSession,
    invoice_number: str,
) -> Optional[Invoice]:
    result = await db.execute(
        select(Invoice).where(Invoice.invoice_number == invoice_number)
    )
    return result.scalar_one_or_none()


async def set_invoice_status(
    db: AsyncSession,
    invoice_number: str,
    status: InvoiceStatus,
    *,
    paid_at: Optional[datetime] = None,
) -> Optional[Invoice]:
    """
    Move an invoice to a new status and return the updated row, or None when
    no invoice carries this number.
    """
    invoice = await get_invoice_by_number(db, invoice_number)
    if invoice is None:
        return None
    invoice.status = status.value
    if paid_at is not None:
        invoice.paid_at = paid_at
    await db.flush()
    return invoice


# ----------------------------------------------------------------------
# PaymentWebhookEvent – ledger + idempotency for provider webhooks
# ----------------------------------------------------------------------


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_event"
    __table_args__ = (
        UniqueConstraint("provider_event_id", "event_type", name="uq_payment_webhook_event_ref_type"),
    )

    event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    provider_event_id = Column(String, nullable=False, index=True)  # the provider's payment reference
    event_type = Column(String, nullable=False)                     # "payment.success", etc.

    processed = Column(Boolean, nullable=False, default=False)
    payload = Column(JSONType, nullable=False, default=dict)

    received_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(String, nullable=True)


# ----------------------------------------------------------------------
# PaymentWebhookEvent helpers
# ----------------------------------------------------------------------


async def get_webhook_event(
    db: AsyncSession,
    provider_event_id: str,
    event_type: str,
) -> Optional[PaymentWebhookEvent]:
    result = await db.execute(
        select(PaymentWebhookEvent).where(
            PaymentWebhookEvent.provider_event_id == provider_event_id,
            PaymentWebhookEvent.event_type == event_type,
        )
    )
    return result.scalar_one_or_none()


async def create_webhook_event(
    db: AsyncSession,
    *,
    provider_event_id: str,
    event_type: str,
    payload: Dict[str, Any],
) -> PaymentWebhookEvent:
    """
    Record a webhook delivery. Raises DuplicateWebhook when this
    (provider_event_id, event_type) pair was already received.
    """
    existing = await get_webhook_event(db, provider_event_id, event_type)
    if existing is not None:
        raise DuplicateWebhook(
            provider_event_id,
            event_type,
            reason="Webhook already processed" if existing.processed else "Webhook already received",
        )

    evt = PaymentWebhookEvent(
        provider_event_id=provider_event_id,
        event_type=event_type,
        payload=payload or {},
    )
    db.add(evt)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost the race against a concurrent delivery of the same event
        await db.rollback()
        logger.warning(f"Concurrent webhook delivery for {provider_event_id} ({event_type})")
        raise DuplicateWebhook(provider_event_id, event_type) from exc
    await db.refresh(evt)
    return evt


async def mark_webhook_processed(
    db: AsyncSession,
    event_id: uuid.UUID,
    error_message: Optional[str] = None,
) -> None:
    """Flag a ledger row processed, or record why processing failed."""
    values: Dict[str, Any] = {"error_message": error_message}
    if error_message is None:
        values["processed"] = True
        values["processed_at"] = utcnow()
    await db.execute(
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.event_id == event_id)
        .values(**values)
    )


# ----------------------------------------------------------------------
# PaymentRetryJob – deferred retry intent after a failed payment
# ----------------------------------------------------------------------


class PaymentRetryJob(Base):
    __tablename__ = "payment_retry_job"

    job_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscription.subscription_id"),
        nullable=False,
        index=True,
    )
    tx_ref = Column(String, nullable=True)

    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, default="scheduled")
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


async def create_retry_job(
    db: AsyncSession,
    *,
    subscription_id: uuid.UUID,
    scheduled_for: datetime,
    tx_ref: Optional[str] = None,
) -> PaymentRetryJob:
    job = PaymentRetryJob(
        subscription_id=subscription_id,
        scheduled_for=scheduled_for,
        tx_ref=tx_ref,
    )
    db.add(job)
    await db.flush()
    await db.refresh(job)
    return job
