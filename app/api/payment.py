from __future__ import annotations

from html import escape
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.config import Settings, get_settings
from app.common.chapa import ChapaClient
from app.common.exception import DuplicateWebhook, PaymentProviderError, WebhookSignatureInvalid
from app.common.messaging import NotificationSink, get_notification_sink
from app.common.site_enums import UserRole
from app.data.dbinit import get_db
from app.data.user import User
from app.model.payment import WebhookAck
from app.model.subscription import PaymentInitiateRequest, PaymentInitiateResponse, PlanSelectRequest
from app.service.payment import PaymentService
from app.service.user import require_role
from app.service.webhook import WebhookService

logger = structlog.get_logger()

# Mounted under API_V1_PREFIX
router = APIRouter(tags=["payment"])
# Browser redirects from the provider, mounted at the root
public_router = APIRouter(tags=["payment"])


def get_chapa_client(settings: Settings = Depends(get_settings)) -> ChapaClient:
    return ChapaClient(settings)


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    chapa: ChapaClient = Depends(get_chapa_client),
    sink: NotificationSink = Depends(get_notification_sink),
) -> PaymentService:
    return PaymentService(db, settings, chapa, sink)


def get_webhook_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    payment_service: PaymentService = Depends(get_payment_service),
    sink: NotificationSink = Depends(get_notification_sink),
) -> WebhookService:
    return WebhookService(db, settings, payment_service, sink)


owner_only = require_role(UserRole.OWNER)


@router.post("/owner/payment/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(
    payload: PaymentInitiateRequest,
    current_user: User = Depends(owner_only),
    service: PaymentService = Depends(get_payment_service),
):
    """Open a hosted checkout for a plan. The subscription activates once the payment is confirmed."""
    return await service.initiate_payment(
        current_user.user_id,
        payload.plan_slug,
        payload.payment_type,
        email=payload.email,
        name=payload.name,
    )


@router.post("/owner/payment/renew", response_model=PaymentInitiateResponse)
async def renew_subscription(
    current_user: User = Depends(owner_only),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.renew(current_user.user_id)


@router.post("/owner/payment/upgrade", response_model=PaymentInitiateResponse)
async def upgrade_subscription(
    payload: PlanSelectRequest,
    current_user: User = Depends(owner_only),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.upgrade(current_user.user_id, payload.plan_slug)


@router.post("/payment/chapa/webhook", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def chapa_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Chapa webhook endpoint.

    Only a bad signature is rejected. Anything else is acknowledged with 200,
    including duplicates and processing errors, so the provider does not keep
    retrying deliveries that will never succeed.
    """
    raw_body = await request.body()
    signature = request.headers.get("Chapa-Signature")
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Chapa-Signature header",
        )

    try:
        outcome = await service.process_webhook(raw_body, signature)
    except WebhookSignatureInvalid as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.reason)
    except DuplicateWebhook as e:
        logger.info(f"Duplicate Chapa webhook {e.provider_event_id} ({e.event_type})")
        return WebhookAck(duplicate=True)
    except Exception as e:  # noqa: BLE001
        logger.error(f"Chapa webhook processing error: {e}")
        return WebhookAck(error=getattr(e, "reason", None) or getattr(e, "message", None) or str(e))

    return WebhookAck(detail=outcome.model_dump())


# ----------------------------------------------------------------------
# Return URL pages
# ----------------------------------------------------------------------


def _page(title: str, message: str, tx_ref: Optional[str], status_code: int = 200) -> HTMLResponse:
    ref = f"<p>Reference: <code>{escape(tx_ref)}</code></p>" if tx_ref else ""
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head>"
        f"<body><h1>{escape(title)}</h1><p>{escape(message)}</p>{ref}</body></html>"
    )
    return HTMLResponse(content=body, status_code=status_code)


def extract_tx_ref(request: Request) -> Optional[str]:
    """The provider is not consistent about the parameter name."""
    for name in ("trx_ref", "tx_ref", "reference"):
        value = request.query_params.get(name)
        if value:
            return value
    return None


@public_router.get("/payment/success", response_class=HTMLResponse)
async def payment_success(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    tx_ref = extract_tx_ref(request)
    logger.info("Payment return", tx_ref=tx_ref, provider_status=request.query_params.get("status"))
    if not tx_ref:
        return _page("Payment error", "No transaction reference was provided.", None, status.HTTP_400_BAD_REQUEST)

    try:
        paid, provider_ref = await service.chapa.verify_transaction(tx_ref)
    except PaymentProviderError as e:
        logger.error(f"Could not verify payment {tx_ref}: {e.reason}")
        return _page(
            "Payment error",
            "We could not verify your payment. Please contact support.",
            tx_ref,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if not paid:
        return _page("Payment failed", "Your payment was not completed. No charge was made.", tx_ref)

    try:
        await service.complete_payment(tx_ref, provider_ref)
    except Exception as e:  # noqa: BLE001
        # The webhook converges on the same reconciliation
        logger.error(f"Reconciliation after return for {tx_ref} failed: {e}")

    return _page("Payment successful", "Your subscription is now active.", tx_ref)


@public_router.get("/payment/cancel", response_class=HTMLResponse)
async def payment_cancel(trx_ref: Optional[str] = None):
    return _page("Payment cancelled", "You cancelled the payment. You can try again at any time.", trx_ref)
