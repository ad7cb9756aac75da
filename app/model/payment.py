from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ChapaWebhookData(BaseModel):
    tx_ref: str = Field(..., min_length=1)
    reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[str] = None

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True

    @property
    def event_key(self) -> str:
        """Ledger key: the provider reference, or our tx_ref when it is absent."""
        return self.reference or self.tx_ref


class ChapaWebhookPayload(BaseModel):
    event: str = Field(..., min_length=1)
    data: ChapaWebhookData


class WebhookOutcome(BaseModel):
    event: str
    tx_ref: str
    handled: bool
    duplicate: bool = False


class WebhookAck(BaseModel):
    status: str = "received"
    duplicate: bool = False
    error: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
