from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from app.common.exception import PaymentProviderError
from app.config.config import Settings

logger = structlog.get_logger()


class ChapaClient:
    """Async wrapper around the Chapa transaction API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.CHAPA_BASE_URL.rstrip("/")
        self.secret_key = settings.CHAPA_SECRET_KEY
        self.timeout = settings.CHAPA_TIMEOUT_SECONDS
        # Tests hand in an httpx.MockTransport
        self._transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentProviderError(operation, "CHAPA_SECRET_KEY is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    json=data,
                )
        except httpx.HTTPError as e:
            logger.error(f"Chapa {operation} request failed: {e}")
            raise PaymentProviderError(operation, f"Failed to reach payment provider: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Chapa {operation} returned {response.status_code}: {response.text}")
            raise PaymentProviderError(
                operation,
                f"Payment provider returned status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise PaymentProviderError(operation, "Payment provider returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise PaymentProviderError(operation, "Payment provider returned an unexpected payload")
        return payload

    async def initialize_transaction(
        self,
        *,
        amount_cents: int,
        currency: str,
        email: str,
        first_name: str,
        tx_ref: str,
        callback_url: str,
        return_url: str,
        title: str,
        description: str,
    ) -> str:
        """Start a hosted checkout and return its checkout URL."""
        data = {
            "amount": f"{amount_cents / 100:.2f}",
            "currency": currency,
            "email": email,
            "first_name": first_name,
            "tx_ref": tx_ref,
            "callback_url": callback_url,
            "return_url": return_url,
            "customization": {
                "title": title,
                "description": description,
            },
        }
        payload = await self._request("POST", "transaction/initialize", "initialize", data)

        if payload.get("status") != "success":
            raise PaymentProviderError("initialize", payload.get("message") or "Payment initialization failed")

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise PaymentProviderError("initialize", "Payment provider returned an unexpected payload")
        checkout_url = data.get("checkout_url")
        if not checkout_url:
            raise PaymentProviderError("initialize", "Payment provider did not return a checkout URL")
        return checkout_url

    async def verify_transaction(self, tx_ref: str) -> Tuple[bool, Optional[str]]:
        """
        Ask the provider whether a checkout was paid.
        Returns (paid, provider_reference).
        """
        payload = await self._request("GET", f"transaction/verify/{tx_ref}", "verify")
        if payload.get("status") != "success":
            return False, None

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise PaymentProviderError("verify", "Payment provider returned an unexpected payload")
        return data.get("status") == "success", data.get("reference")
