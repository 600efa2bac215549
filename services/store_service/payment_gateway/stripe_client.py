"""
Stripe Payment Intents client.

Talks to the REST API directly with httpx (form-encoded bodies, bearer
secret key) and verifies webhook deliveries with the endpoint secret.
"""

from typing import Optional
from urllib.parse import quote

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.store_service.errors import PaymentProcessorError
from services.store_service.payment_gateway.port import (
    ChargeIntent,
    PaymentEvent,
    PaymentGateway,
)
from services.store_service.payment_gateway.signatures import verify_payload

logger = get_logger(__name__)


def _flatten_metadata(metadata: dict[str, str]) -> dict[str, str]:
    return {f"metadata[{key}]": str(value) for key, value in metadata.items()}


class StripeGateway(PaymentGateway):
    """Async client for the Stripe Payment Intents API."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required")
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        if tolerance is None:
            tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        self.tolerance = tolerance
        self._headers = {"Authorization": f"Bearer {self.secret_key}"}

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        idempotency_key: str = None,
    ) -> dict:
        """Make an async request to the Stripe API."""
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.request(
                    method=method,
                    url=f"{self.api_base}{endpoint}",
                    headers=headers,
                    data=data,
                )
        except httpx.HTTPError as exc:
            logger.error("Stripe request %s %s failed: %s", method, endpoint, exc)
            raise PaymentProcessorError() from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not response.is_success:
            logger.error(
                "Stripe API error: %s - %s", response.status_code, payload.get("error")
            )
            raise PaymentProcessorError(
                processor_status=response.status_code, response_data=payload
            )
        return payload

    async def create_charge(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeIntent:
        data = {
            "amount": str(amount_minor),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            **_flatten_metadata(metadata),
        }
        payload = await self._request(
            "POST", "/payment_intents", data=data, idempotency_key=idempotency_key
        )
        intent = ChargeIntent.from_payload(payload)
        logger.info(
            "Created payment intent %s for %s %s", intent.id, amount_minor, currency
        )
        return intent

    async def retrieve_charge(self, charge_id: str) -> ChargeIntent:
        payload = await self._request(
            "GET", f"/payment_intents/{quote(charge_id, safe='')}"
        )
        return ChargeIntent.from_payload(payload)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        body = verify_payload(
            payload, signature, self.webhook_secret, tolerance=self.tolerance
        )
        return PaymentEvent.from_payload(body)
