"""Configurable fake payment gateway for development and testing.

Keeps charges in memory and verifies webhooks with the same signature scheme
as Stripe, so the webhook endpoint can be exercised end to end with events
built by ``build_event``.
"""

import json
from typing import Optional
from uuid import uuid4

from libs.common.config import get_settings
from services.store_service.errors import NotFoundError, PaymentProcessorError
from services.store_service.payment_gateway.port import (
    PAYMENT_SUCCEEDED,
    ChargeIntent,
    PaymentEvent,
    PaymentGateway,
)
from services.store_service.payment_gateway.signatures import (
    sign_payload,
    verify_payload,
)


class FakeGateway(PaymentGateway):
    """In-memory payment gateway."""

    def __init__(self, webhook_secret: Optional[str] = None, tolerance: int = 300):
        self.webhook_secret = webhook_secret or get_settings().STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance
        self.should_succeed = True
        self.charges: dict[str, ChargeIntent] = {}
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool) -> None:
        """Make subsequent create_charge calls succeed or fail."""
        self.should_succeed = should_succeed

    async def create_charge(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeIntent:
        self.calls.append(
            {
                "method": "create_charge",
                "amount_minor": amount_minor,
                "currency": currency,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        if not self.should_succeed:
            raise PaymentProcessorError(processor_status=503)

        charge_id = f"pi_fake_{uuid4().hex[:16]}"
        intent = ChargeIntent(
            id=charge_id,
            status="requires_payment_method",
            amount_minor=amount_minor,
            currency=currency.lower(),
            client_secret=f"{charge_id}_secret_{uuid4().hex[:8]}",
            metadata={k: str(v) for k, v in metadata.items()},
        )
        self.charges[charge_id] = intent
        return intent

    async def retrieve_charge(self, charge_id: str) -> ChargeIntent:
        self.calls.append({"method": "retrieve_charge", "charge_id": charge_id})
        intent = self.charges.get(charge_id)
        if intent is None:
            raise NotFoundError("Payment not found")
        return intent

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        body = verify_payload(
            payload, signature, self.webhook_secret, tolerance=self.tolerance
        )
        return PaymentEvent.from_payload(body)

    # Test helpers

    def mark_status(self, charge_id: str, status: str) -> ChargeIntent:
        current = self.charges[charge_id]
        updated = ChargeIntent(
            id=current.id,
            status=status,
            amount_minor=current.amount_minor,
            currency=current.currency,
            client_secret=current.client_secret,
            metadata=current.metadata,
        )
        self.charges[charge_id] = updated
        return updated

    def build_event(
        self,
        charge_id: str,
        *,
        event_type: str = PAYMENT_SUCCEEDED,
        event_id: Optional[str] = None,
        amount_minor: Optional[int] = None,
        currency: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        timestamp: Optional[int] = None,
    ) -> tuple[bytes, str]:
        """Return ``(raw body, Stripe-Signature header)`` for a webhook delivery."""
        intent = self.charges.get(charge_id)
        succeeded = event_type == PAYMENT_SUCCEEDED
        body = {
            "id": event_id or f"evt_fake_{uuid4().hex[:16]}",
            "type": event_type,
            "data": {
                "object": {
                    "id": charge_id,
                    "object": "payment_intent",
                    "status": "succeeded" if succeeded else "canceled",
                    "amount": (
                        amount_minor
                        if amount_minor is not None
                        else (intent.amount_minor if intent else 0)
                    ),
                    "currency": currency or (intent.currency if intent else "eur"),
                    "metadata": (
                        metadata
                        if metadata is not None
                        else (intent.metadata if intent else {})
                    ),
                }
            },
        }
        payload = json.dumps(body).encode("utf-8")
        return payload, sign_payload(payload, self.webhook_secret, timestamp)
