"""Payment gateway port.

Store code only talks to ``PaymentGateway``. The Stripe adapter is used in
deployed environments and the fake adapter in development and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED_EVENTS = frozenset(
    {"payment_intent.payment_failed", "payment_intent.canceled"}
)


@dataclass(frozen=True)
class ChargeIntent:
    """A charge as the processor reports it."""

    id: str
    status: str
    amount_minor: int
    currency: str
    client_secret: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ChargeIntent":
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            amount_minor=int(data.get("amount_received") or data.get("amount") or 0),
            currency=str(data.get("currency") or "").lower(),
            client_secret=data.get("client_secret"),
            metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class PaymentEvent:
    """A verified webhook event."""

    id: str
    type: str
    charge: ChargeIntent

    @property
    def order_reference(self) -> Optional[str]:
        return self.charge.metadata.get("order_id") or None

    @property
    def is_success(self) -> bool:
        return self.type == PAYMENT_SUCCEEDED

    @property
    def is_failure(self) -> bool:
        return self.type in PAYMENT_FAILED_EVENTS

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PaymentEvent":
        obj = (payload.get("data") or {}).get("object") or {}
        return cls(
            id=str(payload.get("id") or ""),
            type=str(payload.get("type") or ""),
            charge=ChargeIntent.from_payload(obj),
        )


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    async def create_charge(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeIntent:
        """Create a charge for ``amount_minor`` and return it with its client secret."""
        ...

    @abstractmethod
    async def retrieve_charge(self, charge_id: str) -> ChargeIntent:
        """Fetch the processor's current view of a charge."""
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """Verify a webhook delivery and parse it.

        Raises WebhookSignatureError when the signature is missing or invalid.
        """
        ...
