"""Payment gateway factory.

Provides get_gateway() / set_gateway() to swap implementations:
- StripeGateway when PAYMENT_GATEWAY=stripe
- FakeGateway for development and testing
"""

from typing import Optional

from libs.common.config import get_settings
from services.store_service.payment_gateway.fake import FakeGateway
from services.store_service.payment_gateway.port import (
    ChargeIntent,
    PaymentEvent,
    PaymentGateway,
)
from services.store_service.payment_gateway.stripe_client import StripeGateway

_current_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Return the active payment gateway, building it from settings on first use."""
    global _current_gateway
    if _current_gateway is None:
        if get_settings().PAYMENT_GATEWAY == "stripe":
            _current_gateway = StripeGateway()
        else:
            _current_gateway = FakeGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Override the active payment gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None


__all__ = [
    "ChargeIntent",
    "FakeGateway",
    "PaymentEvent",
    "PaymentGateway",
    "StripeGateway",
    "get_gateway",
    "reset_gateway",
    "set_gateway",
]
