"""Pydantic schemas for store service.

Request models ignore unknown keys: only the fields declared here are ever
copied out of a client payload, so stray keys (``status``, ``total``,
``__proto__``...) can never reach a stored record.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from services.store_service.models import (
    OrderStatus,
    PaymentStatus,
    StockReservationStatus,
    WalletReservationStatus,
)
from services.store_service.services.customization import FieldValue


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# ============================================================================
# ORDER INPUT SCHEMAS
# ============================================================================


class CustomizationValueIn(_Request):
    field_id: str = Field(..., min_length=1, max_length=100)
    value: FieldValue = None


class CustomizationIn(_Request):
    values: list[CustomizationValueIn] = Field(default_factory=list, max_length=50)

    def as_map(self) -> dict[str, Any]:
        return {entry.field_id: entry.value for entry in self.values}


class OrderItemIn(_Request):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(1, ge=1, le=999)
    customization: Optional[CustomizationIn] = None


class AddressIn(_Request):
    full_name: Optional[str] = Field(None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)  # province
    postal_code: Optional[str] = Field(None, max_length=20)
    country: str = Field("ES", max_length=2)


class ShippingInfoIn(AddressIn):
    shipping_method_id: Optional[uuid.UUID] = None


class OrderCreate(_Request):
    """Checkout submission. Prices and statuses are always computed server-side."""

    idempotency_key: str = Field(..., min_length=8, max_length=128)
    items: list[OrderItemIn] = Field(..., min_length=1, max_length=100)
    shipping_info: Optional[ShippingInfoIn] = None
    billing_info: Optional[AddressIn] = None
    coupon_code: Optional[str] = Field(None, max_length=50)
    coupon_id: Optional[uuid.UUID] = None
    use_wallet: bool = False
    customer_email: Optional[EmailStr] = None


class OrderCancelRequest(_Request):
    # Required for guest orders; owners and admins may omit it
    idempotency_key: Optional[str] = Field(None, max_length=128)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentIntentRequest(_Request):
    # Guest orders prove ownership with the key they were submitted with
    idempotency_key: Optional[str] = Field(None, max_length=128)


class FinalizeRequest(_Request):
    payment_intent_id: str = Field(..., min_length=1, max_length=255)


# ============================================================================
# ORDER RESPONSE SCHEMAS
# ============================================================================


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    product_name: str
    variant_name: Optional[str]
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    customization: Optional[dict]


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: Optional[str]
    status: OrderStatus
    payment_status: PaymentStatus
    items: list[OrderItemResponse]

    subtotal: Decimal
    bundle_discount: Decimal
    bundle_discount_details: list[dict]
    coupon_code: Optional[str]
    coupon_discount: Decimal
    free_shipping: bool
    shipping_cost: Decimal
    tax: Decimal
    tax_rate: Decimal
    tax_type: Optional[str]
    tax_label: Optional[str]
    wallet_discount: Decimal
    used_wallet: bool
    total: Decimal
    currency: str

    stock_reservation_status: StockReservationStatus
    wallet_reservation_status: WalletReservationStatus
    post_payment_actions_completed: bool
    reservation_expires_at: Optional[datetime]
    paid_at: Optional[datetime]
    created_at: datetime


class PaymentIntentResponse(BaseModel):
    order_id: uuid.UUID
    requires_payment: bool
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Decimal
    amount_minor: int
    currency: str
    wallet_discount: Decimal


class FinalizeResponse(BaseModel):
    order_id: uuid.UUID
    finalized: bool
    payment_status: PaymentStatus


class ReservationCleanupResponse(BaseModel):
    released: int


class OrderCancelResponse(BaseModel):
    order_id: uuid.UUID
    cancelled: bool


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
