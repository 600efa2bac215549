"""Store domain errors.

Every error carries a machine-readable ``code``, an HTTP ``status_code`` and a
user-safe ``message``. ``details`` only ever holds data the client may see
(product names, available quantities). The app's exception handlers turn
these into ``{"detail", "code", "details"}`` response bodies.
"""

from typing import Any, Optional


class StoreError(Exception):
    """Base class for store errors."""

    code = "STORE_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


# ---------------------------------------------------------------------------
# Validation (deterministic, never retried automatically)
# ---------------------------------------------------------------------------


class PricingValidationError(StoreError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(StoreError):
    code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(StoreError):
    code = "FORBIDDEN"
    status_code = 403


class OrderStateError(StoreError):
    """The order is not in a state that allows the requested transition."""

    code = "INVALID_ORDER_STATE"
    status_code = 409


# ---------------------------------------------------------------------------
# Resource conflicts (client can adjust and retry)
# ---------------------------------------------------------------------------


class StockError(StoreError):
    status_code = 409

    OUT_OF_STOCK = "OUT_OF_STOCK"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        code: str,
        *,
        product_id: str,
        product_name: Optional[str],
        variant_id: Optional[str],
        variant_name: Optional[str],
        available: int,
        requested: int,
    ):
        label = product_name or "This product"
        if code == self.OUT_OF_STOCK:
            message = f"{label} is out of stock"
        else:
            message = f"Only {available} unit(s) of {label} available"
        super().__init__(
            message,
            code=code,
            details={
                "product_id": product_id,
                "product_name": product_name,
                "variant_id": variant_id,
                "variant_name": variant_name,
                "available": available,
                "requested": requested,
            },
        )
        self.available = available
        self.requested = requested


class WalletError(StoreError):
    status_code = 402

    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_WALLET_BALANCE"


class CouponLimitError(StoreError):
    code = "COUPON_LIMIT_REACHED"
    status_code = 409


# ---------------------------------------------------------------------------
# Transient / infrastructure (safe to retry)
# ---------------------------------------------------------------------------


class PaymentProcessorError(StoreError):
    """The payment processor rejected or failed a call."""

    code = "PAYMENT_PROCESSOR_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str = "Payment processor unavailable",
        *,
        processor_status: Optional[int] = None,
        response_data: Optional[dict] = None,
    ):
        super().__init__(message)
        # Kept for logs only, never serialized to clients
        self.processor_status = processor_status
        self.response_data = response_data


class WebhookSignatureError(StoreError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class WebhookRetryableError(StoreError):
    """Finalization failed; the processor should redeliver the event."""

    code = "WEBHOOK_PROCESSING_FAILED"
    status_code = 500
