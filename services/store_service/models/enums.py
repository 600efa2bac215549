"""Enum definitions for store service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class CustomizationFieldType(str, enum.Enum):
    DROPDOWN = "dropdown"
    RADIO_GROUP = "radio_group"
    CARD_SELECTOR = "card_selector"
    CHECKBOX = "checkbox"
    TEXT = "text"
    NUMBER = "number"
    COLOR_SELECTOR = "color_selector"
    DIMENSIONS = "dimensions"


class BundleApplyTo(str, enum.Enum):
    ALL = "all"
    CATEGORIES = "categories"
    PRODUCTS = "products"
    TAGS = "tags"


class BundleDiscountType(str, enum.Enum):
    BUY_X_GET_Y_FREE = "buy_x_get_y_free"
    BUY_X_GET_Y_PERCENT = "buy_x_get_y_percent"
    BUY_X_FIXED_PRICE = "buy_x_fixed_price"
    QUANTITY_PERCENT = "quantity_percent"


class CouponType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_SHIPPING = "free_shipping"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class StockReservationStatus(str, enum.Enum):
    RESERVED = "reserved"
    RELEASED = "released"
    CAPTURED = "captured"
    NOT_REQUIRED = "not_required"


class WalletReservationStatus(str, enum.Enum):
    NONE = "none"
    RESERVED = "reserved"
    RELEASED = "released"
    CAPTURED = "captured"


class WalletTransactionType(str, enum.Enum):
    DEBIT = "debit"
    CASHBACK = "cashback"
    REFUND = "refund"


class InventoryMovementType(str, enum.Enum):
    RESERVATION = "reservation"
    RELEASE = "release"


class PaymentMismatchReason(str, enum.Enum):
    ALREADY_PAID = "already_paid"
    INVALID_STATUS = "invalid_status"
    AMOUNT_MISMATCH = "amount_mismatch"
    CURRENCY_MISMATCH = "currency_mismatch"
    PAYMENT_REFERENCE_MISMATCH = "payment_reference_mismatch"


class AuditEntityType(str, enum.Enum):
    ORDER = "order"
    COUPON = "coupon"
    WALLET = "wallet"
