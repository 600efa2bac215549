"""Store Service models package."""

from services.store_service.models.catalog import (
    CustomerRef,
    CustomizationSchemaRecord,
    Product,
    ProductVariant,
)
from services.store_service.models.commerce import (
    DigitalAccess,
    Order,
    OrderItem,
    StoreAuditLog,
    WebhookEvent,
)
from services.store_service.models.enums import (
    AuditEntityType,
    BundleApplyTo,
    BundleDiscountType,
    CouponType,
    CustomizationFieldType,
    InventoryMovementType,
    OrderStatus,
    PaymentMismatchReason,
    PaymentStatus,
    StockReservationStatus,
    WalletReservationStatus,
    WalletTransactionType,
)
from services.store_service.models.inventory import InventoryMovement
from services.store_service.models.promotions import (
    BundleDiscount,
    Coupon,
    CouponUsage,
)
from services.store_service.models.shipping import ShippingMethod, ShippingZone
from services.store_service.models.wallet import Wallet, WalletTransaction

__all__ = [
    "AuditEntityType",
    "BundleApplyTo",
    "BundleDiscount",
    "BundleDiscountType",
    "Coupon",
    "CouponType",
    "CouponUsage",
    "CustomerRef",
    "CustomizationFieldType",
    "CustomizationSchemaRecord",
    "DigitalAccess",
    "InventoryMovement",
    "InventoryMovementType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMismatchReason",
    "PaymentStatus",
    "Product",
    "ProductVariant",
    "ShippingMethod",
    "ShippingZone",
    "StockReservationStatus",
    "StoreAuditLog",
    "Wallet",
    "WalletReservationStatus",
    "WalletTransaction",
    "WebhookEvent",
]
