"""Store commerce models: orders, webhook events, digital access, audit logs."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.store_service.models.enums import (
    AuditEntityType,
    OrderStatus,
    PaymentStatus,
    StockReservationStatus,
    WalletReservationStatus,
    enum_values,
)
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============================================================================
# ORDER MODELS
# ============================================================================


class Order(Base):
    """Orders.

    Created ``pending``/``pending`` by checkout, re-priced when the payment
    intent is created, and moved to ``processing``/``paid`` (or deleted) by
    the payment webhook.
    """

    __tablename__ = "store_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False
    )

    # Customer (user_id NULL = guest checkout)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True, nullable=True
    )
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    billing_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Pricing inputs kept for re-pricing at payment time
    coupon_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    use_wallet: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )

    # Pricing results
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    bundle_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )
    bundle_discount_details: Mapped[list] = mapped_column(JSONType, default=list)
    coupon_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )
    free_shipping: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, server_default="0")
    tax_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), default=0, server_default="0"
    )
    tax_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    tax_label: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    shipping_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )
    wallet_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )
    used_wallet: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Lifecycle
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(
            OrderStatus, values_callable=enum_values, name="store_order_status_enum"
        ),
        default=OrderStatus.PENDING,
        server_default="pending",
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(
            PaymentStatus, values_callable=enum_values, name="store_payment_status_enum"
        ),
        default=PaymentStatus.PENDING,
        server_default="pending",
    )
    payment_mismatch: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    payment_mismatch_reason: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    payment_mismatch_details: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True
    )

    # Stock reservation
    stock_reservation_status: Mapped[StockReservationStatus] = mapped_column(
        SAEnum(
            StockReservationStatus,
            values_callable=enum_values,
            name="store_stock_reservation_status_enum",
        ),
        default=StockReservationStatus.NOT_REQUIRED,
        server_default="not_required",
    )
    stock_reservation: Mapped[list] = mapped_column(
        JSONType, default=list
    )  # [{"product_id": ..., "variant_id": ..., "quantity": 2}]
    reservation_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), index=True, nullable=True
    )

    # Wallet reservation
    wallet_reservation_status: Mapped[WalletReservationStatus] = mapped_column(
        SAEnum(
            WalletReservationStatus,
            values_callable=enum_values,
            name="store_wallet_reservation_status_enum",
        ),
        default=WalletReservationStatus.NONE,
        server_default="none",
    )
    wallet_reserved_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )

    # Payment processor
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True, nullable=True
    )
    expected_amount_minor: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )
    requires_payment: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )

    # Finalization guard; set exactly once, as the pipeline's last write
    post_payment_actions_completed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    post_payment_actions_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="order_total_non_negative"),
        Index("ix_store_orders_status_payment", "status", "payment_status"),
    )

    # Relationships
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Order {self.id} status={self.status} payment={self.payment_status}>"


class OrderItem(Base):
    """Order line items (server-priced snapshot)."""

    __tablename__ = "store_order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("store_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("store_products.id"), nullable=False
    )
    variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("store_product_variants.id"), nullable=True
    )

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_digital: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    customization: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_item_positive_quantity"),
    )

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem {self.product_name} qty={self.quantity}>"


# ============================================================================
# PAYMENT EVENTS
# ============================================================================


class WebhookEvent(Base):
    """One row per processed payment-processor event id."""

    __tablename__ = "store_webhook_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<WebhookEvent {self.id} {self.event_type}>"


# ============================================================================
# DIGITAL ACCESS
# ============================================================================


class DigitalAccess(Base):
    """Download entitlement for a digital product bought in an order."""

    __tablename__ = "store_digital_access"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True, nullable=True
    )
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    files: Mapped[list] = mapped_column(JSONType, default=list)

    download_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    max_downloads: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="unique_digital_access_grant"),
    )

    def __repr__(self):
        return f"<DigitalAccess order={self.order_id} product={self.product_id}>"


# ============================================================================
# AUDIT LOG
# ============================================================================


class StoreAuditLog(Base):
    """Audit trail for order, coupon and wallet events."""

    __tablename__ = "store_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    entity_type: Mapped[AuditEntityType] = mapped_column(
        SAEnum(
            AuditEntityType,
            values_callable=enum_values,
            name="store_audit_entity_type_enum",
        ),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)

    old_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        Index("ix_store_audit_logs_entity", "entity_type", "entity_id"),
    )

    def __repr__(self):
        return f"<StoreAuditLog {self.entity_type}:{self.entity_id} {self.action}>"
