"""Store promotion models: coupons, coupon redemptions, bundle discounts."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.store_service.models.enums import (
    BundleApplyTo,
    BundleDiscountType,
    CouponType,
    enum_values,
)
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

# ============================================================================
# COUPONS
# ============================================================================


class Coupon(Base):
    """Discount codes entered at checkout."""

    __tablename__ = "store_coupons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    coupon_type: Mapped[CouponType] = mapped_column(
        SAEnum(CouponType, values_callable=enum_values, name="store_coupon_type_enum"),
        nullable=False,
    )
    value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )  # percent for percentage coupons, currency amount for fixed
    max_discount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    min_purchase: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )
    starts_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Usage caps
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    max_uses_per_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Optional allow-list of customer e-mails (lower-cased)
    allowed_emails: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("current_uses >= 0", name="coupon_uses_non_negative"),
    )

    @validates("code")
    def _normalize_code(self, key, value: str) -> str:
        return value.strip().upper()

    def __repr__(self):
        return f"<Coupon {self.code} type={self.coupon_type}>"


class CouponUsage(Base):
    """One row per coupon redemption; the only source for per-user counts."""

    __tablename__ = "store_coupon_usage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("store_coupons.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    coupon_code: Mapped[str] = mapped_column(String(50), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0"
    )

    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="unique_coupon_order_usage"),
    )

    def __repr__(self):
        return f"<CouponUsage {self.coupon_code} order={self.order_id}>"


# ============================================================================
# BUNDLE DISCOUNTS
# ============================================================================


class BundleDiscount(Base):
    """Automatic multi-item promotions (buy 2 get 1 free, etc.)."""

    __tablename__ = "store_bundle_discounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    apply_to: Mapped[BundleApplyTo] = mapped_column(
        SAEnum(
            BundleApplyTo,
            values_callable=enum_values,
            name="store_bundle_apply_to_enum",
        ),
        default=BundleApplyTo.ALL,
        server_default="all",
    )
    category_ids: Mapped[list] = mapped_column(JSONType, default=list)
    product_ids: Mapped[list] = mapped_column(JSONType, default=list)
    tag_ids: Mapped[list] = mapped_column(JSONType, default=list)

    discount_type: Mapped[BundleDiscountType] = mapped_column(
        SAEnum(
            BundleDiscountType,
            values_callable=enum_values,
            name="store_bundle_discount_type_enum",
        ),
        nullable=False,
    )
    buy_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    get_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discount_percent: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(5, 2), nullable=True
    )
    fixed_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )

    priority: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    stackable: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )
    starts_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("buy_quantity > 0", name="bundle_buy_quantity_positive"),
    )

    def __repr__(self):
        return f"<BundleDiscount {self.name} type={self.discount_type}>"
