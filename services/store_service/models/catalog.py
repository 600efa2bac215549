"""Store catalog models: products, variants, customization schemas, customers."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship


class CustomerRef(Base):
    """Read-only view of the shared customer directory (e-mail lookups)."""

    __tablename__ = "store_customers"
    __table_args__ = {"info": {"skip_autogenerate": True}}

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


# ============================================================================
# CUSTOMIZATION
# ============================================================================


class CustomizationSchemaRecord(Base):
    """Per-product customization form definition.

    ``fields`` holds the raw field list; it is parsed into typed field models
    by ``services.customization.parse_schema`` before any pricing happens.
    """

    __tablename__ = "store_customization_schemas"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    fields: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<CustomizationSchema {self.name}>"


# ============================================================================
# CATALOG MODELS
# ============================================================================


class Product(Base):
    """Products available in the store."""

    __tablename__ = "store_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Bundle matching
    category_id: Mapped[Optional[str]] = mapped_column(
        String(100), index=True, nullable=True
    )
    tags: Mapped[list] = mapped_column(JSONType, default=list)

    # Pricing
    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    sale_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    on_sale: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )

    # Inventory (``stock`` applies only when the product has no variants)
    stock: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    track_inventory: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )
    allow_backorder: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )

    # Digital goods
    is_digital: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    digital_files: Mapped[list] = mapped_column(JSONType, default=list)

    customization_schema_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("store_customization_schemas.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="product_stock_non_negative"),)

    # Relationships
    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def __repr__(self):
        return f"<Product {self.name}>"


class ProductVariant(Base):
    """Sellable variant of a product with its own price and stock."""

    __tablename__ = "store_product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("store_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="variant_stock_non_negative"),)

    product = relationship("Product", back_populates="variants")

    def __repr__(self):
        return f"<ProductVariant {self.name} stock={self.stock}>"
