"""Authoritative order pricing.

``calculate_order_pricing`` is the only place an order total is computed.
Order creation and payment-intent creation both call it, so a price sent by
the client is never trusted.

    total = subtotal - bundle_discount - coupon_discount
            + shipping_cost + tax - wallet_discount

Every intermediate amount is rounded to cents as soon as it is computed.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from libs.common.currency import ZERO, round_money, to_decimal
from libs.common.logging import get_logger
from services.store_service.errors import PricingValidationError
from services.store_service.models import (
    CustomizationSchemaRecord,
    Product,
    ProductVariant,
    Wallet,
)
from services.store_service.services.customization import (
    CustomizationSchema,
    ResolvedCustomization,
    parse_schema,
    resolve_customization,
)
from services.store_service.services.discounts import (
    AppliedBundleDiscount,
    BundleLine,
    TaxInfo,
    calculate_bundle_discounts,
    calculate_shipping,
    evaluate_coupon,
    get_active_bundle_discounts,
    get_tax_info,
    wallet_discount_for,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------


@dataclass
class PricingItemInput:
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = 1
    customization: dict[str, Any] = field(default_factory=dict)


@dataclass
class ShippingQuery:
    province: str = ""
    postal_code: str = ""
    method_id: Optional[uuid.UUID] = None

    @classmethod
    def from_info(cls, info: Optional[dict]) -> Optional["ShippingQuery"]:
        """Build from a stored/serialized shipping-info dict."""
        if not info:
            return None
        method_id = info.get("shipping_method_id")
        return cls(
            province=(info.get("state") or "").strip(),
            postal_code=(info.get("postal_code") or "").strip(),
            method_id=uuid.UUID(str(method_id)) if method_id else None,
        )


@dataclass
class PricingInput:
    items: list[PricingItemInput]
    shipping: Optional[ShippingQuery] = None
    coupon_id: Optional[uuid.UUID] = None
    coupon_code: Optional[str] = None
    use_wallet: bool = False
    user_id: Optional[str] = None
    # Funds this order already holds in reserved_balance; spendable on re-pricing
    wallet_credit: Decimal = ZERO


@dataclass
class PricedItem:
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    product_name: str
    variant_name: Optional[str]
    is_digital: bool
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    customization: Optional[dict[str, Any]] = None


@dataclass
class PricingResult:
    items: list[PricedItem]
    subtotal: Decimal
    bundle_discount: Decimal
    bundle_discount_details: list[AppliedBundleDiscount]
    coupon_discount: Decimal
    coupon_id: Optional[uuid.UUID]
    coupon_code: Optional[str]
    free_shipping: bool
    shipping_cost: Decimal
    tax: Decimal
    tax_info: TaxInfo
    total_before_wallet: Decimal
    wallet_discount: Decimal
    total: Decimal


# ---------------------------------------------------------------------------
# Item pricing
# ---------------------------------------------------------------------------


def resolve_base_price(
    product: Product, variant_id: Optional[uuid.UUID]
) -> tuple[Decimal, Optional[ProductVariant]]:
    """Variant price, else sale price when on sale and lower, else base price."""
    if product.has_variants:
        if variant_id is None:
            raise PricingValidationError(
                f"A variant must be selected for {product.name}"
            )
        variant = next((v for v in product.variants if v.id == variant_id), None)
        if variant is None:
            raise PricingValidationError(f"Variant not found for {product.name}")
        return round_money(variant.price), variant

    base = to_decimal(product.base_price)
    sale = to_decimal(product.sale_price)
    if product.on_sale and 0 < sale < base:
        return round_money(sale), None
    return round_money(base), None


async def _load_products(
    db: AsyncSession, product_ids: set[uuid.UUID]
) -> dict[uuid.UUID, Product]:
    result = await db.execute(
        select(Product)
        .where(Product.id.in_(product_ids))
        .execution_options(populate_existing=True)
    )
    products = {p.id: p for p in result.scalars().all()}

    for product_id in product_ids:
        product = products.get(product_id)
        if product is None:
            raise PricingValidationError(
                "Product not found", details={"product_id": str(product_id)}
            )
        if not product.is_active:
            raise PricingValidationError(
                f"{product.name} is no longer available",
                details={"product_id": str(product_id)},
            )
    return products


class _SchemaCache:
    def __init__(self, db: AsyncSession):
        self.db = db
        self._schemas: dict[uuid.UUID, CustomizationSchema] = {}

    async def get(self, schema_id: uuid.UUID) -> Optional[CustomizationSchema]:
        if schema_id not in self._schemas:
            record = await self.db.get(CustomizationSchemaRecord, schema_id)
            if record is None:
                return None
            self._schemas[schema_id] = parse_schema(record.fields or [])
        return self._schemas[schema_id]


async def _resolve_item_customization(
    schemas: _SchemaCache, product: Product, values: dict[str, Any]
) -> Optional[ResolvedCustomization]:
    schema = None
    if product.customization_schema_id is not None:
        schema = await schemas.get(product.customization_schema_id)

    if schema is None:
        if values:
            raise PricingValidationError(
                f"{product.name} does not accept customization"
            )
        return None
    return resolve_customization(schema, values)


async def price_items(
    db: AsyncSession, items: list[PricingItemInput]
) -> tuple[list[PricedItem], dict[uuid.UUID, Product]]:
    if not items:
        raise PricingValidationError("Order must include at least one item")

    products = await _load_products(db, {item.product_id for item in items})
    schemas = _SchemaCache(db)
    priced = []

    for item in items:
        product = products[item.product_id]
        base_price, variant = resolve_base_price(product, item.variant_id)
        custom = await _resolve_item_customization(
            schemas, product, item.customization or {}
        )

        quantity = max(1, int(item.quantity))
        unit_price = base_price
        selections = None
        if custom is not None:
            effective_base = custom.unit_price_override or base_price
            unit_price = round_money(effective_base + custom.modifier)
            # The customization's quantity replaces the submitted one before
            # bundle pooling and stock reservation see the line
            if custom.quantity_override:
                quantity = custom.quantity_override
            selections = custom.selections or None

        priced.append(
            PricedItem(
                product_id=product.id,
                variant_id=variant.id if variant else None,
                product_name=product.name,
                variant_name=variant.name if variant else None,
                is_digital=product.is_digital,
                unit_price=unit_price,
                quantity=quantity,
                line_total=round_money(unit_price * quantity),
                customization=selections,
            )
        )

    return priced, products


# ---------------------------------------------------------------------------
# Order pricing
# ---------------------------------------------------------------------------


async def _spendable_wallet_balance(
    db: AsyncSession, user_id: str, wallet_credit: Decimal
) -> Decimal:
    wallet = await db.scalar(select(Wallet).where(Wallet.user_id == user_id))
    if wallet is None:
        return ZERO
    return round_money(to_decimal(wallet.balance) + wallet_credit)


async def calculate_order_pricing(
    db: AsyncSession, pricing_input: PricingInput
) -> PricingResult:
    """Price a cart end to end.

    Raises PricingValidationError for anything that makes the cart unpriceable
    (unknown/inactive product, missing variant, bad customization, unmatched
    shipping zone, unusable shipping method).
    """
    items, products = await price_items(db, pricing_input.items)
    subtotal = round_money(sum((i.line_total for i in items), ZERO))

    # Bundles
    bundle_lines = [
        BundleLine(
            product_id=i.product_id,
            variant_id=i.variant_id,
            unit_price=i.unit_price,
            quantity=i.quantity,
            category_id=products[i.product_id].category_id,
            tags=list(products[i.product_id].tags or []),
        )
        for i in items
    ]
    bundles = calculate_bundle_discounts(
        bundle_lines, await get_active_bundle_discounts(db)
    )
    bundle_discount = min(round_money(bundles.total_discount), subtotal)
    subtotal_after_bundle = round_money(max(ZERO, subtotal - bundle_discount))

    # Coupon (evaluated against the pre-bundle subtotal, capped at what is left)
    user_id = pricing_input.user_id
    coupon = await evaluate_coupon(
        db,
        coupon_id=pricing_input.coupon_id,
        coupon_code=pricing_input.coupon_code,
        user_id=user_id,
        subtotal=subtotal,
    )
    coupon_discount = min(round_money(coupon.discount), subtotal_after_bundle)
    subtotal_after_discount = round_money(
        max(ZERO, subtotal_after_bundle - coupon_discount)
    )

    # Tax + shipping
    shipping = pricing_input.shipping
    tax_info = get_tax_info(shipping.province if shipping else None)
    tax = round_money(subtotal_after_discount * tax_info.rate)

    shipping_cost = ZERO
    if shipping is not None and not coupon.free_shipping:
        shipping_cost = await calculate_shipping(
            db,
            postal_code=shipping.postal_code,
            province=shipping.province,
            method_id=shipping.method_id,
            subtotal=subtotal,
        )

    total_before_wallet = round_money(subtotal_after_discount + shipping_cost + tax)

    # Wallet (registered customers only)
    wallet_discount = ZERO
    if pricing_input.use_wallet and user_id is not None:
        spendable = await _spendable_wallet_balance(
            db, user_id, round_money(pricing_input.wallet_credit)
        )
        wallet_discount = wallet_discount_for(spendable, total_before_wallet)

    total = round_money(max(ZERO, total_before_wallet - wallet_discount))

    return PricingResult(
        items=items,
        subtotal=subtotal,
        bundle_discount=bundle_discount,
        bundle_discount_details=bundles.applied,
        coupon_discount=coupon_discount,
        coupon_id=coupon.coupon_id,
        coupon_code=coupon.coupon_code,
        free_shipping=coupon.free_shipping,
        shipping_cost=shipping_cost,
        tax=tax,
        tax_info=tax_info,
        total_before_wallet=total_before_wallet,
        wallet_discount=wallet_discount,
        total=total,
    )
