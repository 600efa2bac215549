"""Discount evaluation: bundle promotions, coupons, tax and shipping.

Bundle matching is pure (works on already-priced lines). Coupon and shipping
lookups read the database but never write to it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from libs.common.config import get_settings
from libs.common.currency import ZERO, floor_money, round_money, to_decimal
from libs.common.datetime_utils import ensure_aware, utc_now
from libs.common.logging import get_logger
from services.store_service.errors import PricingValidationError
from services.store_service.models import (
    BundleApplyTo,
    BundleDiscount,
    BundleDiscountType,
    Coupon,
    CouponType,
    CouponUsage,
    CustomerRef,
    ShippingMethod,
    ShippingZone,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

LineKey = tuple[uuid.UUID, Optional[uuid.UUID]]


def _in_window(
    starts_at: Optional[datetime], ends_at: Optional[datetime], now: datetime
) -> bool:
    starts_at = ensure_aware(starts_at)
    ends_at = ensure_aware(ends_at)
    if starts_at is not None and now < starts_at:
        return False
    if ends_at is not None and now > ends_at:
        return False
    return True


# ============================================================================
# TAX
# ============================================================================

# Canary Islands pay IGIC and Ceuta/Melilla pay IPSI instead of IVA; the store
# does not charge either.
_EXEMPT_REGIONS = {
    "las palmas": ("IGIC", "IGIC (Exento)"),
    "santa cruz de tenerife": ("IGIC", "IGIC (Exento)"),
    "ceuta": ("IPSI", "IPSI (Exento)"),
    "melilla": ("IPSI", "IPSI (Exento)"),
}


@dataclass(frozen=True)
class TaxInfo:
    rate: Decimal
    tax_type: str
    label: str


def get_tax_info(province: Optional[str]) -> TaxInfo:
    exempt = _EXEMPT_REGIONS.get((province or "").strip().lower())
    if exempt:
        return TaxInfo(rate=ZERO, tax_type=exempt[0], label=exempt[1])
    rate = get_settings().TAX_RATE
    return TaxInfo(rate=rate, tax_type="IVA", label=f"IVA ({rate * 100:.0f}%)")


# ============================================================================
# BUNDLE DISCOUNTS
# ============================================================================


@dataclass
class BundleLine:
    """A priced order line as seen by bundle matching."""

    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    unit_price: Decimal
    quantity: int
    category_id: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    @property
    def key(self) -> LineKey:
        return (self.product_id, self.variant_id)


@dataclass
class AppliedBundleDiscount:
    bundle_id: uuid.UUID
    bundle_name: str
    product_ids: list[uuid.UUID]
    original_price: Decimal
    discounted_price: Decimal
    saved_amount: Decimal

    def as_dict(self) -> dict:
        return {
            "bundle_id": str(self.bundle_id),
            "bundle_name": self.bundle_name,
            "product_ids": [str(p) for p in self.product_ids],
            "original_price": str(self.original_price),
            "discounted_price": str(self.discounted_price),
            "saved_amount": str(self.saved_amount),
        }


@dataclass
class BundleResult:
    total_discount: Decimal = ZERO
    applied: list[AppliedBundleDiscount] = field(default_factory=list)


def bundle_applies_to(discount: BundleDiscount, line: BundleLine) -> bool:
    if discount.apply_to == BundleApplyTo.ALL:
        return True
    if discount.apply_to == BundleApplyTo.CATEGORIES:
        categories = discount.category_ids or []
        return bool(line.category_id) and line.category_id in categories
    if discount.apply_to == BundleApplyTo.PRODUCTS:
        return str(line.product_id) in {str(p) for p in discount.product_ids or []}
    if discount.apply_to == BundleApplyTo.TAGS:
        wanted = set(discount.tag_ids or [])
        return any(tag in wanted for tag in line.tags)
    return False


def _take_units(
    lines: Iterable[BundleLine], count: int, remaining: dict[LineKey, int]
) -> list[tuple[BundleLine, int]]:
    """Consume up to ``count`` units from ``lines`` in the given order."""
    taken = []
    for line in lines:
        if count <= 0:
            break
        available = remaining.get(line.key, 0)
        used = min(available, count)
        if used > 0:
            remaining[line.key] = available - used
            taken.append((line, used))
            count -= used
    return taken


def _value(taken: list[tuple[BundleLine, int]]) -> Decimal:
    return round_money(sum((line.unit_price * n for line, n in taken), ZERO))


def _apply_bundle(
    discount: BundleDiscount,
    lines: list[BundleLine],
    remaining: dict[LineKey, int],
) -> Optional[AppliedBundleDiscount]:
    """Evaluate one bundle against the still-undiscounted units.

    ``remaining`` is decremented for every unit the bundle consumes. Callers
    pass a copy and keep it only when the bundle actually saves something.
    """
    eligible_qty = sum(remaining.get(line.key, 0) for line in lines)
    buy_qty = discount.buy_quantity
    if buy_qty <= 0 or eligible_qty < buy_qty:
        return None

    cheapest_first = sorted(lines, key=lambda line: line.unit_price)
    dearest_first = sorted(lines, key=lambda line: line.unit_price, reverse=True)
    sets = eligible_qty // buy_qty
    percent = to_decimal(discount.discount_percent) / 100

    if discount.discount_type == BundleDiscountType.BUY_X_GET_Y_FREE:
        free_units = min(sets * (discount.get_quantity or 1), sets * buy_qty)
        free = _take_units(cheapest_first, free_units, remaining)
        paid = _take_units(dearest_first, sets * buy_qty - free_units, remaining)
        saved = _value(free)
        original = round_money(_value(free) + _value(paid))
        touched = free + paid
        discounted = round_money(original - saved)

    elif discount.discount_type == BundleDiscountType.BUY_X_GET_Y_PERCENT:
        # Walk units cheapest first; every buy_qty-th unit gets the percentage off
        touched = _take_units(cheapest_first, sets * buy_qty, remaining)
        position = 0
        saved = ZERO
        for line, n in touched:
            for _ in range(n):
                position += 1
                if position % buy_qty == 0:
                    saved += line.unit_price * percent
        saved = round_money(saved)
        original = _value(touched)
        discounted = round_money(original - saved)

    elif discount.discount_type == BundleDiscountType.BUY_X_FIXED_PRICE:
        touched = _take_units(dearest_first, sets * buy_qty, remaining)
        original = _value(touched)
        discounted = round_money(to_decimal(discount.fixed_price) * sets)
        saved = round_money(max(ZERO, original - discounted))

    elif discount.discount_type == BundleDiscountType.QUANTITY_PERCENT:
        touched = _take_units(cheapest_first, eligible_qty, remaining)
        original = _value(touched)
        saved = round_money(original * percent)
        discounted = round_money(original - saved)

    else:
        return None

    if saved <= 0:
        return None

    product_ids = list(dict.fromkeys(line.product_id for line, _ in touched))
    return AppliedBundleDiscount(
        bundle_id=discount.id,
        bundle_name=discount.name,
        product_ids=product_ids,
        original_price=original,
        discounted_price=discounted,
        saved_amount=saved,
    )


def calculate_bundle_discounts(
    lines: list[BundleLine], discounts: list[BundleDiscount]
) -> BundleResult:
    """Apply bundles in the given (priority) order.

    A unit consumed by one bundle is never offered to a later one. Evaluation
    stops after the first non-stackable bundle that saves money.
    """
    remaining: dict[LineKey, int] = {}
    for line in lines:
        remaining[line.key] = remaining.get(line.key, 0) + line.quantity

    result = BundleResult()
    for discount in discounts:
        eligible = [line for line in lines if bundle_applies_to(discount, line)]
        if not eligible:
            continue

        trial = dict(remaining)
        applied = _apply_bundle(discount, _merge_lines(eligible), trial)
        if applied is None:
            continue

        remaining = trial
        result.applied.append(applied)
        result.total_discount = round_money(
            result.total_discount + applied.saved_amount
        )
        if not discount.stackable:
            break

    return result


def _merge_lines(lines: list[BundleLine]) -> list[BundleLine]:
    # Duplicate (product, variant) lines share one entry in the remaining map
    seen: dict[LineKey, BundleLine] = {}
    for line in lines:
        seen.setdefault(line.key, line)
    return list(seen.values())


async def get_active_bundle_discounts(
    db: AsyncSession, now: Optional[datetime] = None
) -> list[BundleDiscount]:
    now = now or utc_now()
    result = await db.execute(
        select(BundleDiscount).where(BundleDiscount.is_active.is_(True))
    )
    discounts = [
        d for d in result.scalars().all() if _in_window(d.starts_at, d.ends_at, now)
    ]
    return sorted(discounts, key=lambda d: d.priority or 0, reverse=True)


# ============================================================================
# COUPONS
# ============================================================================


@dataclass
class CouponResult:
    discount: Decimal = ZERO
    coupon_id: Optional[uuid.UUID] = None
    coupon_code: Optional[str] = None
    free_shipping: bool = False


async def _find_coupon(
    db: AsyncSession, coupon_id: Optional[uuid.UUID], coupon_code: Optional[str]
) -> Optional[Coupon]:
    if coupon_id is not None:
        coupon = await db.get(Coupon, coupon_id)
        if coupon is not None:
            return coupon

    code = (coupon_code or "").strip().upper()
    if not code:
        return None
    result = await db.execute(
        select(Coupon).where(Coupon.code == code, Coupon.is_active.is_(True))
    )
    return result.scalars().first()


async def evaluate_coupon(
    db: AsyncSession,
    *,
    coupon_id: Optional[uuid.UUID],
    coupon_code: Optional[str],
    user_id: Optional[str],
    subtotal: Decimal,
    now: Optional[datetime] = None,
) -> CouponResult:
    """Work out what a coupon is worth on this cart.

    An ineligible or unknown coupon is worth nothing; it is not an error.
    Checks run in a fixed order: active, date window, minimum purchase,
    global cap, e-mail allow-list, per-user cap.
    """
    coupon = await _find_coupon(db, coupon_id, coupon_code)
    if coupon is None:
        return CouponResult()

    now = now or utc_now()
    if not coupon.is_active:
        return CouponResult()
    if not _in_window(coupon.starts_at, coupon.ends_at, now):
        return CouponResult()

    min_purchase = to_decimal(coupon.min_purchase)
    if min_purchase > 0 and subtotal < min_purchase:
        return CouponResult()

    if coupon.max_uses and coupon.current_uses >= coupon.max_uses:
        return CouponResult()

    if coupon.allowed_emails:
        if user_id is None:
            return CouponResult()
        customer = await db.get(CustomerRef, user_id)
        email = (customer.email or "").strip().lower() if customer else ""
        allowed = {str(e).strip().lower() for e in coupon.allowed_emails}
        if not email or email not in allowed:
            return CouponResult()

    if coupon.max_uses_per_user and user_id is not None:
        used = await db.scalar(
            select(func.count(CouponUsage.id)).where(
                CouponUsage.coupon_id == coupon.id,
                CouponUsage.user_id == user_id,
            )
        )
        if (used or 0) >= coupon.max_uses_per_user:
            return CouponResult()

    value = to_decimal(coupon.value)
    discount = ZERO
    free_shipping = False
    if coupon.coupon_type == CouponType.PERCENTAGE:
        discount = round_money(subtotal * value / 100)
        max_discount = to_decimal(coupon.max_discount)
        if max_discount > 0 and discount > max_discount:
            discount = max_discount
    elif coupon.coupon_type == CouponType.FIXED:
        discount = min(value, subtotal)
    elif coupon.coupon_type == CouponType.FREE_SHIPPING:
        free_shipping = True

    return CouponResult(
        discount=round_money(discount),
        coupon_id=coupon.id,
        coupon_code=coupon.code,
        free_shipping=free_shipping,
    )


# ============================================================================
# SHIPPING
# ============================================================================


def postal_code_matches(postal_code: str, patterns: Iterable[str]) -> bool:
    """Match a postal code against range, list or single-code patterns.

    Patterns look like ``"35000-35999"``, ``"51001,52001"`` or ``"28001"``.
    """
    try:
        code = int(postal_code.strip())
    except ValueError:
        return False

    for pattern in patterns:
        pattern = str(pattern)
        try:
            if "-" in pattern:
                start, end = (int(part.strip()) for part in pattern.split("-", 1))
                if start <= code <= end:
                    return True
            elif "," in pattern:
                listed = {int(p.strip()) for p in pattern.split(",") if p.strip()}
                if code in listed:
                    return True
            elif int(pattern.strip()) == code:
                return True
        except ValueError:
            logger.warning("Skipping malformed postal code pattern %r", pattern)
    return False


def zone_matches(zone: ShippingZone, postal_code: str, province: str) -> bool:
    if postal_code and zone.postal_codes and postal_code_matches(
        postal_code, zone.postal_codes
    ):
        return True
    wanted = province.strip().lower()
    if wanted and zone.provinces:
        return any(str(p).strip().lower() == wanted for p in zone.provinces)
    return False


async def calculate_shipping(
    db: AsyncSession,
    *,
    postal_code: str,
    province: str,
    method_id: Optional[uuid.UUID],
    subtotal: Decimal,
) -> Decimal:
    """Shipping cost for a delivery address and chosen method."""
    if method_id is None:
        raise PricingValidationError("Shipping method is required")

    result = await db.execute(
        select(ShippingZone).where(ShippingZone.is_active.is_(True))
    )
    zones = sorted(result.scalars().all(), key=lambda z: z.priority or 0, reverse=True)
    zone = next((z for z in zones if zone_matches(z, postal_code, province)), None)
    if zone is None:
        raise PricingValidationError("No shipping zone matches the provided address")

    method = await db.get(ShippingMethod, method_id)
    if method is None:
        raise PricingValidationError("Shipping method not found")
    if not method.is_active:
        raise PricingValidationError("Shipping method is inactive")
    if method.zone_id != zone.id:
        raise PricingValidationError("Shipping method does not match the address zone")

    threshold = to_decimal(method.free_shipping_threshold)
    if threshold > 0 and subtotal >= threshold:
        return ZERO

    base_price = to_decimal(method.base_price)
    if base_price < 0:
        raise PricingValidationError("Invalid shipping price")
    return round_money(base_price)


# ============================================================================
# WALLET
# ============================================================================


def wallet_discount_for(spendable: Decimal, total_before_wallet: Decimal) -> Decimal:
    """Rounded down so the wallet never covers more than is actually owed."""
    return floor_money(max(ZERO, min(spendable, total_before_wallet)))
