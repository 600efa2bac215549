"""Stock ledger: all-or-nothing reservation and release of product stock.

Lines are grouped by (product, variant) first, so duplicate lines in one order
count once per unit. Every product and variant row a call touches is locked
(``SELECT ... FOR UPDATE``) and every check runs before any write, so a
reservation either decrements all rows or none.
"""

import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from libs.common.logging import get_logger
from services.store_service.errors import StockError
from services.store_service.models import (
    InventoryMovement,
    InventoryMovementType,
    Product,
    ProductVariant,
)
from services.store_service.services.holds import ReservationHold
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

LineKey = tuple[uuid.UUID, Optional[uuid.UUID]]


@dataclass
class StockLine:
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    quantity: int


@dataclass
class ReservedItem:
    """Snapshot entry; ``quantity`` is 0 for lines that skip stock tracking."""

    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    quantity: int

    def as_dict(self) -> dict:
        return {
            "product_id": str(self.product_id),
            "variant_id": str(self.variant_id) if self.variant_id else None,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReservedItem":
        variant_id = data.get("variant_id")
        return cls(
            product_id=uuid.UUID(str(data["product_id"])),
            variant_id=uuid.UUID(str(variant_id)) if variant_id else None,
            quantity=int(data.get("quantity") or 0),
        )


@dataclass
class StockShortage:
    code: str
    product_id: uuid.UUID
    product_name: Optional[str]
    variant_id: Optional[uuid.UUID]
    variant_name: Optional[str]
    available: int
    requested: int

    def to_error(self) -> StockError:
        return StockError(
            self.code,
            product_id=str(self.product_id),
            product_name=self.product_name,
            variant_id=str(self.variant_id) if self.variant_id else None,
            variant_name=self.variant_name,
            available=self.available,
            requested=self.requested,
        )


def group_lines(lines: Iterable[StockLine]) -> dict[LineKey, int]:
    grouped: dict[LineKey, int] = {}
    for line in lines:
        key = (line.product_id, line.variant_id)
        grouped[key] = grouped.get(key, 0) + int(line.quantity)
    return grouped


async def _load_rows(
    db: AsyncSession, keys: Iterable[LineKey], *, lock: bool
) -> tuple[dict[uuid.UUID, Product], dict[uuid.UUID, ProductVariant]]:
    keys = list(keys)
    product_ids = {pid for pid, _ in keys}
    variant_ids = {vid for _, vid in keys if vid is not None}

    product_stmt = select(Product).where(Product.id.in_(product_ids))
    variant_stmt = select(ProductVariant).where(ProductVariant.id.in_(variant_ids))
    if lock:
        product_stmt = product_stmt.with_for_update()
        variant_stmt = variant_stmt.with_for_update()

    # populate_existing so the locked read wins over any stale identity-map copy
    result = await db.execute(product_stmt.execution_options(populate_existing=True))
    products = {p.id: p for p in result.scalars().all()}

    variants: dict[uuid.UUID, ProductVariant] = {}
    if variant_ids:
        result = await db.execute(
            variant_stmt.execution_options(populate_existing=True)
        )
        variants = {v.id: v for v in result.scalars().all()}
    return products, variants


def _is_tracked(product: Product) -> bool:
    return bool(product.track_inventory) and not product.allow_backorder


def _stock_row(
    product: Product,
    variant_id: Optional[uuid.UUID],
    variants: dict[uuid.UUID, ProductVariant],
):
    """The row whose ``stock`` backs this line, or None if there is none."""
    if variant_id is not None:
        variant = variants.get(variant_id)
        if variant is not None and variant.product_id == product.id:
            return variant
        if product.has_variants:
            return None
        return product
    if product.has_variants:
        return None
    return product


def _find_shortage(
    grouped: dict[LineKey, int],
    products: dict[uuid.UUID, Product],
    variants: dict[uuid.UUID, ProductVariant],
) -> Optional[StockShortage]:
    for (product_id, variant_id), requested in grouped.items():
        product = products.get(product_id)
        if product is None:
            return StockShortage(
                StockError.OUT_OF_STOCK,
                product_id,
                None,
                variant_id,
                None,
                0,
                requested,
            )
        if not _is_tracked(product):
            continue

        row = _stock_row(product, variant_id, variants)
        available = int(row.stock) if row is not None else 0
        variant_name = row.name if isinstance(row, ProductVariant) else None

        if available <= 0:
            code = StockError.OUT_OF_STOCK
        elif requested > available:
            code = StockError.INSUFFICIENT_STOCK
        else:
            continue
        return StockShortage(
            code,
            product_id,
            product.name,
            variant_id,
            variant_name,
            available,
            requested,
        )
    return None


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


async def validate_stock(
    db: AsyncSession, lines: Iterable[StockLine]
) -> Optional[StockShortage]:
    """Read-only availability check. Returns the first shortage, or None."""
    grouped = group_lines(lines)
    products, variants = await _load_rows(db, grouped.keys(), lock=False)
    return _find_shortage(grouped, products, variants)


async def reserve_stock(
    db: AsyncSession, lines: Iterable[StockLine], *, order_id: uuid.UUID
) -> list[ReservedItem]:
    """Decrement stock for every tracked line in one transaction.

    Raises StockError (OUT_OF_STOCK / INSUFFICIENT_STOCK) without writing
    anything if any line cannot be satisfied.
    """
    grouped = group_lines(lines)
    products, variants = await _load_rows(db, grouped.keys(), lock=True)

    shortage = _find_shortage(grouped, products, variants)
    if shortage is not None:
        await db.rollback()
        logger.info(
            "Stock reservation refused for order %s: %s product=%s "
            "available=%d requested=%d",
            order_id,
            shortage.code,
            shortage.product_id,
            shortage.available,
            shortage.requested,
        )
        raise shortage.to_error()

    reserved = []
    for (product_id, variant_id), quantity in grouped.items():
        product = products[product_id]
        if not _is_tracked(product):
            reserved.append(ReservedItem(product_id, variant_id, 0))
            continue

        row = _stock_row(product, variant_id, variants)
        row.stock = int(row.stock) - quantity
        db.add(
            InventoryMovement(
                product_id=product_id,
                variant_id=variant_id,
                movement_type=InventoryMovementType.RESERVATION,
                quantity=-quantity,
                reference_type="order",
                reference_id=order_id,
            )
        )
        reserved.append(ReservedItem(product_id, variant_id, quantity))

    await db.commit()
    logger.info(
        "Reserved stock for order %s (%d line(s), %d unit(s))",
        order_id,
        len(reserved),
        sum(r.quantity for r in reserved),
    )
    return reserved


async def release_stock(
    db: AsyncSession, reserved: Iterable[ReservedItem], *, order_id: uuid.UUID
) -> int:
    """Give reserved units back in one transaction. Returns units restored."""
    items = [r for r in reserved if r.quantity > 0]
    if not items:
        return 0

    keys = [(r.product_id, r.variant_id) for r in items]
    products, variants = await _load_rows(db, keys, lock=True)

    restored = 0
    for item in items:
        product = products.get(item.product_id)
        if product is None:
            logger.warning(
                "Cannot release stock for missing product %s (order %s)",
                item.product_id,
                order_id,
            )
            continue
        row = _stock_row(product, item.variant_id, variants)
        if row is None:
            logger.warning(
                "Cannot release stock for missing variant %s (order %s)",
                item.variant_id,
                order_id,
            )
            continue
        row.stock = int(row.stock) + item.quantity
        restored += item.quantity
        db.add(
            InventoryMovement(
                product_id=item.product_id,
                variant_id=item.variant_id,
                movement_type=InventoryMovementType.RELEASE,
                quantity=item.quantity,
                reference_type="order",
                reference_id=order_id,
            )
        )

    await db.commit()
    logger.info("Released %d unit(s) of stock for order %s", restored, order_id)
    return restored


async def reserve_stock_hold(
    db: AsyncSession, lines: Iterable[StockLine], *, order_id: uuid.UUID
) -> tuple[list[ReservedItem], ReservationHold]:
    """``reserve_stock`` plus a handle that releases exactly what was taken."""
    reserved = await reserve_stock(db, lines, order_id=order_id)

    async def _release():
        await release_stock(db, reserved, order_id=order_id)

    return reserved, ReservationHold(f"stock for order {order_id}", _release)
