"""Post-payment settlement.

``finalize_order`` runs every irreversible side effect of a paid order:

1. wallet debit          (fatal on failure)
2. coupon consumption    (fatal on failure)
3. digital access grants (logged and swallowed)
4. cashback credit       (logged and swallowed)
5. confirmation notice   (logged and swallowed)

Each step is guarded by its own existence check (debit transaction key,
CouponUsage row, DigitalAccess row, cashback transaction key), and
``post_payment_actions_completed`` is written last. A crash part way through
can therefore be retried from the top, and a call after completion is a
no-op.
"""

import uuid
from decimal import Decimal
from typing import Optional

from libs.common.config import get_settings
from libs.common.currency import ZERO, round_money, to_decimal
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.store_service.errors import CouponLimitError, NotFoundError
from services.store_service.models import (
    Coupon,
    CouponUsage,
    DigitalAccess,
    Order,
    Product,
)
from services.store_service.services.notifications import (
    ORDER_CONFIRMATION,
    NotificationClient,
    get_notifier,
)
from services.store_service.services.wallet_ledger import (
    credit_cashback,
    settle_order_wallet,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def _load_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def cashback_for(order: Order) -> Decimal:
    """Cashback on the part of the order the payment processor paid for."""
    paid_base = (
        to_decimal(order.subtotal)
        - to_decimal(order.coupon_discount)
        - to_decimal(order.wallet_discount)
    )
    if paid_base <= 0:
        return ZERO
    return round_money(paid_base * get_settings().CASHBACK_RATE)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


async def _consume_coupon(db: AsyncSession, order: Order) -> bool:
    existing = await db.scalar(
        select(CouponUsage.id).where(
            CouponUsage.coupon_id == order.coupon_id,
            CouponUsage.order_id == order.id,
        )
    )
    if existing is not None:
        return False

    result = await db.execute(
        select(Coupon)
        .where(Coupon.id == order.coupon_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    coupon = result.scalar_one_or_none()
    if coupon is None:
        logger.warning(
            "Coupon %s on order %s no longer exists", order.coupon_id, order.id
        )
        return False

    if coupon.max_uses and coupon.current_uses >= coupon.max_uses:
        # rollback expires the instance
        code = coupon.code
        await db.rollback()
        raise CouponLimitError(
            "This coupon has reached its usage limit",
            details={"coupon_code": code},
        )

    coupon.current_uses = (coupon.current_uses or 0) + 1
    coupon.updated_at = utc_now()
    db.add(
        CouponUsage(
            coupon_id=coupon.id,
            user_id=order.user_id,
            order_id=order.id,
            coupon_code=coupon.code,
            discount_amount=round_money(order.coupon_discount),
        )
    )
    await db.commit()
    logger.info(
        "Coupon %s used by %s on order %s (%d use(s))",
        coupon.code,
        order.user_id,
        order.id,
        coupon.current_uses,
    )
    return True


async def _grant_digital_access(db: AsyncSession, order: Order) -> int:
    digital_items = {}
    for item in order.items:
        if item.is_digital:
            digital_items.setdefault(item.product_id, item)
    if not digital_items:
        return 0

    result = await db.execute(
        select(DigitalAccess.product_id).where(DigitalAccess.order_id == order.id)
    )
    already_granted = set(result.scalars().all())

    result = await db.execute(
        select(Product).where(Product.id.in_(digital_items.keys()))
    )
    products = {p.id: p for p in result.scalars().all()}

    granted = 0
    for product_id, item in digital_items.items():
        if product_id in already_granted:
            continue
        product = products.get(product_id)
        db.add(
            DigitalAccess(
                user_id=order.user_id,
                customer_email=order.customer_email,
                order_id=order.id,
                product_id=product_id,
                product_name=item.product_name,
                files=list(product.digital_files or []) if product else [],
            )
        )
        granted += 1

    if granted:
        await db.commit()
        logger.info("Granted %d digital product(s) for order %s", granted, order.id)
    return granted


def _recipient(order: Order) -> Optional[str]:
    if order.customer_email:
        return order.customer_email
    for info in (order.shipping_info, order.billing_info):
        if info and info.get("email"):
            return info["email"]
    return None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def finalize_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    notifier: Optional[NotificationClient] = None,
) -> bool:
    """Run the settlement steps for a paid order.

    Returns False if the order was already finalized, True otherwise.
    WalletError and CouponLimitError propagate; the order stays unfinalized
    so the caller (webhook redelivery, client retry) can run it again.
    """
    order = await _load_order(db, order_id)
    if order.post_payment_actions_completed:
        logger.info("Order %s already finalized; skipping", order.id)
        return False

    # Wallet
    if order.user_id and order.used_wallet and to_decimal(order.wallet_discount) > 0:
        await settle_order_wallet(db, order)

    # Coupon
    if order.coupon_id and order.user_id:
        await _consume_coupon(db, order)

    # Digital access
    try:
        await _grant_digital_access(db, order)
    except Exception:
        logger.exception("Digital access grant failed for order %s", order.id)
        await db.rollback()
        await db.refresh(order)

    # Cashback
    if order.user_id:
        try:
            await credit_cashback(
                db,
                user_id=order.user_id,
                order_id=order.id,
                amount=cashback_for(order),
            )
        except Exception:
            logger.exception("Cashback credit failed for order %s", order.id)
            await db.rollback()
            await db.refresh(order)

    # Confirmation
    try:
        await (notifier or get_notifier()).send(
            ORDER_CONFIRMATION,
            order.id,
            to_email=_recipient(order),
            template_data={"total": str(order.total), "currency": order.currency},
        )
    except Exception:
        logger.exception("Confirmation notification failed for order %s", order.id)

    order.post_payment_actions_completed = True
    order.post_payment_actions_at = utc_now()
    await db.commit()
    logger.info("Finalized order %s", order.id)
    return True
