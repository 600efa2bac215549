"""Order lifecycle: checkout, payment intent, client finalize, cancellation.

Reservations follow one rule: anything reserved in a call is released if that
call fails afterwards (``release_on_error``). Reservations that survive a
successful call belong to the order and are captured by the payment webhook
or released by cancellation / expiry.
"""

import hmac
import uuid
from datetime import datetime, timedelta
from typing import Optional

from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.currency import ZERO, round_money, to_minor_units
from libs.common.datetime_utils import ensure_aware, utc_now
from libs.common.logging import get_logger
from services.store_service.errors import (
    ForbiddenError,
    NotFoundError,
    OrderStateError,
    PricingValidationError,
    StoreError,
)
from services.store_service.models import (
    AuditEntityType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    StockReservationStatus,
    StoreAuditLog,
    WalletReservationStatus,
)
from services.store_service.payment_gateway import PaymentGateway
from services.store_service.schemas import OrderCreate, PaymentIntentResponse
from services.store_service.services.finalization import finalize_order
from services.store_service.services.holds import release_on_error
from services.store_service.services.notifications import NotificationClient
from services.store_service.services.pricing import (
    PricingInput,
    PricingItemInput,
    PricingResult,
    ShippingQuery,
    calculate_order_pricing,
)
from services.store_service.services.stock_ledger import (
    ReservedItem,
    StockLine,
    release_stock,
    reserve_stock_hold,
)
from services.store_service.services.wallet_ledger import (
    held_amount,
    reconcile_wallet_reservation,
    release_wallet_reservation,
    reserve_wallet_funds,
    wallet_hold,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PRE_PAYMENT_STATUSES = frozenset({OrderStatus.PENDING})

# Charges in these states may still settle; expiry leaves their orders alone
_LIVE_CHARGE_STATUSES = frozenset({"succeeded", "processing", "requires_capture"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def log_audit(
    db: AsyncSession,
    entity_type: AuditEntityType,
    entity_id: uuid.UUID,
    action: str,
    performed_by: str,
    old_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
    notes: Optional[str] = None,
):
    """Log an audit event."""
    db.add(
        StoreAuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_value=old_value,
            new_value=new_value,
            performed_by=performed_by,
            notes=notes,
        )
    )


async def _find_by_key(db: AsyncSession, idempotency_key: str) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(Order.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


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


def _ensure_access(
    order: Order, user: Optional[AuthUser], idempotency_key: Optional[str] = None
) -> None:
    """Owner or admin; a guest order also opens with its idempotency key."""
    if user is not None and (user.is_admin or order.user_id == user.user_id):
        return
    if order.user_id is None and idempotency_key:
        if hmac.compare_digest(idempotency_key, order.idempotency_key):
            return
    raise ForbiddenError("You do not have access to this order")


def _ensure_unpaid(order: Order) -> None:
    if (
        order.payment_status == PaymentStatus.PAID
        or order.post_payment_actions_completed
        or order.status not in PRE_PAYMENT_STATUSES
    ):
        raise OrderStateError("Order can no longer be changed")


def _apply_pricing(order: Order, pricing: PricingResult) -> None:
    order.subtotal = pricing.subtotal
    order.bundle_discount = pricing.bundle_discount
    order.bundle_discount_details = [
        d.as_dict() for d in pricing.bundle_discount_details
    ]
    order.coupon_id = pricing.coupon_id
    order.coupon_code = pricing.coupon_code
    order.coupon_discount = pricing.coupon_discount
    order.free_shipping = pricing.free_shipping
    order.tax = pricing.tax
    order.tax_rate = pricing.tax_info.rate
    order.tax_type = pricing.tax_info.tax_type
    order.tax_label = pricing.tax_info.label
    order.shipping_cost = pricing.shipping_cost
    order.wallet_discount = pricing.wallet_discount
    order.used_wallet = pricing.wallet_discount > 0
    order.total = pricing.total
    order.expected_amount_minor = to_minor_units(pricing.total)
    order.requires_payment = pricing.total > 0


def _stored_pricing_input(order: Order) -> PricingInput:
    return PricingInput(
        items=[
            PricingItemInput(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
                customization=dict(item.customization or {}),
            )
            for item in order.items
        ],
        shipping=ShippingQuery.from_info(order.shipping_info),
        coupon_id=order.coupon_id,
        coupon_code=order.coupon_code,
        use_wallet=bool(order.use_wallet and order.user_id),
        user_id=order.user_id,
        wallet_credit=held_amount(order),
    )


def _replay(order: Order, user_id: Optional[str]) -> Order:
    if order.user_id != user_id:
        raise StoreError(
            "This checkout was already submitted",
            code="IDEMPOTENCY_CONFLICT",
            status_code=409,
        )
    logger.info("Idempotent replay for order key -> order=%s", order.id)
    return order


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


async def create_order(
    db: AsyncSession, payload: OrderCreate, user: Optional[AuthUser]
) -> tuple[Order, bool]:
    """Price the cart, reserve stock (and wallet funds) and persist the order.

    Returns ``(order, created)``; ``created`` is False for a replayed
    idempotency key.
    """
    settings = get_settings()
    user_id = user.user_id if user is not None else None

    existing = await _find_by_key(db, payload.idempotency_key)
    if existing is not None:
        return _replay(existing, user_id), False

    shipping_info = (
        payload.shipping_info.model_dump(mode="json") if payload.shipping_info else None
    )
    billing_info = (
        payload.billing_info.model_dump(mode="json") if payload.billing_info else None
    )
    use_wallet = bool(payload.use_wallet and user_id is not None)
    customer_email = payload.customer_email or (user.email if user else None)
    if customer_email is None and shipping_info:
        customer_email = shipping_info.get("email")

    pricing = await calculate_order_pricing(
        db,
        PricingInput(
            items=[
                PricingItemInput(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    customization=(
                        item.customization.as_map() if item.customization else {}
                    ),
                )
                for item in payload.items
            ],
            shipping=ShippingQuery.from_info(shipping_info),
            coupon_id=payload.coupon_id,
            coupon_code=payload.coupon_code,
            use_wallet=use_wallet,
            user_id=user_id,
        ),
    )

    order_id = uuid.uuid4()
    lines = [StockLine(i.product_id, i.variant_id, i.quantity) for i in pricing.items]

    try:
        async with release_on_error(db) as holds:
            reserved, stock_hold = await reserve_stock_hold(
                db, lines, order_id=order_id
            )
            holds.add(stock_hold)

            order = Order(
                id=order_id,
                idempotency_key=payload.idempotency_key,
                user_id=user_id,
                customer_email=customer_email,
                shipping_info=shipping_info,
                billing_info=billing_info,
                use_wallet=use_wallet,
                currency=settings.STORE_CURRENCY,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                stock_reservation=[r.as_dict() for r in reserved],
                stock_reservation_status=(
                    StockReservationStatus.RESERVED
                    if any(r.quantity > 0 for r in reserved)
                    else StockReservationStatus.NOT_REQUIRED
                ),
                reservation_expires_at=utc_now()
                + timedelta(minutes=settings.RESERVATION_TTL_MINUTES),
                wallet_reservation_status=WalletReservationStatus.NONE,
                wallet_reserved_amount=ZERO,
                post_payment_actions_completed=False,
            )
            _apply_pricing(order, pricing)
            order.items = [
                OrderItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=item.product_name,
                    variant_name=item.variant_name,
                    is_digital=item.is_digital,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_total=item.line_total,
                    customization=item.customization,
                )
                for item in pricing.items
            ]

            if pricing.wallet_discount > 0:
                await reserve_wallet_funds(db, order, pricing.wallet_discount)
                holds.add(wallet_hold(db, order))

            db.add(order)
            await db.commit()
    except IntegrityError:
        # A concurrent submission with the same key won the insert
        existing = await _find_by_key(db, payload.idempotency_key)
        if existing is None:
            raise
        return _replay(existing, user_id), False

    await db.refresh(order)
    logger.info(
        "Created order %s for %s (total %s %s)",
        order.id,
        user_id or "guest",
        order.total,
        order.currency,
    )
    return order, True


async def get_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    user: Optional[AuthUser],
    idempotency_key: Optional[str] = None,
) -> Order:
    order = await _load_order(db, order_id)
    _ensure_access(order, user, idempotency_key)
    return order


# ---------------------------------------------------------------------------
# Payment intent
# ---------------------------------------------------------------------------


async def _settle_without_charge(
    db: AsyncSession, order: Order, notifier: Optional[NotificationClient]
) -> None:
    """Nothing left to charge: settle now instead of waiting for a webhook."""
    await finalize_order(db, order.id, notifier=notifier)
    order = await _load_order(db, order.id)
    order.payment_status = PaymentStatus.PAID
    order.status = OrderStatus.PROCESSING
    if order.stock_reservation_status == StockReservationStatus.RESERVED:
        order.stock_reservation_status = StockReservationStatus.CAPTURED
    order.paid_at = utc_now()
    await db.commit()
    logger.info("Order %s fully covered without a charge; marked paid", order.id)


async def create_payment_intent(
    db: AsyncSession,
    order_id: uuid.UUID,
    user: Optional[AuthUser],
    gateway: PaymentGateway,
    *,
    idempotency_key: Optional[str] = None,
    notifier: Optional[NotificationClient] = None,
) -> PaymentIntentResponse:
    """Re-price the order, line the wallet reservation up and open a charge.

    Only the recomputed total is ever sent to the gateway.
    """
    order = await _load_order(db, order_id)
    _ensure_access(order, user, idempotency_key)
    _ensure_unpaid(order)

    pricing = await calculate_order_pricing(db, _stored_pricing_input(order))
    _apply_pricing(order, pricing)
    await db.commit()

    amount_minor = to_minor_units(pricing.total)
    intent = None
    async with release_on_error(db) as holds:
        holds.add(
            await reconcile_wallet_reservation(db, order, pricing.wallet_discount)
        )

        if amount_minor <= 0:
            await _settle_without_charge(db, order, notifier)
        else:
            intent = await gateway.create_charge(
                amount_minor,
                order.currency,
                {"order_id": str(order.id)},
                idempotency_key=f"order-{order.id}-charge-{amount_minor}",
            )
            order.payment_intent_id = intent.id
            order.expected_amount_minor = amount_minor
            await db.commit()

    await db.refresh(order)
    logger.info(
        "Payment intent for order %s: %s (%d minor units)",
        order.id,
        intent.id if intent else "none",
        amount_minor,
    )
    return PaymentIntentResponse(
        order_id=order.id,
        requires_payment=intent is not None,
        payment_intent_id=intent.id if intent else None,
        client_secret=intent.client_secret if intent else None,
        amount=round_money(order.total),
        amount_minor=amount_minor,
        currency=order.currency,
        wallet_discount=round_money(order.wallet_discount),
    )


async def finalize_from_client(
    db: AsyncSession,
    order_id: uuid.UUID,
    payment_intent_id: str,
    user: AuthUser,
    gateway: PaymentGateway,
    *,
    notifier: Optional[NotificationClient] = None,
) -> bool:
    """Client-side retry of the post-payment steps once the charge succeeded.

    The order only moves to ``paid`` through the webhook; this path just makes
    sure settlement is not delayed by a slow webhook delivery.
    """
    order = await _load_order(db, order_id)
    _ensure_access(order, user)

    charge = await gateway.retrieve_charge(payment_intent_id)
    if not charge.succeeded:
        raise PricingValidationError("Payment has not completed")
    if charge.metadata.get("order_id") != str(order.id):
        raise PricingValidationError("Payment does not belong to this order")
    if order.payment_intent_id and order.payment_intent_id != charge.id:
        raise PricingValidationError("Payment does not belong to this order")
    if (
        order.expected_amount_minor is not None
        and charge.amount_minor != order.expected_amount_minor
    ):
        logger.warning(
            "Client finalize for order %s with amount %s, expected %s",
            order.id,
            charge.amount_minor,
            order.expected_amount_minor,
        )
        raise PricingValidationError("Payment amount does not match this order")

    return await finalize_order(db, order.id, notifier=notifier)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


async def cancel_unpaid_order(
    db: AsyncSession,
    order: Order,
    *,
    performed_by: str,
    reason: Optional[str] = None,
) -> None:
    """Release the order's reservations, delete it and leave an audit entry.

    Each release records its new status on the order in the same commit, so a
    crash part way through never releases anything twice.
    """
    await release_wallet_reservation(db, order)

    if order.stock_reservation_status == StockReservationStatus.RESERVED:
        reserved = [ReservedItem.from_dict(r) for r in order.stock_reservation or []]
        order.stock_reservation_status = StockReservationStatus.RELEASED
        if any(r.quantity > 0 for r in reserved):
            await release_stock(db, reserved, order_id=order.id)
        else:
            await db.commit()

    await log_audit(
        db,
        AuditEntityType.ORDER,
        order.id,
        "cancelled",
        performed_by,
        old_value={
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "total": str(order.total),
            "user_id": order.user_id,
        },
        notes=reason,
    )
    await db.delete(order)
    await db.commit()
    logger.info("Cancelled and removed order %s (%s)", order.id, reason or "no reason")


async def cancel_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    idempotency_key: Optional[str],
    user: Optional[AuthUser],
    reason: Optional[str] = None,
) -> None:
    order = await _load_order(db, order_id)
    _ensure_access(order, user, idempotency_key)
    _ensure_unpaid(order)
    await cancel_unpaid_order(
        db,
        order,
        performed_by=user.user_id if user else "guest",
        reason=reason or "Cancelled by customer",
    )


async def release_expired_reservations(
    db: AsyncSession,
    *,
    gateway: Optional[PaymentGateway] = None,
    now: Optional[datetime] = None,
) -> int:
    """Cancel pending unpaid orders whose reservation window has passed.

    Orders whose charge may still settle are left for the webhook.
    """
    now = now or utc_now()
    result = await db.execute(
        select(Order.id).where(
            Order.status == OrderStatus.PENDING,
            Order.payment_status == PaymentStatus.PENDING,
            Order.post_payment_actions_completed.is_(False),
            Order.reservation_expires_at.is_not(None),
        )
    )
    candidate_ids = list(result.scalars().all())

    released = 0
    for order_id in candidate_ids:
        order = await db.get(Order, order_id, populate_existing=True)
        if order is None or ensure_aware(order.reservation_expires_at) > now:
            continue

        if order.payment_intent_id and gateway is not None:
            try:
                charge = await gateway.retrieve_charge(order.payment_intent_id)
            except StoreError as e:
                logger.warning(
                    "Could not check charge for expired order %s: %s", order.id, e
                )
                continue
            if charge.status in _LIVE_CHARGE_STATUSES:
                continue

        try:
            await cancel_unpaid_order(
                db, order, performed_by="system", reason="Reservation expired"
            )
            released += 1
        except Exception:
            logger.exception("Failed to release expired order %s", order_id)
            await db.rollback()

    if released:
        logger.info("Released %d expired order reservation(s)", released)
    return released
