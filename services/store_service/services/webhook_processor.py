"""Payment webhook processing.

    verify -> dedupe -> locate order -> validate -> finalize -> transition

Every acknowledged branch stores a ``WebhookEvent`` row keyed by the event
id, so a redelivered event is answered without touching the order again.
The only branch that does not store one is a finalization failure: that
raises ``WebhookRetryableError`` so the processor redelivers.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.store_service.errors import WebhookRetryableError
from services.store_service.models import (
    Order,
    OrderStatus,
    PaymentMismatchReason,
    PaymentStatus,
    StockReservationStatus,
    WebhookEvent,
)
from services.store_service.payment_gateway import PaymentEvent, PaymentGateway
from services.store_service.services.finalization import finalize_order
from services.store_service.services.notifications import NotificationClient
from services.store_service.services.orders import (
    PRE_PAYMENT_STATUSES,
    cancel_unpaid_order,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
MISMATCH = "mismatch"
CANCELLED = "cancelled"


@dataclass
class WebhookResult:
    event_id: str
    outcome: str
    order_id: Optional[uuid.UUID] = None
    note: Optional[str] = None


async def _acknowledge(
    db: AsyncSession,
    event: PaymentEvent,
    outcome: str,
    *,
    order_id: Optional[uuid.UUID] = None,
    note: Optional[str] = None,
) -> WebhookResult:
    """Store the event record (plus anything pending in the session) and ack."""
    db.add(
        WebhookEvent(
            id=event.id,
            event_type=event.type,
            order_id=order_id,
            note=note,
            processed_at=utc_now(),
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        await db.rollback()
        logger.info("Webhook event %s recorded concurrently", event.id)
        return WebhookResult(event.id, DUPLICATE, order_id, note)
    return WebhookResult(event.id, outcome, order_id, note)


async def _locate_order(db: AsyncSession, reference: str) -> Optional[Order]:
    try:
        order_id = uuid.UUID(reference)
    except ValueError:
        return None
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _mismatch_reason(
    order: Order, event: PaymentEvent
) -> Optional[PaymentMismatchReason]:
    charge = event.charge
    if order.payment_status == PaymentStatus.PAID:
        return PaymentMismatchReason.ALREADY_PAID
    if order.status not in PRE_PAYMENT_STATUSES:
        return PaymentMismatchReason.INVALID_STATUS
    if order.expected_amount_minor is None or (
        charge.amount_minor != order.expected_amount_minor
    ):
        return PaymentMismatchReason.AMOUNT_MISMATCH
    if charge.currency.lower() != (order.currency or "").lower():
        return PaymentMismatchReason.CURRENCY_MISMATCH
    if not order.payment_intent_id or charge.id != order.payment_intent_id:
        return PaymentMismatchReason.PAYMENT_REFERENCE_MISMATCH
    return None


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


async def _handle_success(
    db: AsyncSession,
    order: Order,
    event: PaymentEvent,
    notifier: Optional[NotificationClient],
) -> WebhookResult:
    charge = event.charge
    if (
        order.payment_status == PaymentStatus.PAID
        and charge.id == order.payment_intent_id
    ):
        return await _acknowledge(
            db, event, DUPLICATE, order_id=order.id, note="Order already paid"
        )

    reason = _mismatch_reason(order, event)
    if reason is not None:
        order.payment_mismatch = True
        order.payment_mismatch_reason = reason.value
        order.payment_mismatch_details = {
            "event_id": event.id,
            "payment_intent_id": charge.id,
            "expected_payment_intent_id": order.payment_intent_id,
            "amount_minor": charge.amount_minor,
            "expected_amount_minor": order.expected_amount_minor,
            "currency": charge.currency,
            "expected_currency": order.currency,
        }
        logger.warning(
            "Payment mismatch on order %s: %s (event %s)",
            order.id,
            reason.value,
            event.id,
        )
        return await _acknowledge(
            db, event, MISMATCH, order_id=order.id, note=reason.value
        )

    order_id = order.id
    try:
        await finalize_order(db, order_id, notifier=notifier)
    except Exception as exc:
        logger.exception(
            "Finalization failed for order %s (event %s)", order_id, event.id
        )
        await db.rollback()
        raise WebhookRetryableError("Payment could not be finalized") from exc

    order = await _locate_order(db, str(order_id))
    order.payment_status = PaymentStatus.PAID
    order.status = OrderStatus.PROCESSING
    if order.stock_reservation_status == StockReservationStatus.RESERVED:
        order.stock_reservation_status = StockReservationStatus.CAPTURED
    order.paid_at = utc_now()
    order.payment_mismatch = False
    order.payment_mismatch_reason = None
    logger.info("Order %s paid via %s", order.id, charge.id)
    return await _acknowledge(db, event, PROCESSED, order_id=order.id)


async def _handle_failure(
    db: AsyncSession, order: Order, event: PaymentEvent
) -> WebhookResult:
    if order.payment_status == PaymentStatus.PAID:
        return await _acknowledge(
            db, event, IGNORED, order_id=order.id, note="Order already paid"
        )
    if order.post_payment_actions_completed:
        logger.warning(
            "Ignoring %s for settled order %s (event %s)",
            event.type,
            order.id,
            event.id,
        )
        return await _acknowledge(
            db, event, IGNORED, order_id=order.id, note="Order already settled"
        )
    if event.charge.id != order.payment_intent_id:
        logger.warning(
            "Ignoring %s for superseded charge %s on order %s (event %s)",
            event.type,
            event.charge.id,
            order.id,
            event.id,
        )
        return await _acknowledge(
            db, event, IGNORED, order_id=order.id, note="Charge superseded"
        )

    order_id = order.id
    try:
        await cancel_unpaid_order(
            db,
            order,
            performed_by="payment-webhook",
            reason=f"Payment failed ({event.type})",
        )
    except Exception as exc:
        logger.exception(
            "Compensation failed for order %s (event %s)", order_id, event.id
        )
        await db.rollback()
        raise WebhookRetryableError("Payment failure could not be processed") from exc

    return await _acknowledge(
        db, event, CANCELLED, order_id=order_id, note="Order cancelled"
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def process_payment_event(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    notifier: Optional[NotificationClient] = None,
) -> WebhookResult:
    """Apply one verified payment event to its order."""
    if await db.get(WebhookEvent, event.id) is not None:
        logger.info("Webhook event %s already processed", event.id)
        return WebhookResult(event.id, DUPLICATE)

    if not (event.is_success or event.is_failure):
        return await _acknowledge(
            db, event, IGNORED, note=f"Unhandled event type {event.type}"
        )

    reference = event.order_reference
    if not reference:
        logger.warning("Webhook event %s has no order reference", event.id)
        return await _acknowledge(db, event, IGNORED, note="Missing order reference")

    order = await _locate_order(db, reference)
    if order is None:
        logger.warning("Webhook event %s for unknown order %s", event.id, reference)
        return await _acknowledge(db, event, IGNORED, note="Order not found")

    if event.is_success:
        return await _handle_success(db, order, event, notifier)
    return await _handle_failure(db, order, event)


async def handle_webhook(
    db: AsyncSession,
    payload: bytes,
    signature: Optional[str],
    *,
    gateway: PaymentGateway,
    notifier: Optional[NotificationClient] = None,
) -> WebhookResult:
    """Verify a raw delivery and process it.

    Raises WebhookSignatureError before any state is read or written.
    """
    event = gateway.construct_event(payload, signature)
    logger.info("Webhook event %s (%s)", event.id, event.type)
    return await process_payment_event(db, event, notifier=notifier)
