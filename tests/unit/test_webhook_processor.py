"""Unit tests for payment webhook processing.

Events are built and signed by the fake gateway, then fed through
handle_webhook exactly as the HTTP endpoint does.
"""

import uuid
from decimal import Decimal

import pytest
from services.store_service.errors import (
    WebhookRetryableError,
    WebhookSignatureError,
)
from services.store_service.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    StockReservationStatus,
    WebhookEvent,
)
from services.store_service.services.finalization import finalize_order
from services.store_service.services.webhook_processor import (
    CANCELLED,
    DUPLICATE,
    IGNORED,
    MISMATCH,
    PROCESSED,
    handle_webhook,
)
from sqlalchemy import func, select
from tests.factories import OrderFactory, ProductFactory, WalletFactory

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _order_with_charge(db, gateway, amount_minor=3499, **fields):
    """Pending order whose charge already exists at the gateway."""
    order_id = uuid.uuid4()
    charge = await gateway.create_charge(
        amount_minor, "eur", {"order_id": str(order_id)}, f"charge-{order_id}"
    )
    order = OrderFactory.create(
        id=order_id,
        payment_intent_id=charge.id,
        expected_amount_minor=amount_minor,
        **fields,
    )
    db.add(order)
    await db.commit()
    return order, charge


async def _reserved_order(db, gateway, stock_after=3, quantity=2):
    """Order that holds ``quantity`` units of a product left at ``stock_after``."""
    product = ProductFactory.create(stock=stock_after)
    db.add(product)
    await db.commit()
    order, charge = await _order_with_charge(
        db,
        gateway,
        stock_reservation_status=StockReservationStatus.RESERVED,
        stock_reservation=[
            {"product_id": str(product.id), "variant_id": None, "quantity": quantity}
        ],
    )
    return order, charge, product


async def _deliver(db, gateway, notifier, charge_id, **event):
    payload, signature = gateway.build_event(charge_id, **event)
    return await handle_webhook(
        db, payload, signature, gateway=gateway, notifier=notifier
    )


async def _event_count(db) -> int:
    return await db.scalar(select(func.count(WebhookEvent.id)))


async def _stock_of(db, product_id) -> int:
    return await db.scalar(
        select(Product.stock)
        .where(Product.id == product_id)
        .execution_options(populate_existing=True)
    )


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_success_marks_order_paid(db_session, gateway, notifier):
    """A matching success event finalizes and moves the order to processing."""
    order, charge, _ = await _reserved_order(db_session, gateway)

    result = await _deliver(db_session, gateway, notifier, charge.id)

    await db_session.refresh(order)
    assert result.outcome == PROCESSED
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.PROCESSING
    assert order.stock_reservation_status == StockReservationStatus.CAPTURED
    assert order.post_payment_actions_completed is True
    assert order.paid_at is not None
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_same_event_twice_is_processed_once(db_session, gateway, notifier):
    """Redelivery of an event id is answered as a duplicate."""
    order, charge = await _order_with_charge(db_session, gateway)
    payload, signature = gateway.build_event(charge.id, event_id="evt_repeat")

    first = await handle_webhook(
        db_session, payload, signature, gateway=gateway, notifier=notifier
    )
    second = await handle_webhook(
        db_session, payload, signature, gateway=gateway, notifier=notifier
    )

    assert first.outcome == PROCESSED
    assert second.outcome == DUPLICATE
    assert len(notifier.sent) == 1
    assert await _event_count(db_session) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_new_event_for_paid_order_is_benign(db_session, gateway, notifier):
    """A second success event for the same charge changes nothing."""
    order, charge = await _order_with_charge(db_session, gateway)

    await _deliver(db_session, gateway, notifier, charge.id)
    again = await _deliver(db_session, gateway, notifier, charge.id)

    await db_session.refresh(order)
    assert again.outcome == DUPLICATE
    assert order.payment_mismatch is False
    assert len(notifier.sent) == 1


# ---------------------------------------------------------------------------
# Mismatches
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_amount_mismatch_leaves_order_pending(db_session, gateway, notifier):
    """100 cents against an order expecting 3499 is flagged, not paid."""
    order, charge = await _order_with_charge(db_session, gateway, amount_minor=3499)

    result = await _deliver(db_session, gateway, notifier, charge.id, amount_minor=100)

    await db_session.refresh(order)
    assert result.outcome == MISMATCH
    assert order.payment_status == PaymentStatus.PENDING
    assert order.payment_mismatch is True
    assert order.payment_mismatch_reason == "amount_mismatch"
    assert order.payment_mismatch_details["amount_minor"] == 100
    assert order.payment_mismatch_details["expected_amount_minor"] == 3499
    assert order.post_payment_actions_completed is False
    assert notifier.sent == []
    assert await _event_count(db_session) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_currency_mismatch(db_session, gateway, notifier):
    """A charge in another currency is flagged."""
    order, charge = await _order_with_charge(db_session, gateway)

    result = await _deliver(db_session, gateway, notifier, charge.id, currency="usd")

    await db_session.refresh(order)
    assert result.outcome == MISMATCH
    assert order.payment_mismatch_reason == "currency_mismatch"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_reference_mismatch(db_session, gateway, notifier):
    """A charge other than the order's own intent is flagged."""
    order, _ = await _order_with_charge(db_session, gateway)
    stray = await gateway.create_charge(
        3499, "eur", {"order_id": str(order.id)}, "stray-charge"
    )

    result = await _deliver(db_session, gateway, notifier, stray.id)

    await db_session.refresh(order)
    assert result.outcome == MISMATCH
    assert order.payment_mismatch_reason == "payment_reference_mismatch"
    assert order.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.unit
async def test_other_charge_after_payment_is_already_paid(
    db_session, gateway, notifier
):
    """A different charge succeeding on a paid order is recorded as already paid."""
    order, charge = await _order_with_charge(db_session, gateway)
    await _deliver(db_session, gateway, notifier, charge.id)
    stray = await gateway.create_charge(
        3499, "eur", {"order_id": str(order.id)}, "late-charge"
    )

    result = await _deliver(db_session, gateway, notifier, stray.id)

    await db_session.refresh(order)
    assert result.outcome == MISMATCH
    assert order.payment_mismatch_reason == "already_paid"
    assert order.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_order_not_in_pending_status(db_session, gateway, notifier):
    """Orders outside the pre-payment statuses cannot be paid by webhook."""
    order, charge = await _order_with_charge(
        db_session, gateway, status=OrderStatus.CANCELLED
    )

    result = await _deliver(db_session, gateway, notifier, charge.id)

    await db_session.refresh(order)
    assert result.outcome == MISMATCH
    assert order.payment_mismatch_reason == "invalid_status"


# ---------------------------------------------------------------------------
# Failure events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payment_cancels_and_restores_stock(
    db_session, gateway, notifier
):
    """payment_failed releases reservations and removes the order."""
    order, charge, product = await _reserved_order(
        db_session, gateway, stock_after=3, quantity=2
    )
    order_id, product_id = order.id, product.id

    result = await _deliver(
        db_session,
        gateway,
        notifier,
        charge.id,
        event_type="payment_intent.payment_failed",
    )

    assert result.outcome == CANCELLED
    assert await db_session.get(Order, order_id) is None
    assert await _stock_of(db_session, product_id) == 5


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failure_after_payment_is_ignored(db_session, gateway, notifier):
    """A late failure event never undoes a paid order."""
    order, charge = await _order_with_charge(db_session, gateway)
    await _deliver(db_session, gateway, notifier, charge.id)

    result = await _deliver(
        db_session,
        gateway,
        notifier,
        charge.id,
        event_type="payment_intent.canceled",
    )

    await db_session.refresh(order)
    assert result.outcome == IGNORED
    assert order.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failure_after_settlement_is_ignored(db_session, gateway, notifier):
    """A failure event landing between settlement and the paid flag keeps the order."""
    order, charge, product = await _reserved_order(
        db_session, gateway, stock_after=3, quantity=2
    )
    order_id, product_id = order.id, product.id
    await finalize_order(db_session, order_id, notifier=notifier)

    result = await _deliver(
        db_session,
        gateway,
        notifier,
        charge.id,
        event_type="payment_intent.payment_failed",
    )

    kept = await db_session.get(Order, order_id, populate_existing=True)
    assert result.outcome == IGNORED
    assert result.note == "Order already settled"
    assert kept is not None
    assert kept.post_payment_actions_completed is True
    assert kept.stock_reservation_status == StockReservationStatus.RESERVED
    assert await _stock_of(db_session, product_id) == 3
    assert await _event_count(db_session) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failure_of_superseded_charge_is_ignored(
    db_session, gateway, notifier
):
    """Only the order's current charge can cancel it."""
    order, _, product = await _reserved_order(
        db_session, gateway, stock_after=3, quantity=2
    )
    order_id, product_id = order.id, product.id
    stale = await gateway.create_charge(
        3499, "eur", {"order_id": str(order_id)}, "stale-charge"
    )

    result = await _deliver(
        db_session,
        gateway,
        notifier,
        stale.id,
        event_type="payment_intent.payment_failed",
    )

    kept = await db_session.get(Order, order_id, populate_existing=True)
    assert result.outcome == IGNORED
    assert result.note == "Charge superseded"
    assert kept is not None
    assert kept.status == OrderStatus.PENDING
    assert await _stock_of(db_session, product_id) == 3


# ---------------------------------------------------------------------------
# Acknowledged without an order change
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_order_and_unhandled_types_are_ignored(
    db_session, gateway, notifier
):
    """Events that cannot be applied are stored and acknowledged."""
    charge = await gateway.create_charge(
        500, "eur", {"order_id": str(uuid.uuid4())}, "orphan"
    )

    unknown = await _deliver(db_session, gateway, notifier, charge.id)
    unhandled = await _deliver(
        db_session, gateway, notifier, charge.id, event_type="charge.refunded"
    )
    no_reference = await _deliver(db_session, gateway, notifier, charge.id, metadata={})

    assert unknown.outcome == IGNORED
    assert unhandled.outcome == IGNORED
    assert no_reference.outcome == IGNORED
    assert await _event_count(db_session) == 3


@pytest.mark.asyncio
@pytest.mark.unit
async def test_bad_signature_touches_nothing(db_session, gateway, notifier):
    """An unsigned or tampered delivery is rejected before any read."""
    order, charge = await _order_with_charge(db_session, gateway)
    payload, signature = gateway.build_event(charge.id)

    with pytest.raises(WebhookSignatureError):
        await handle_webhook(
            db_session, payload, None, gateway=gateway, notifier=notifier
        )
    with pytest.raises(WebhookSignatureError):
        await handle_webhook(
            db_session,
            payload.replace(b"3499", b"9999"),
            signature,
            gateway=gateway,
            notifier=notifier,
        )

    await db_session.refresh(order)
    assert order.payment_status == PaymentStatus.PENDING
    assert await _event_count(db_session) == 0


# ---------------------------------------------------------------------------
# Retryable failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_finalization_failure_asks_for_redelivery(
    db_session, gateway, notifier, member_id
):
    """A wallet that cannot cover the debit fails the event without storing it."""
    wallet = WalletFactory.create(user_id=member_id, balance=Decimal("0"))
    db_session.add(wallet)
    await db_session.commit()
    order, charge = await _order_with_charge(
        db_session,
        gateway,
        user_id=member_id,
        use_wallet=True,
        used_wallet=True,
        wallet_discount=Decimal("10.00"),
    )
    payload, signature = gateway.build_event(charge.id, event_id="evt_retry")

    with pytest.raises(WebhookRetryableError):
        await handle_webhook(
            db_session, payload, signature, gateway=gateway, notifier=notifier
        )

    await db_session.refresh(order)
    assert order.payment_status == PaymentStatus.PENDING
    assert await db_session.get(WebhookEvent, "evt_retry") is None

    # Redelivery succeeds once the wallet can cover the debit
    await db_session.refresh(wallet)
    wallet.balance = Decimal("10.00")
    await db_session.commit()

    result = await handle_webhook(
        db_session, payload, signature, gateway=gateway, notifier=notifier
    )

    await db_session.refresh(order)
    assert result.outcome == PROCESSED
    assert order.payment_status == PaymentStatus.PAID
