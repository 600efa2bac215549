"""Unit tests for the order lifecycle service."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from libs.common.datetime_utils import utc_now
from services.store_service.errors import (
    ForbiddenError,
    OrderStateError,
    PaymentProcessorError,
    PricingValidationError,
    StockError,
    StoreError,
    WalletError,
)
from services.store_service.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    StockReservationStatus,
    StoreAuditLog,
    WalletReservationStatus,
)
from services.store_service.schemas import OrderCreate, OrderItemIn
from services.store_service.services import orders as orders_service
from services.store_service.services.orders import (
    cancel_order,
    create_order,
    create_payment_intent,
    finalize_from_client,
    get_order,
    release_expired_reservations,
)
from sqlalchemy import func, select
from tests.factories import (
    OrderFactory,
    ProductFactory,
    WalletFactory,
    make_admin_user,
    make_member_user,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _product(db, **overrides):
    product = ProductFactory.create(**overrides)
    db.add(product)
    await db.commit()
    return product


async def _wallet(db, user_id, balance):
    wallet = WalletFactory.create(user_id=user_id, balance=Decimal(balance))
    db.add(wallet)
    await db.commit()
    return wallet


def _checkout(product, quantity=1, key=None, **kwargs) -> OrderCreate:
    return OrderCreate(
        idempotency_key=key or f"checkout-{uuid.uuid4().hex}",
        items=[OrderItemIn(product_id=product.id, quantity=quantity)],
        **kwargs,
    )


async def _stock(db, product_id) -> int:
    return await db.scalar(select(Product.stock).where(Product.id == product_id))


async def _order_count(db) -> int:
    return await db.scalar(select(func.count(Order.id)))


# ---------------------------------------------------------------------------
# create_order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_prices_and_reserves(db_session, member_id):
    """A member checkout reserves stock and the wallet share of the total."""
    product = await _product(db_session, base_price=Decimal("10"), stock=5)
    wallet = await _wallet(db_session, member_id, "5")
    user = make_member_user(user_id=member_id)

    order, created = await create_order(
        db_session, _checkout(product, quantity=2, use_wallet=True), user
    )
    await db_session.refresh(wallet)

    assert created is True
    assert order.subtotal == Decimal("20.00")
    assert order.tax == Decimal("4.20")
    assert order.wallet_discount == Decimal("5.00")
    assert order.total == Decimal("19.20")
    assert order.expected_amount_minor == 1920
    assert order.used_wallet is True
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.stock_reservation_status == StockReservationStatus.RESERVED
    assert order.wallet_reservation_status == WalletReservationStatus.RESERVED
    assert order.reservation_expires_at is not None
    assert await _stock(db_session, product.id) == 3
    assert wallet.balance == Decimal("0.00")
    assert wallet.reserved_balance == Decimal("5.00")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_guest_wallet_request_is_ignored(db_session):
    """A guest asking to use a wallet gets no wallet discount."""
    product = await _product(db_session, base_price=Decimal("10"))

    order, _ = await create_order(db_session, _checkout(product, use_wallet=True), None)

    assert order.user_id is None
    assert order.wallet_discount == Decimal("0.00")
    assert order.used_wallet is False
    assert order.use_wallet is False
    assert order.wallet_reservation_status == WalletReservationStatus.NONE


@pytest.mark.asyncio
@pytest.mark.unit
async def test_replayed_key_returns_same_order(db_session, member_id):
    """Submitting the same key twice reserves stock once."""
    product = await _product(db_session, stock=5)
    user = make_member_user(user_id=member_id)
    payload = _checkout(product, quantity=2, key="checkout-replay-1")

    first, created_first = await create_order(db_session, payload, user)
    second, created_second = await create_order(db_session, payload, user)

    assert (created_first, created_second) == (True, False)
    assert first.id == second.id
    assert await _stock(db_session, product.id) == 3
    assert await _order_count(db_session) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_replayed_key_from_someone_else_conflicts(db_session, member_id):
    """Another customer cannot reuse an order's key."""
    product = await _product(db_session)
    payload = _checkout(product, key="checkout-shared-key")
    await create_order(db_session, payload, make_member_user(user_id=member_id))

    with pytest.raises(StoreError) as exc_info:
        await create_order(db_session, payload, make_member_user())

    assert exc_info.value.code == "IDEMPOTENCY_CONFLICT"
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stock_shortage_persists_nothing(db_session, member_id):
    """No order and no wallet movement when stock runs short."""
    product = await _product(db_session, stock=1)
    wallet = await _wallet(db_session, member_id, "5")
    product_id = product.id

    with pytest.raises(StockError):
        await create_order(
            db_session,
            _checkout(product, quantity=2, use_wallet=True),
            make_member_user(user_id=member_id),
        )

    await db_session.refresh(wallet)
    assert wallet.balance == Decimal("5.00")
    assert await _order_count(db_session) == 0
    assert await _stock(db_session, product_id) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_wallet_failure_gives_stock_back(db_session, member_id, monkeypatch):
    """If the wallet hold fails after stock was reserved, the stock returns."""
    product = await _product(db_session, stock=4)
    await _wallet(db_session, member_id, "5")
    product_id = product.id

    async def refuse(db, order, amount):
        raise WalletError("Wallet not found", code=WalletError.WALLET_NOT_FOUND)

    monkeypatch.setattr(orders_service, "reserve_wallet_funds", refuse)

    with pytest.raises(WalletError):
        await create_order(
            db_session,
            _checkout(product, quantity=3, use_wallet=True),
            make_member_user(user_id=member_id),
        )

    assert await _stock(db_session, product_id) == 4
    assert await _order_count(db_session) == 0


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_order_access_rules(db_session, member_id):
    """Owners, admins and key-holding guests can read; others cannot."""
    member_order = OrderFactory.create(user_id=member_id)
    guest_order = OrderFactory.create(idempotency_key="checkout-guest-secret")
    db_session.add_all([member_order, guest_order])
    await db_session.commit()

    owner = make_member_user(user_id=member_id)
    assert (await get_order(db_session, member_order.id, owner)).id == member_order.id
    assert await get_order(db_session, member_order.id, make_admin_user())
    assert await get_order(
        db_session, guest_order.id, None, "checkout-guest-secret"
    )

    with pytest.raises(ForbiddenError):
        await get_order(db_session, member_order.id, make_member_user())
    with pytest.raises(ForbiddenError):
        await get_order(db_session, guest_order.id, None, "checkout-wrong-key")
    with pytest.raises(ForbiddenError):
        await get_order(db_session, member_order.id, None, member_order.idempotency_key)


# ---------------------------------------------------------------------------
# create_payment_intent
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_intent_charges_recomputed_total(
    db_session, member_id, gateway, notifier
):
    """The charge is for the server total, re-priced at intent time."""
    product = await _product(db_session, base_price=Decimal("10"))
    user = make_member_user(user_id=member_id)
    order, _ = await create_order(db_session, _checkout(product), user)

    product.base_price = Decimal("20")
    await db_session.commit()

    response = await create_payment_intent(
        db_session, order.id, user, gateway, notifier=notifier
    )

    await db_session.refresh(order)
    assert response.requires_payment is True
    assert response.amount == Decimal("24.20")
    assert response.amount_minor == 2420
    assert response.client_secret
    assert order.total == Decimal("24.20")
    assert order.payment_intent_id == response.payment_intent_id
    assert order.expected_amount_minor == 2420

    charge_call = gateway.calls[-1]
    assert charge_call["amount_minor"] == 2420
    assert charge_call["metadata"] == {"order_id": str(order.id)}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_fully_wallet_covered_order_settles_without_charge(
    db_session, member_id, gateway, notifier
):
    """A zero total is finalized and marked paid immediately."""
    product = await _product(db_session, base_price=Decimal("10"), stock=3)
    wallet = await _wallet(db_session, member_id, "50")
    user = make_member_user(user_id=member_id)
    order, _ = await create_order(
        db_session, _checkout(product, use_wallet=True), user
    )

    response = await create_payment_intent(
        db_session, order.id, user, gateway, notifier=notifier
    )

    await db_session.refresh(order)
    await db_session.refresh(wallet)
    assert response.requires_payment is False
    assert response.payment_intent_id is None
    assert response.amount_minor == 0
    assert gateway.calls == []
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.PROCESSING
    assert order.stock_reservation_status == StockReservationStatus.CAPTURED
    assert order.wallet_reservation_status == WalletReservationStatus.CAPTURED
    assert order.post_payment_actions_completed is True
    assert wallet.balance == Decimal("37.90")
    assert wallet.reserved_balance == Decimal("0.00")
    assert wallet.total_spent == Decimal("12.10")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_gateway_failure_releases_new_wallet_hold(
    db_session, member_id, gateway, notifier
):
    """Funds reserved while creating the intent are returned if the charge fails."""
    product = await _product(db_session, base_price=Decimal("100"))
    wallet = await _wallet(db_session, member_id, "5")
    user = make_member_user(user_id=member_id)
    order, _ = await create_order(
        db_session, _checkout(product, use_wallet=True), user
    )

    # Top-up between checkout and payment changes the wallet share
    await db_session.refresh(wallet)
    wallet.balance = wallet.balance + Decimal("20")
    await db_session.commit()
    gateway.configure(should_succeed=False)

    with pytest.raises(PaymentProcessorError):
        await create_payment_intent(
            db_session, order.id, user, gateway, notifier=notifier
        )

    await db_session.refresh(wallet)
    await db_session.refresh(order)
    assert wallet.balance == Decimal("25.00")
    assert wallet.reserved_balance == Decimal("0.00")
    assert order.wallet_reservation_status == WalletReservationStatus.RELEASED
    assert order.payment_intent_id is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paid_order_cannot_open_new_intent(db_session, member_id, gateway):
    """Payment intents are only for unpaid pending orders."""
    order = OrderFactory.create(
        user_id=member_id,
        status=OrderStatus.PROCESSING,
        payment_status=PaymentStatus.PAID,
    )
    db_session.add(order)
    await db_session.commit()

    with pytest.raises(OrderStateError):
        await create_payment_intent(
            db_session, order.id, make_member_user(user_id=member_id), gateway
        )


# ---------------------------------------------------------------------------
# finalize_from_client
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_client_finalize_requires_succeeded_charge(
    db_session, member_id, gateway, notifier
):
    """Finalize only runs once the processor reports success, and never marks paid."""
    product = await _product(db_session, base_price=Decimal("10"))
    user = make_member_user(user_id=member_id)
    order, _ = await create_order(db_session, _checkout(product), user)
    intent = await create_payment_intent(
        db_session, order.id, user, gateway, notifier=notifier
    )

    with pytest.raises(PricingValidationError):
        await finalize_from_client(
            db_session, order.id, intent.payment_intent_id, user, gateway
        )

    gateway.mark_status(intent.payment_intent_id, "succeeded")
    finalized = await finalize_from_client(
        db_session, order.id, intent.payment_intent_id, user, gateway, notifier=notifier
    )

    await db_session.refresh(order)
    assert finalized is True
    assert order.post_payment_actions_completed is True
    assert order.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.unit
async def test_client_finalize_rejects_charge_for_other_order(
    db_session, member_id, gateway
):
    """A succeeded charge for another order does not finalize this one."""
    product = await _product(db_session)
    user = make_member_user(user_id=member_id)
    order, _ = await create_order(db_session, _checkout(product), user)
    other = await gateway.create_charge(
        1210, "eur", {"order_id": str(uuid.uuid4())}, "other-order"
    )
    gateway.mark_status(other.id, "succeeded")

    with pytest.raises(PricingValidationError):
        await finalize_from_client(db_session, order.id, other.id, user, gateway)


# ---------------------------------------------------------------------------
# Cancellation and expiry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_returns_stock_and_wallet(db_session, member_id):
    """Cancelling gives everything back, deletes the order and audits it."""
    product = await _product(db_session, base_price=Decimal("10"), stock=5)
    wallet = await _wallet(db_session, member_id, "5")
    user = make_member_user(user_id=member_id)
    order, _ = await create_order(
        db_session, _checkout(product, quantity=2, use_wallet=True), user
    )
    order_id = order.id

    await cancel_order(db_session, order_id, None, user, "Changed my mind")

    await db_session.refresh(wallet)
    assert await _stock(db_session, product.id) == 5
    assert wallet.balance == Decimal("5.00")
    assert wallet.reserved_balance == Decimal("0.00")
    assert await db_session.get(Order, order_id) is None

    audit = await db_session.scalar(
        select(StoreAuditLog).where(StoreAuditLog.entity_id == order_id)
    )
    assert audit.action == "cancelled"
    assert audit.performed_by == member_id
    assert audit.notes == "Changed my mind"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_guest_cancel_needs_order_key(db_session):
    """Guests cancel with the key their order was submitted with."""
    product = await _product(db_session, stock=2)
    order, _ = await create_order(
        db_session, _checkout(product, key="checkout-guest-cancel"), None
    )

    with pytest.raises(ForbiddenError):
        await cancel_order(db_session, order.id, "checkout-not-mine", None)

    await cancel_order(db_session, order.id, "checkout-guest-cancel", None)
    assert await _stock(db_session, product.id) == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_expiry_sweep_skips_live_charges(db_session, gateway):
    """Expired unpaid orders are released unless their charge may still settle."""
    past = utc_now() - timedelta(minutes=5)
    expired = OrderFactory.create(reservation_expires_at=past)
    fresh = OrderFactory.create()

    live_charge = await gateway.create_charge(3499, "eur", {}, "live")
    gateway.mark_status(live_charge.id, "processing")
    live = OrderFactory.create(
        reservation_expires_at=past, payment_intent_id=live_charge.id
    )

    dead_charge = await gateway.create_charge(3499, "eur", {}, "dead")
    abandoned = OrderFactory.create(
        reservation_expires_at=past, payment_intent_id=dead_charge.id
    )

    db_session.add_all([expired, fresh, live, abandoned])
    await db_session.commit()
    ids = {o.id for o in (expired, fresh, live, abandoned)}

    released = await release_expired_reservations(db_session, gateway=gateway)

    remaining = set(
        (await db_session.execute(select(Order.id).where(Order.id.in_(ids))))
        .scalars()
        .all()
    )
    assert released == 2
    assert remaining == {fresh.id, live.id}
