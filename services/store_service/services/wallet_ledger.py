"""Wallet ledger: reserve, release and capture store credit for orders.

Every operation is one transaction over the locked wallet row plus the
order's reservation fields:

- reserve:  balance -> reserved_balance  (holdings unchanged)
- release:  reserved_balance -> balance  (holdings unchanged, ``refund`` entry)
- capture:  reserved_balance -> total_spent  (holdings shrink, ``debit`` entry)

Release and capture clamp to what the order actually holds, so a stale or
repeated call can never move more than was reserved.
"""

import uuid
from decimal import Decimal
from typing import Optional

from libs.common.config import get_settings
from libs.common.currency import ZERO, round_money, to_decimal
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.store_service.errors import WalletError
from services.store_service.models import (
    Order,
    Wallet,
    WalletReservationStatus,
    WalletTransaction,
    WalletTransactionType,
)
from services.store_service.services.holds import ReservationHold
from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


def order_debit_key(order_id: uuid.UUID) -> str:
    return f"order-{order_id}-wallet-debit"


def order_cashback_key(order_id: uuid.UUID) -> str:
    return f"order-{order_id}-cashback"


def held_amount(order: Order) -> Decimal:
    """What this order currently holds in its owner's reserved_balance."""
    if order.wallet_reservation_status != WalletReservationStatus.RESERVED:
        return ZERO
    return round_money(order.wallet_reserved_amount)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_wallet(
    db: AsyncSession, user_id: str, *, lock: bool = False
) -> Optional[Wallet]:
    stmt = select(Wallet).where(Wallet.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _existing_transaction(
    db: AsyncSession, idempotency_key: str
) -> Optional[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction).where(
            WalletTransaction.idempotency_key == idempotency_key
        )
    )
    return result.scalar_one_or_none()


def _record(
    db: AsyncSession,
    wallet: Wallet,
    *,
    transaction_type: WalletTransactionType,
    amount: Decimal,
    balance_before: Decimal,
    order_id: Optional[uuid.UUID],
    idempotency_key: str,
    description: str,
) -> WalletTransaction:
    txn = WalletTransaction(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        idempotency_key=idempotency_key,
        transaction_type=transaction_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=round_money(wallet.balance),
        order_id=order_id,
        description=description,
    )
    db.add(txn)
    wallet.updated_at = utc_now()
    return txn


# ---------------------------------------------------------------------------
# Reserve / release / capture
# ---------------------------------------------------------------------------


async def reserve_wallet_funds(
    db: AsyncSession, order: Order, amount: Decimal
) -> Decimal:
    """Move ``amount`` from the owner's balance into reserved_balance.

    Raises WalletError when the wallet is missing or short.
    """
    amount = round_money(amount)
    if amount <= 0:
        return ZERO

    wallet = await get_wallet(db, order.user_id, lock=True) if order.user_id else None
    if wallet is None:
        await db.rollback()
        raise WalletError("Wallet not found", code=WalletError.WALLET_NOT_FOUND)

    balance = round_money(wallet.balance)
    if balance < amount:
        await db.rollback()
        raise WalletError(
            "Not enough wallet balance for this order",
            code=WalletError.INSUFFICIENT_BALANCE,
            details={"available": str(balance), "requested": str(amount)},
        )

    wallet.balance = balance - amount
    wallet.reserved_balance = round_money(wallet.reserved_balance) + amount
    wallet.updated_at = utc_now()

    order.wallet_reserved_amount = held_amount(order) + amount
    order.wallet_reservation_status = WalletReservationStatus.RESERVED

    await db.commit()
    logger.info(
        "Reserved %s from wallet %s for order %s (balance now %s)",
        amount,
        wallet.id,
        order.id,
        wallet.balance,
    )
    return amount


async def release_wallet_reservation(
    db: AsyncSession, order: Order, amount: Optional[Decimal] = None
) -> Decimal:
    """Return reserved funds to the balance. Returns the amount released."""
    held = held_amount(order)
    requested = held if amount is None else round_money(amount)
    if held <= 0 or requested <= 0 or not order.user_id:
        return ZERO

    wallet = await get_wallet(db, order.user_id, lock=True)
    if wallet is None:
        logger.warning(
            "Order %s holds %s but its wallet is gone; clearing reservation",
            order.id,
            held,
        )
        order.wallet_reserved_amount = ZERO
        order.wallet_reservation_status = WalletReservationStatus.RELEASED
        await db.commit()
        return ZERO

    released = min(requested, held, round_money(wallet.reserved_balance))
    balance_before = round_money(wallet.balance)
    if released > 0:
        wallet.balance = balance_before + released
        wallet.reserved_balance = round_money(wallet.reserved_balance) - released
        _record(
            db,
            wallet,
            transaction_type=WalletTransactionType.REFUND,
            amount=released,
            balance_before=balance_before,
            order_id=order.id,
            idempotency_key=f"order-{order.id}-wallet-release-{uuid.uuid4().hex}",
            description=f"Released reservation for order {order.id}",
        )

    remaining = round_money(held - released)
    order.wallet_reserved_amount = remaining
    if remaining <= 0:
        order.wallet_reserved_amount = ZERO
        order.wallet_reservation_status = WalletReservationStatus.RELEASED

    await db.commit()
    logger.info("Released %s of wallet reservation for order %s", released, order.id)
    return released


def _capture_locked(wallet: Wallet, order: Order, amount: Decimal) -> Decimal:
    captured = min(amount, held_amount(order), round_money(wallet.reserved_balance))
    if captured <= 0:
        return ZERO
    wallet.reserved_balance = round_money(wallet.reserved_balance) - captured
    wallet.total_spent = round_money(wallet.total_spent) + captured
    order.wallet_reserved_amount = round_money(held_amount(order) - captured)
    return captured


async def capture_wallet_reservation(
    db: AsyncSession, order: Order, amount: Optional[Decimal] = None
) -> Decimal:
    """Turn reserved funds into spent funds. Returns the amount captured.

    Whatever the order still holds after capturing ``amount`` goes back to
    the balance in the same transaction.
    """
    held = held_amount(order)
    requested = held if amount is None else round_money(amount)
    if held <= 0 or requested <= 0 or not order.user_id:
        return ZERO

    wallet = await get_wallet(db, order.user_id, lock=True)
    if wallet is None:
        await db.rollback()
        raise WalletError("Wallet not found", code=WalletError.WALLET_NOT_FOUND)

    balance_before = round_money(wallet.balance)
    captured = _capture_locked(wallet, order, requested)
    if captured > 0:
        _record(
            db,
            wallet,
            transaction_type=WalletTransactionType.DEBIT,
            amount=captured,
            balance_before=balance_before,
            order_id=order.id,
            idempotency_key=order_debit_key(order.id),
            description=f"Payment for order {order.id}",
        )

    leftover = min(held_amount(order), round_money(wallet.reserved_balance))
    if leftover > 0:
        wallet.balance = balance_before + leftover
        wallet.reserved_balance = round_money(wallet.reserved_balance) - leftover
        _record(
            db,
            wallet,
            transaction_type=WalletTransactionType.REFUND,
            amount=leftover,
            balance_before=balance_before,
            order_id=order.id,
            idempotency_key=f"order-{order.id}-wallet-release-{uuid.uuid4().hex}",
            description=f"Released reservation for order {order.id}",
        )
    order.wallet_reserved_amount = ZERO
    order.wallet_reservation_status = WalletReservationStatus.CAPTURED

    await db.commit()
    logger.info(
        "Captured %s of wallet reservation for order %s (%s returned)",
        captured,
        order.id,
        leftover,
    )
    return captured


async def reconcile_wallet_reservation(
    db: AsyncSession, order: Order, target: Decimal
) -> Optional[ReservationHold]:
    """Make the order's reservation match ``target``.

    Within WALLET_EPSILON of the current hold nothing happens. Otherwise the
    old hold is released and a new one taken. Returns a hold for a newly
    taken reservation (None when nothing new was reserved).
    """
    target = round_money(target)
    current = held_amount(order)
    epsilon = get_settings().WALLET_EPSILON
    if abs(current - target) <= epsilon:
        return None

    if current > 0:
        await release_wallet_reservation(db, order, current)
    if target <= 0:
        return None

    await reserve_wallet_funds(db, order, target)
    return wallet_hold(db, order)


def wallet_hold(db: AsyncSession, order: Order) -> ReservationHold:
    """Handle that releases whatever ``order`` holds at release time."""

    async def _release():
        # A rollback expires a persisted order; reload its reservation fields
        if inspect(order).persistent:
            await db.refresh(order)
        await release_wallet_reservation(db, order)

    return ReservationHold(f"wallet funds for order {order.id}", _release)


# ---------------------------------------------------------------------------
# Finalization helpers
# ---------------------------------------------------------------------------


async def settle_order_wallet(db: AsyncSession, order: Order) -> Decimal:
    """Charge the order's wallet discount exactly once.

    An order holding a reservation has it topped up to the discount (when it
    falls short) and captured. An order without one is debited straight from
    the balance. Raises WalletError if the balance cannot cover the charge.
    """
    amount = round_money(order.wallet_discount)
    key = order_debit_key(order.id)
    if amount <= 0 or not order.user_id:
        return ZERO
    if await _existing_transaction(db, key) is not None:
        logger.info("Wallet already settled for order %s", order.id)
        return ZERO

    held = held_amount(order)
    if held <= 0:
        # Committed together with the debit, or rolled back with it
        order.wallet_reserved_amount = ZERO
        order.wallet_reservation_status = WalletReservationStatus.CAPTURED
        await debit_wallet(
            db,
            user_id=order.user_id,
            amount=amount,
            idempotency_key=key,
            order_id=order.id,
            description=f"Payment for order {order.id}",
        )
        logger.info("Settled wallet for order %s: %s debited", order.id, amount)
        return amount

    if held < amount:
        await reserve_wallet_funds(db, order, amount - held)
    captured = await capture_wallet_reservation(db, order, amount)
    logger.info("Settled wallet for order %s: %s captured", order.id, captured)
    return captured


async def debit_wallet(
    db: AsyncSession,
    *,
    user_id: str,
    amount: Decimal,
    idempotency_key: str,
    order_id: Optional[uuid.UUID] = None,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Spend straight from the balance, once per idempotency key."""
    amount = round_money(amount)
    if amount <= 0:
        raise WalletError(
            "Debit amount must be positive", code="INVALID_AMOUNT", status_code=400
        )

    existing = await _existing_transaction(db, idempotency_key)
    if existing is not None:
        logger.info(
            "Idempotent replay for key=%s -> txn=%s", idempotency_key, existing.id
        )
        return existing

    wallet = await get_wallet(db, user_id, lock=True)
    if wallet is None:
        await db.rollback()
        raise WalletError("Wallet not found", code=WalletError.WALLET_NOT_FOUND)

    balance_before = round_money(wallet.balance)
    if balance_before < amount:
        await db.rollback()
        raise WalletError(
            "Not enough wallet balance",
            code=WalletError.INSUFFICIENT_BALANCE,
            details={"available": str(balance_before), "requested": str(amount)},
        )

    wallet.balance = balance_before - amount
    wallet.total_spent = round_money(wallet.total_spent) + amount
    txn = _record(
        db,
        wallet,
        transaction_type=WalletTransactionType.DEBIT,
        amount=amount,
        balance_before=balance_before,
        order_id=order_id,
        idempotency_key=idempotency_key,
        description=description or "Wallet debit",
    )

    await db.commit()
    await db.refresh(txn)
    logger.info(
        "Debited %s from wallet %s (balance %s->%s)",
        amount,
        wallet.id,
        balance_before,
        wallet.balance,
    )
    return txn


async def credit_cashback(
    db: AsyncSession, *, user_id: str, order_id: uuid.UUID, amount: Decimal
) -> Optional[WalletTransaction]:
    """Credit cashback once per order, opening a wallet if needed."""
    amount = round_money(amount)
    if amount <= 0:
        return None

    key = order_cashback_key(order_id)
    existing = await _existing_transaction(db, key)
    if existing is not None:
        logger.info("Idempotent replay for key=%s -> txn=%s", key, existing.id)
        return existing

    wallet = await get_wallet(db, user_id, lock=True)
    if wallet is None:
        wallet = Wallet(
            user_id=user_id,
            balance=ZERO,
            reserved_balance=ZERO,
            total_earned=ZERO,
            total_spent=ZERO,
        )
        db.add(wallet)
        await db.flush()

    balance_before = round_money(wallet.balance)
    wallet.balance = balance_before + amount
    wallet.total_earned = round_money(to_decimal(wallet.total_earned)) + amount
    txn = _record(
        db,
        wallet,
        transaction_type=WalletTransactionType.CASHBACK,
        amount=amount,
        balance_before=balance_before,
        order_id=order_id,
        idempotency_key=key,
        description=f"Cashback for order {order_id}",
    )

    await db.commit()
    await db.refresh(txn)
    logger.info(
        "Cashback %s to wallet %s for order %s (balance %s->%s)",
        amount,
        wallet.id,
        order_id,
        balance_before,
        wallet.balance,
    )
    return txn
