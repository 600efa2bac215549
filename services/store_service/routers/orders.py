"""Store orders router: checkout, payment intents, finalize and cancel."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from libs.auth.dependencies import get_current_user, get_optional_user
from libs.auth.models import AuthUser
from libs.common.rate_limit import checkout_limit, payment_limit
from libs.db.session import get_async_db
from services.store_service.payment_gateway import PaymentGateway, get_gateway
from services.store_service.schemas import (
    FinalizeRequest,
    FinalizeResponse,
    OrderCancelRequest,
    OrderCancelResponse,
    OrderCreate,
    OrderResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
)
from services.store_service.services.notifications import (
    NotificationClient,
    get_notifier,
)
from services.store_service.services.orders import (
    cancel_order,
    create_order,
    create_payment_intent,
    finalize_from_client,
    get_order,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["store"])


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post(
    "/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED
)
@checkout_limit
async def submit_order(
    request: Request,
    response: Response,
    payload: OrderCreate,
    current_user: Optional[AuthUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Price the cart server-side, reserve stock and create a pending order.

    Re-submitting the same idempotency key returns the existing order (200).
    """
    order, created = await create_order(db, payload, current_user)
    if not created:
        response.status_code = status.HTTP_200_OK
    return order


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def read_order(
    order_id: uuid.UUID,
    idempotency_key: Optional[str] = Query(None, max_length=128),
    current_user: Optional[AuthUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Get an order (owner, admin, or guest holding the order's key)."""
    return await get_order(db, order_id, current_user, idempotency_key)


# ============================================================================
# PAYMENT
# ============================================================================


@router.post("/orders/{order_id}/payment-intent", response_model=PaymentIntentResponse)
@payment_limit
async def start_payment(
    request: Request,
    order_id: uuid.UUID,
    payload: Optional[PaymentIntentRequest] = None,
    current_user: Optional[AuthUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationClient = Depends(get_notifier),
):
    """Re-price the order and open a charge for the recomputed total."""
    return await create_payment_intent(
        db,
        order_id,
        current_user,
        gateway,
        idempotency_key=payload.idempotency_key if payload else None,
        notifier=notifier,
    )


@router.post("/orders/{order_id}/finalize", response_model=FinalizeResponse)
@payment_limit
async def finalize_payment(
    request: Request,
    order_id: uuid.UUID,
    payload: FinalizeRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationClient = Depends(get_notifier),
):
    """Run post-payment settlement after the client saw the charge succeed."""
    finalized = await finalize_from_client(
        db,
        order_id,
        payload.payment_intent_id,
        current_user,
        gateway,
        notifier=notifier,
    )
    order = await get_order(db, order_id, current_user)
    return FinalizeResponse(
        order_id=order.id, finalized=finalized, payment_status=order.payment_status
    )


# ============================================================================
# CANCELLATION
# ============================================================================


@router.post("/orders/{order_id}/cancel", response_model=OrderCancelResponse)
async def cancel_pending_order(
    order_id: uuid.UUID,
    payload: OrderCancelRequest,
    current_user: Optional[AuthUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Cancel an unpaid order and give its stock and wallet funds back."""
    await cancel_order(
        db, order_id, payload.idempotency_key, current_user, payload.reason
    )
    return OrderCancelResponse(order_id=order_id, cancelled=True)
