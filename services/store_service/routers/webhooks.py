"""Payment processor webhooks."""

from fastapi import APIRouter, Depends, Request
from libs.db.session import get_async_db
from services.store_service.payment_gateway import PaymentGateway, get_gateway
from services.store_service.schemas import WebhookAck
from services.store_service.services.notifications import (
    NotificationClient,
    get_notifier,
)
from services.store_service.services.webhook_processor import handle_webhook
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["store-webhooks"])


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationClient = Depends(get_notifier),
):
    """
    Stripe webhook endpoint (no auth; verified by Stripe-Signature).

    Answers 400 on a bad signature and 500 when settlement failed and the
    event should be redelivered; every other outcome is acknowledged.
    """
    raw = await request.body()
    result = await handle_webhook(
        db,
        raw,
        request.headers.get("Stripe-Signature"),
        gateway=gateway,
        notifier=notifier,
    )
    return WebhookAck(outcome=result.outcome)
