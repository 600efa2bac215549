"""Background maintenance tasks for the store service."""

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.store_service.payment_gateway import get_gateway
from services.store_service.services.orders import release_expired_reservations

logger = get_logger(__name__)


async def release_expired_order_reservations() -> int:
    """Give back stock and wallet funds held by abandoned checkouts."""
    async with AsyncSessionLocal() as db:
        released = await release_expired_reservations(db, gateway=get_gateway())
    logger.info("Expired reservation sweep released %d order(s)", released)
    return released
