"""Store admin router: reservation maintenance."""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.store_service.payment_gateway import PaymentGateway, get_gateway
from services.store_service.schemas import ReservationCleanupResponse
from services.store_service.services.orders import release_expired_reservations
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

router = APIRouter(tags=["admin-store"])


@router.post("/reservations/cleanup", response_model=ReservationCleanupResponse)
async def cleanup_reservations(
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Cancel unpaid orders whose reservation window has passed."""
    released = await release_expired_reservations(db, gateway=gateway)
    logger.info(
        "Reservation cleanup by %s released %d order(s)", admin.user_id, released
    )
    return ReservationCleanupResponse(released=released)
