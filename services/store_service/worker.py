"""ARQ worker for store reservation maintenance.

Run with ``arq services.store_service.worker.WorkerSettings``.
"""

from arq import cron
from arq.connections import RedisSettings
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


async def task_release_expired_reservations(ctx: dict):
    from services.store_service.tasks import release_expired_order_reservations

    logger.info("Running: release_expired_order_reservations")
    await release_expired_order_reservations()


def _every(minutes: int) -> set[int]:
    return set(range(0, 60, max(1, minutes)))


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)

    functions = [task_release_expired_reservations]

    cron_jobs = [
        cron(
            task_release_expired_reservations,
            minute=_every(settings.RESERVATION_SWEEP_MINUTES),
            run_at_startup=True,
        ),
    ]
