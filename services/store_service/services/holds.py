"""Releasable reservation handles.

Reserving stock or wallet funds returns a ``ReservationHold``. Code that can
fail after taking a hold registers it in a ``release_on_error`` block; if the
block raises, every hold taken inside it is released (newest first) and the
original exception propagates.

    async with release_on_error(db) as holds:
        holds.add(await reserve_stock_hold(db, lines, order_id=order_id))
        db.add(order)
        await db.commit()
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from libs.common.logging import get_logger
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class ReservationHold:
    """Handle on a reservation that can be released exactly once."""

    def __init__(self, description: str, release: Callable[[], Awaitable[object]]):
        self.description = description
        self._release = release
        self.released = False

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        await self._release()

    def __repr__(self):
        return f"<ReservationHold {self.description} released={self.released}>"


class HoldGroup:
    def __init__(self):
        self.holds: list[ReservationHold] = []

    def add(self, hold: Optional[ReservationHold]) -> Optional[ReservationHold]:
        if hold is not None:
            self.holds.append(hold)
        return hold


@asynccontextmanager
async def release_on_error(
    db: Optional[AsyncSession] = None,
) -> AsyncIterator[HoldGroup]:
    group = HoldGroup()
    try:
        yield group
    except Exception:
        if db is not None:
            # Drop whatever the failed block left pending before compensating
            await db.rollback()
        for hold in reversed(group.holds):
            try:
                await hold.release()
            except Exception:
                logger.exception("Compensation failed for %s", hold.description)
        raise
