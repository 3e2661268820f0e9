"""Stock reservation data access."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from evmarket.core.logging import get_logger
from evmarket.database.models.reservation import StockReservation
from evmarket.database.repository import BaseRepository, RepositoryError

logger = get_logger(__name__)


class ReservationRepository(BaseRepository):
    """Soft reservation rows, one per pending order."""

    model = StockReservation

    async def create(
        self,
        order_id: uuid.UUID,
        vehicle_id: uuid.UUID,
        quantity: int,
        reserved_until: datetime,
    ) -> StockReservation:
        reservation = StockReservation(
            id=uuid.uuid4(),
            order_id=order_id,
            vehicle_id=vehicle_id,
            quantity=quantity,
            reserved_until=reserved_until,
        )
        return await self._add(
            reservation, "create_reservation", order_id=str(order_id)
        )

    async def get_by_order(self, order_id: uuid.UUID) -> Optional[StockReservation]:
        try:
            result = await self.session.execute(
                select(StockReservation).where(StockReservation.order_id == order_id)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to load reservation", order_id=str(order_id), error=str(e))
            raise RepositoryError("get_by_order failed", order_id=str(order_id)) from e
        return result.scalar_one_or_none()

    async def delete_by_order(self, order_id: uuid.UUID) -> bool:
        deleted = await self._execute_write(
            delete(StockReservation).where(StockReservation.order_id == order_id),
            "delete_reservation",
            order_id=str(order_id),
        )
        return deleted > 0

    async def delete_expired(self, now: datetime) -> int:
        return await self._execute_write(
            delete(StockReservation).where(StockReservation.reserved_until <= now),
            "delete_expired_reservations",
        )
