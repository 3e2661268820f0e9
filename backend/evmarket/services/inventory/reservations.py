"""
Inventory reservation manager.

Reservations are advisory. ``reserve`` writes a row with a TTL and never
touches the stock counter; ``check_available`` reads the raw counter. Stock
only moves on confirmed payment (``commit_stock``, a conditional decrement
that cannot go negative) and on cancellation of a paid order
(``restore_stock``). Expired rows are ignored wherever they are read and are
deleted by ``sweep_expired``.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from evmarket.core.errors import NotFoundError
from evmarket.core.logging import get_logger
from evmarket.database.base import utc_now
from evmarket.database.models.reservation import StockReservation
from evmarket.services.catalog.repository import VehicleRepository
from evmarket.services.inventory.repository import ReservationRepository

logger = get_logger(__name__)


class InventoryReservationManager:
    """
    Soft stock holds for pending orders.

    Attributes:
        vehicles: Vehicle repository owning the stock counter
        reservations: Reservation row repository
        ttl: Default reservation lifetime
    """

    def __init__(
        self,
        vehicles: VehicleRepository,
        reservations: ReservationRepository,
        ttl_minutes: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.vehicles = vehicles
        self.reservations = reservations
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    async def check_available(self, vehicle_id: uuid.UUID) -> int:
        """
        Units currently in stock.

        Raises:
            NotFoundError: If the vehicle does not exist
        """
        stock = await self.vehicles.get_stock(vehicle_id)
        if stock is None:
            raise NotFoundError("Vehicle", vehicle_id)
        return stock

    async def reserve(
        self,
        vehicle_id: uuid.UUID,
        quantity: int,
        order_id: uuid.UUID,
        ttl: Optional[timedelta] = None,
    ) -> uuid.UUID:
        """
        Hold ``quantity`` units for ``order_id`` until the TTL passes.

        A previous hold for the same order is replaced.

        Returns:
            Reservation id
        """
        await self.reservations.delete_by_order(order_id)
        reserved_until = self._clock() + (ttl or self.ttl)
        reservation = await self.reservations.create(
            order_id=order_id,
            vehicle_id=vehicle_id,
            quantity=quantity,
            reserved_until=reserved_until,
        )
        logger.info(
            "Stock reserved",
            reservation_id=str(reservation.id),
            order_id=str(order_id),
            vehicle_id=str(vehicle_id),
            quantity=quantity,
            reserved_until=reserved_until.isoformat(),
        )
        return reservation.id

    async def release(self, order_id: uuid.UUID) -> bool:
        released = await self.reservations.delete_by_order(order_id)
        if released:
            logger.info("Stock reservation released", order_id=str(order_id))
        return released

    async def get_reservation(self, order_id: uuid.UUID) -> Optional[StockReservation]:
        """Binding reservation for the order; expired rows count as absent."""
        reservation = await self.reservations.get_by_order(order_id)
        if reservation is None or reservation.is_expired(self._clock()):
            return None
        return reservation

    async def commit_stock(
        self,
        order_id: uuid.UUID,
        vehicle_id: uuid.UUID,
        quantity: int,
    ) -> bool:
        """
        Convert the order's hold into a real decrement after payment.

        Returns:
            False when stock ran out between checkout and capture
        """
        decremented = await self.vehicles.decrement_stock_if_available(
            vehicle_id, quantity
        )
        await self.reservations.delete_by_order(order_id)
        if not decremented:
            logger.error(
                "Stock exhausted at payment capture",
                order_id=str(order_id),
                vehicle_id=str(vehicle_id),
                quantity=quantity,
            )
        return decremented

    async def restore_stock(self, vehicle_id: uuid.UUID, quantity: int) -> bool:
        return await self.vehicles.increment_stock(vehicle_id, quantity)

    async def sweep_expired(self) -> int:
        """Delete reservations whose TTL has passed. Orders are left alone."""
        removed = await self.reservations.delete_expired(self._clock())
        if removed:
            logger.info("Expired stock reservations swept", removed=removed)
        return removed
