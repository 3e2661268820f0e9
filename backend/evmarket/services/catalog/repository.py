"""
Catalogue data access: vehicles, dealers and promo codes.

Vehicle stock is the one counter shared by every checkout and capture, so it
is only changed through single conditional statements here and never through
read-then-write in application code.
"""

import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from evmarket.core.logging import get_logger
from evmarket.database.models.dealer import Dealer
from evmarket.database.models.promo_code import PromoCode
from evmarket.database.models.vehicle import Vehicle
from evmarket.database.repository import BaseRepository, RepositoryError

logger = get_logger(__name__)


class VehicleRepository(BaseRepository):
    """Vehicle lookups and atomic stock mutations."""

    model = Vehicle

    async def get_stock(self, vehicle_id: uuid.UUID) -> Optional[int]:
        """Raw authoritative stock counter, ignoring reservations."""
        try:
            result = await self.session.execute(
                select(Vehicle.stock_quantity).where(Vehicle.id == vehicle_id)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to read stock", vehicle_id=str(vehicle_id), error=str(e))
            raise RepositoryError("get_stock failed", vehicle_id=str(vehicle_id)) from e
        return result.scalar_one_or_none()

    async def decrement_stock_if_available(
        self, vehicle_id: uuid.UUID, quantity: int
    ) -> bool:
        """
        Take ``quantity`` units off the shelf if that many are in stock.

        Returns:
            True if the row was decremented, False if stock was insufficient
            or the vehicle does not exist
        """
        stmt = (
            update(Vehicle)
            .where(Vehicle.id == vehicle_id, Vehicle.stock_quantity >= quantity)
            .values(stock_quantity=Vehicle.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        decremented = await self._execute_write(
            stmt, "decrement_stock", vehicle_id=str(vehicle_id)
        ) == 1
        logger.info(
            "Stock decrement attempted",
            vehicle_id=str(vehicle_id),
            quantity=quantity,
            decremented=decremented,
        )
        return decremented

    async def increment_stock(self, vehicle_id: uuid.UUID, quantity: int) -> bool:
        stmt = (
            update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .values(stock_quantity=Vehicle.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        restored = await self._execute_write(
            stmt, "increment_stock", vehicle_id=str(vehicle_id)
        ) == 1
        logger.info(
            "Stock restored",
            vehicle_id=str(vehicle_id),
            quantity=quantity,
            restored=restored,
        )
        return restored


class DealerRepository(BaseRepository):
    model = Dealer

    async def get_by_user_id(self, user_id: uuid.UUID) -> Optional[Dealer]:
        try:
            result = await self.session.execute(
                select(Dealer).where(Dealer.user_id == user_id)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to load dealer", user_id=str(user_id), error=str(e))
            raise RepositoryError("get_by_user_id failed", user_id=str(user_id)) from e
        return result.scalar_one_or_none()


class PromoCodeRepository(BaseRepository):
    model = PromoCode

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        try:
            result = await self.session.execute(
                select(PromoCode).where(PromoCode.code == code.strip().upper())
            )
        except SQLAlchemyError as e:
            logger.error("Failed to load promo code", error=str(e))
            raise RepositoryError("get_by_code failed") from e
        return result.scalar_one_or_none()
