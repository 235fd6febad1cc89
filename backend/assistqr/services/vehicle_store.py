"""
AssistQR Backend — Vehicle Lookup
===================================

What:  Resolves a QR token to its vehicle and emergency contacts.
Who:   Report ingestion, the SMS webhook and the QR landing page.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from assistqr.exceptions import NotFoundError, StorageUnavailableError
from assistqr.models.report import AccidentReport  # noqa: F401
from assistqr.models.vehicle import Vehicle

logger = logging.getLogger(__name__)


async def find_vehicle_by_token(db: AsyncSession, qr_token: str) -> Optional[Vehicle]:
    """Returns the vehicle with its contacts eagerly loaded, or None."""
    try:
        result = await db.execute(
            select(Vehicle)
            .options(selectinload(Vehicle.contacts))
            .where(Vehicle.qr_token == qr_token)
        )
    except SQLAlchemyError as e:
        logger.error("Vehicle lookup failed: %s", str(e))
        raise StorageUnavailableError(context={"operation": "vehicle_lookup"})
    return result.scalar_one_or_none()


async def get_vehicle_by_token(db: AsyncSession, qr_token: str) -> Vehicle:
    """Like find_vehicle_by_token, but raises NotFoundError for unknown tokens."""
    vehicle = await find_vehicle_by_token(db, qr_token)
    if vehicle is None:
        # The token is a capability; keep it out of the response.
        raise NotFoundError(
            resource="vehicle",
            message="Vehicle not found. Invalid QR code token.",
        )
    return vehicle
