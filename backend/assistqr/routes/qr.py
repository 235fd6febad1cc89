"""
AssistQR Backend — QR Landing Route
=====================================

What:  GET /qr/help?v=<token>, the data behind the page a bystander lands
       on after scanning the sticker.
Why:   The bystander needs to confirm they are looking at the right car
       before reporting.

Privacy:
    Only plate, model and color are returned. Contact names, numbers and
    email addresses never leave the server; the fan-out contacts them.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from assistqr.database import get_db_session
from assistqr.exceptions import ValidationError
from assistqr.schemas.report import ErrorResponse, VehicleInfo
from assistqr.services.vehicle_store import get_vehicle_by_token

router = APIRouter(prefix="/qr", tags=["QR"])


@router.get(
    "/help",
    response_model=VehicleInfo,
    response_model_by_alias=True,
    responses={
        400: {"description": "Missing token", "model": ErrorResponse},
        404: {"description": "Unknown token", "model": ErrorResponse},
    },
    summary="Public vehicle identity for a QR token",
)
async def vehicle_for_token(
    v: Optional[str] = Query(None, description="QR token printed on the sticker"),
    db: AsyncSession = Depends(get_db_session),
) -> VehicleInfo:
    token = (v or "").strip()
    if not token:
        raise ValidationError(message="Missing vehicle token.", field="v", reason="missing_field")
    vehicle = await get_vehicle_by_token(db, token)
    return VehicleInfo.model_validate(vehicle)
