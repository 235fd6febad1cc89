"""
AssistQR Backend — Report Service (Ingestion Orchestrator)
============================================================

What:  Validates, persists and fans out an accident report.
Why:   The interactive page, the offline sync client, the cellular-only
       endpoint and the SMS webhook all submit the same logical report;
       they differ only in which channels are notified and how the result
       is rendered.
How:   Composes the vehicle store, StorageService, the database session and
       the notification fan-out.

Orchestration Flow:
    ┌──────────┐   ┌───────────┐   ┌──────────┐   ┌──────────┐   ┌─────────┐
    │ Resolve  │──▶│ Validate  │──▶│  Store   │──▶│  Commit  │──▶│ Fan-out │
    │ token    │   │ fields &  │   │  photos  │   │ report + │   │ email / │
    │          │   │ photos    │   │          │   │ images   │   │ SMS     │
    └──────────┘   └───────────┘   └──────────┘   └──────────┘   └─────────┘

    Validation order:
        1. qrToken present (400) and known (404)
        2. latitude / longitude, only when supplied (400)
        3. manualLocation / helperNote lengths (400)
        4. photos: count, image/* type, size (400)

    On failure:
        - Before commit: nothing is persisted; stored photos are removed
        - After commit: notification failures are recorded, never raised
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from assistqr.config import settings
from assistqr.exceptions import StorageUnavailableError, ValidationError
from assistqr.models.report import AccidentImage, AccidentReport
from assistqr.services.notifications.base import Channel, ContactInfo, ReportAlert
from assistqr.services.notifications.fanout import (
    NotificationAttempt,
    NotificationFanout,
    notification_fanout,
)
from assistqr.services.storage_service import PhotoUpload, StorageService, storage_service
from assistqr.services.vehicle_store import get_vehicle_by_token

logger = logging.getLogger(__name__)

Coordinate = Union[str, float, int, None]


@dataclass
class ReportSubmission:
    """A report as received, before validation. Coordinates stay raw."""
    qr_token: Optional[str]
    latitude: Coordinate = None
    longitude: Coordinate = None
    manual_location: Optional[str] = None
    helper_note: Optional[str] = None
    photos: List[PhotoUpload] = field(default_factory=list)


@dataclass
class ReportOutcome:
    report_id: uuid.UUID
    license_plate: str
    contact_count: int
    notified_count: int
    attempts: List[NotificationAttempt] = field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════
# Field Validation
# ══════════════════════════════════════════════════════════════════════════

def parse_coordinate(raw: Coordinate, field_name: str, bound: float) -> Optional[float]:
    """
    Parse an optional coordinate and check it lies within [-bound, bound].

    Absent or blank values are not errors; they mean "not supplied".
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            message=f"Invalid {field_name}. Must be a number.",
            field=field_name,
            reason="not_a_number",
        )
    if not math.isfinite(value) or not -bound <= value <= bound:
        raise ValidationError(
            message=f"Invalid {field_name}. Must be between -{bound:g} and {bound:g}.",
            field=field_name,
            reason="out_of_range",
            context={"min": -bound, "max": bound},
        )
    return value


def clean_text(raw: Optional[str], field_name: str, limit: int) -> Optional[str]:
    """Trim; blank becomes None; longer than `limit` is rejected."""
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    if len(text) > limit:
        raise ValidationError(
            message=f"{field_name} is too long. Maximum {limit} characters.",
            field=field_name,
            reason="too_long",
            context={"max_length": limit, "length": len(text)},
        )
    return text


class ReportService:
    """
    Business logic layer for accident report ingestion.

    Stateless apart from its collaborators; a fresh session is passed to
    every call.
    """

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        fanout: Optional[NotificationFanout] = None,
    ):
        self.storage = storage or storage_service
        self.fanout = fanout or notification_fanout

    async def submit(
        self,
        db: AsyncSession,
        submission: ReportSubmission,
        channels: Iterable[Channel],
    ) -> ReportOutcome:
        """
        Complete workflow: validate → store photos → commit → notify.

        The commit happens here, before notification, so the report is
        durable regardless of how delivery goes.

        Raises:
            ValidationError:         bad or missing input (400)
            NotFoundError:           unknown qrToken (404)
            StorageUnavailableError: photo or database write failed (503)
        """
        # ── Step 1: Resolve token ─────────────────────────────────────────
        token = (submission.qr_token or "").strip()
        if not token:
            raise ValidationError(
                message="Missing vehicle token.",
                field="qrToken",
                reason="missing_field",
            )
        vehicle = await get_vehicle_by_token(db, token)

        # ── Step 2-4: Validate fields and photos ──────────────────────────
        latitude = parse_coordinate(submission.latitude, "latitude", 90)
        longitude = parse_coordinate(submission.longitude, "longitude", 180)
        manual_location = clean_text(
            submission.manual_location, "manualLocation", settings.max_manual_location_length
        )
        helper_note = clean_text(
            submission.helper_note, "helperNote", settings.max_helper_note_length
        )
        self.storage.validate_photos(submission.photos)

        # ── Step 5: Store photos ──────────────────────────────────────────
        stored = await self.storage.store_photos(submission.photos)

        # ── Step 6: Persist report + images atomically ────────────────────
        contacts = [ContactInfo.from_model(c) for c in vehicle.contacts]
        report = AccidentReport(
            vehicle_id=vehicle.id,
            latitude=latitude,
            longitude=longitude,
            manual_location=manual_location,
            helper_note=helper_note,
            images=[
                AccidentImage(position=position, image_url=photo.url)
                for position, photo in enumerate(stored)
            ],
        )
        try:
            db.add(report)
            await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to persist report for vehicle %s: %s", vehicle.id, str(e))
            await db.rollback()
            await self.storage.cleanup(stored)
            raise StorageUnavailableError(
                message="Could not save your report. Please try again.",
                context={"error_type": type(e).__name__},
            )

        logger.info(
            "Report %s saved for vehicle %s with %d photo(s)",
            report.id, vehicle.license_plate, len(stored),
        )

        # ── Step 7: Notify ────────────────────────────────────────────────
        alert = ReportAlert(
            report_id=str(report.id),
            license_plate=vehicle.license_plate,
            model=vehicle.model,
            color=vehicle.color,
            reported_at=report.created_at,
            latitude=latitude,
            longitude=longitude,
            manual_location=manual_location,
            helper_note=helper_note,
            image_urls=tuple(photo.url for photo in stored),
        )
        fanout_result = await self.fanout.dispatch(alert, contacts, channels)

        return ReportOutcome(
            report_id=report.id,
            license_plate=vehicle.license_plate,
            contact_count=fanout_result.contact_count,
            notified_count=fanout_result.notified_count,
            attempts=fanout_result.attempts,
        )


# ── Singleton Instance ────────────────────────────────────────────────────
report_service = ReportService()
