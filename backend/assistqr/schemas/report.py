"""
AssistQR Backend — Pydantic Request/Response Schemas
======================================================

What:  Pydantic models defining the API contract between clients and backend.
Why:   Automatic serialization and OpenAPI doc generation. Field names are
       camelCase on the wire (qrToken, reportId) because the bystander page
       and the offline sync client already speak that dialect.
How:   Responses are built by the route handlers from service-layer results.
"""

import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serializing snake_case attributes as camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ReportResponse(CamelModel):
    """
    What:  Returned by POST /accidents/report (programmatic callers) and
           POST /accidents/report-offline.

    notification_count is the number of contacts for which at least one
    requested channel succeeded. A report is successful as soon as it is
    persisted, so `success` is true even when notification_count is 0.
    """
    success: bool = Field(default=True)
    message: str = Field(description="Human-readable confirmation")
    report_id: uuid.UUID = Field(description="Identifier of the persisted report")
    notification_count: int = Field(ge=0, description="Contacts notified on at least one channel")
    contact_count: int = Field(ge=0, description="Emergency contacts on the vehicle")


class SmsWebhookResponse(CamelModel):
    """JSON acknowledgment returned to Telerivet-style SMS gateways."""
    success: bool = Field(default=True)
    message: str
    report_id: Optional[uuid.UUID] = None
    contacts_notified: int = Field(default=0, ge=0)


class VehicleInfo(CamelModel):
    """
    Public vehicle identity shown on the QR landing page.

    Never carries contact details: the QR token is public to anyone who
    can see the sticker.
    """
    license_plate: str
    model: str
    color: Optional[str] = None


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "error": "validation_error",
            "message": "Too many files. Maximum 10 images allowed.",
            "details": {"field": "images", "reason": "too_many_files"},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Health check response showing service and dependency status."""
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    email_providers: List[str] = Field(description="Configured email providers, in fallback order")
    sms_providers: List[str] = Field(description="Configured SMS providers")
    uptime_seconds: float = Field(description="Seconds since service started")
