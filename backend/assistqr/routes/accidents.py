"""
AssistQR Backend — Accident Report Routes
===========================================

What:  The three ways a bystander's report reaches the server.
Why:   Bystanders have very different connectivity at an accident scene:
       full internet, a flaky cellular link, or bare SMS.
How:   All three funnel into ReportService.submit(); they differ only in
       which channels are notified and how the result is rendered.

Endpoints:
    POST /accidents/report          multipart form, page or sync client
                                    → JSON for programmatic callers,
                                      minimal HTML thank-you otherwise
    POST /accidents/report-offline  multipart form, cellular-only variant
                                    → always JSON, SMS-only fan-out
    POST /accidents/sms-webhook     SMS gateway webhook (form or JSON)
                                    → TwiML XML or JSON, by gateway

Programmatic detection:
    `X-Requested-With: XMLHttpRequest` or an `Accept` header containing
    application/json. The offline sync client always sends both.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from assistqr.config import settings
from assistqr.database import get_db_session
from assistqr.exceptions import AssistQRError, NotFoundError, ValidationError
from assistqr.schemas.report import ErrorResponse, ReportResponse, SmsWebhookResponse
from assistqr.services.notifications.base import Channel
from assistqr.services.report_service import ReportOutcome, ReportSubmission, report_service
from assistqr.services.sms_commands import (
    MSG_NO_BODY,
    MSG_NO_CONTACTS,
    MSG_RECEIVED,
    MSG_SERVER_ERROR,
    MSG_VEHICLE_NOT_FOUND,
    CommandError,
    InboundSms,
    parse_command,
    parse_webhook_payload,
    twiml_message,
)
from assistqr.services.storage_service import PhotoUpload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accidents", tags=["Accidents"])

MSG_REPORT_EMAIL = "Emergency report received. Emergency contacts have been notified."
MSG_REPORT_OFFLINE = (
    "Emergency report received via cellular network. "
    "Emergency contacts have been notified via SMS."
)

THANK_YOU_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>Report received - AssistQR</title></head>
<body>
  <h1>Thank you for helping.</h1>
  <p>Your report has been received and {count} emergency contact(s) were notified.</p>
</body>
</html>"""

ERROR_RESPONSES = {
    400: {"description": "Invalid form data or photos", "model": ErrorResponse},
    404: {"description": "Unknown QR token", "model": ErrorResponse},
    429: {"description": "Rate limit exceeded", "model": ErrorResponse},
    503: {"description": "Report could not be stored", "model": ErrorResponse},
}


def wants_json(request: Request) -> bool:
    """True for the sync client and fetch()-based submissions."""
    if request.headers.get("x-requested-with") == "XMLHttpRequest":
        return True
    return "application/json" in request.headers.get("accept", "")


def interactive_channels() -> List[Channel]:
    return [Channel(name) for name in sorted(settings.report_channel_set)]


async def read_photos(images: Optional[List[UploadFile]]) -> List[PhotoUpload]:
    """
    Read every uploaded photo into memory.

    Browsers send an empty part when no file is picked; those are dropped
    here so they never count against the photo limit.
    """
    photos = []
    for upload in images or []:
        if not upload.filename and not upload.size:
            continue
        photos.append(
            PhotoUpload(
                filename=upload.filename or "photo",
                content_type=upload.content_type,
                content=await upload.read(),
            )
        )
    return photos


def report_response(outcome: ReportOutcome, message: str) -> ReportResponse:
    return ReportResponse(
        message=message,
        report_id=outcome.report_id,
        notification_count=outcome.notified_count,
        contact_count=outcome.contact_count,
    )


# ══════════════════════════════════════════════════════════════════════════
# Multipart Submissions
# ══════════════════════════════════════════════════════════════════════════

@router.post(
    "/report",
    response_model=ReportResponse,
    response_model_by_alias=True,
    responses=ERROR_RESPONSES,
    summary="Submit an accident report",
    description=(
        "Accepts a bystander's report for the vehicle identified by qrToken, "
        "with optional coordinates, manual location, note and up to 10 photos. "
        "Emergency contacts are notified before the response is sent."
    ),
)
async def submit_report(
    request: Request,
    qrToken: Optional[str] = Form(None),
    latitude: Optional[str] = Form(None),
    longitude: Optional[str] = Form(None),
    manualLocation: Optional[str] = Form(None),
    helperNote: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Interactive and sync-client submission.

    Error responses (handled by global exception handlers):
        HTTP 400: ValidationError / InvalidImageError
        HTTP 404: NotFoundError (terminal for the sync client)
        HTTP 503: StorageUnavailableError (retried by the sync client)
    """
    photos = await read_photos(images)
    logger.info("Received report: photos=%d programmatic=%s", len(photos), wants_json(request))

    outcome = await report_service.submit(
        db,
        ReportSubmission(
            qr_token=qrToken,
            latitude=latitude,
            longitude=longitude,
            manual_location=manualLocation,
            helper_note=helperNote,
            photos=photos,
        ),
        channels=interactive_channels(),
    )

    if wants_json(request):
        return report_response(outcome, MSG_REPORT_EMAIL)
    return HTMLResponse(THANK_YOU_PAGE.format(count=outcome.notified_count))


@router.post(
    "/report-offline",
    response_model=ReportResponse,
    response_model_by_alias=True,
    responses=ERROR_RESPONSES,
    summary="Submit an accident report over a cellular-only link",
    description="Same validation and persistence as /accidents/report; notifies by SMS only.",
)
async def submit_report_offline(
    qrToken: Optional[str] = Form(None),
    latitude: Optional[str] = Form(None),
    longitude: Optional[str] = Form(None),
    manualLocation: Optional[str] = Form(None),
    helperNote: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    db: AsyncSession = Depends(get_db_session),
) -> ReportResponse:
    photos = await read_photos(images)
    outcome = await report_service.submit(
        db,
        ReportSubmission(
            qr_token=qrToken,
            latitude=latitude,
            longitude=longitude,
            manual_location=manualLocation,
            helper_note=helperNote,
            photos=photos,
        ),
        channels=[Channel.SMS],
    )
    if outcome.contact_count and not outcome.notified_count:
        logger.error(
            "Report %s: no SMS delivered to any of %d contact(s); check SMS provider configuration",
            outcome.report_id, outcome.contact_count,
        )
    return report_response(outcome, MSG_REPORT_OFFLINE)


# ══════════════════════════════════════════════════════════════════════════
# SMS Webhook
# ══════════════════════════════════════════════════════════════════════════

async def read_webhook_payload(request: Request) -> Dict[str, Any]:
    """Gateways post either form-encoded or JSON bodies."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("SMS webhook sent malformed JSON")
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def sms_reply(
    inbound: InboundSms,
    message: str,
    *,
    success: bool,
    status_code: int = 200,
    relay: bool = True,
    outcome: Optional[ReportOutcome] = None,
) -> Response:
    """
    Render the acknowledgment in the gateway's own format.

    TwiML replies meant for the sender (`relay`) keep status 200 so the
    carrier delivers them back; JSON replies always carry the real status.
    """
    if inbound.source.replies_with_json:
        body = SmsWebhookResponse(
            success=success,
            message=message,
            report_id=outcome.report_id if outcome else None,
            contacts_notified=outcome.notified_count if outcome else 0,
        )
        return JSONResponse(
            status_code=status_code,
            content=body.model_dump(by_alias=True, mode="json"),
        )
    xml_status = 200 if relay and status_code < 500 else status_code
    return Response(content=twiml_message(message), media_type="text/xml", status_code=xml_status)


@router.post(
    "/sms-webhook",
    summary="Inbound SMS report",
    description=(
        "Webhook for SMS gateways. Body format: "
        "REPORT <token> [<lat> <lng> | LOCATION <text>] [NOTE <text>]."
    ),
)
async def sms_webhook(request: Request, db: AsyncSession = Depends(get_db_session)) -> Response:
    inbound = parse_webhook_payload(await read_webhook_payload(request))
    logger.info(
        "SMS webhook (%s) from %s to %s",
        inbound.source.value, inbound.sender, inbound.recipient,
    )

    if not inbound.body:
        logger.warning("SMS webhook (%s) without a message body", inbound.source.value)
        return sms_reply(inbound, MSG_NO_BODY, success=False, status_code=400, relay=False)

    try:
        command = parse_command(inbound.body)
    except CommandError as e:
        logger.warning("Rejected SMS command (%s): %s", e.code, e.message)
        return sms_reply(inbound, e.message, success=False, status_code=400)

    try:
        outcome = await report_service.submit(db, command.to_submission(), channels=[Channel.SMS])
    except NotFoundError:
        logger.warning("SMS report for unknown token %s", command.qr_token)
        return sms_reply(inbound, MSG_VEHICLE_NOT_FOUND, success=False, status_code=404)
    except ValidationError as e:
        return sms_reply(inbound, e.message, success=False, status_code=400)
    except AssistQRError as e:
        logger.error("SMS report could not be stored: %s", e.message)
        return sms_reply(inbound, MSG_SERVER_ERROR, success=False, status_code=500)
    except Exception:
        # The gateway must always get a reply it can relay.
        logger.error("Unexpected error processing SMS webhook", exc_info=True)
        return sms_reply(inbound, MSG_SERVER_ERROR, success=False, status_code=500)

    logger.info(
        "SMS report %s: notified %d/%d contact(s)",
        outcome.report_id, outcome.notified_count, outcome.contact_count,
    )
    message = MSG_RECEIVED if outcome.contact_count else MSG_NO_CONTACTS
    return sms_reply(inbound, message, success=True, outcome=outcome)
