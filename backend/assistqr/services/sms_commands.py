"""
AssistQR Backend — SMS Text-Command Parser
============================================

What:  Turns an inbound SMS webhook into a report submission for bystanders
       who have no data connection at all.
Why:   The SMS gateway is the last path left when the phone has signal but
       no internet.
How:   Two steps, both pure functions:
         1. parse_webhook_payload(): detect which gateway posted the
            webhook (tagged variant) and pull out sender, body, recipient
         2. parse_command(): decode the body grammar into a ParsedCommand

Grammar (whitespace-delimited, keywords case-sensitive):
    REPORT <token> <lat> <lng> [... NOTE <note words>]
    REPORT <token> [...] LOCATION <location words> [NOTE <note words>]
    REPORT <token> [...] NOTE <note words>
    REPORT <token>

    Coordinates win only when tokens 3 and 4 are both finite numbers within
    latitude/longitude range. A keyword with nothing after it captures
    nothing.

Webhook Variants (checked in this order):
    TWILIO     From + Body (+ To)                       → TwiML XML reply
    TELERIVET  from_number + content, or event in
               {incoming_message, message_received}    → JSON reply
    GENERIC    anything else; fields scraped and logged → XML reply
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple

from twilio.twiml.messaging_response import MessagingResponse

from assistqr.services.report_service import ReportSubmission

logger = logging.getLogger(__name__)

COMMAND_KEYWORD = "REPORT"
LOCATION_KEYWORD = "LOCATION"
NOTE_KEYWORD = "NOTE"

MSG_INVALID_FORMAT = "Invalid format. Expected: REPORT [TOKEN] [LOCATION] [NOTE]"
MSG_MISSING_TOKEN = "Missing vehicle token. Please include token after REPORT."
MSG_VEHICLE_NOT_FOUND = "Vehicle not found. Invalid QR code token."
MSG_NO_BODY = "No message body found"
MSG_RECEIVED = "Emergency report received. Emergency contacts have been notified."
MSG_NO_CONTACTS = "Emergency report received. No emergency contacts are configured for this vehicle."
MSG_SERVER_ERROR = "Error processing report. Please try again later."


# ══════════════════════════════════════════════════════════════════════════
# Webhook Payloads
# ══════════════════════════════════════════════════════════════════════════

class WebhookSource(str, Enum):
    TWILIO = "twilio"
    TELERIVET = "telerivet"
    GENERIC = "generic"

    @property
    def replies_with_json(self) -> bool:
        return self is WebhookSource.TELERIVET


@dataclass(frozen=True)
class InboundSms:
    source: WebhookSource
    sender: Optional[str]
    body: Optional[str]
    recipient: Optional[str]


TELERIVET_EVENTS = {"incoming_message", "message_received"}


def _first(payload: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def parse_webhook_payload(payload: Mapping[str, Any]) -> InboundSms:
    """
    Select the webhook variant by required-field predicates, in priority
    order. Unknown shapes are scraped, never rejected.
    """
    if payload.get("From") and payload.get("Body"):
        return InboundSms(
            source=WebhookSource.TWILIO,
            sender=_first(payload, "From"),
            body=_first(payload, "Body"),
            recipient=_first(payload, "To"),
        )

    if payload.get("from_number") and payload.get("content"):
        return InboundSms(
            source=WebhookSource.TELERIVET,
            sender=_first(payload, "from_number"),
            body=_first(payload, "content"),
            recipient=_first(payload, "phone_id", "to_number"),
        )

    if payload.get("event") in TELERIVET_EVENTS:
        return InboundSms(
            source=WebhookSource.TELERIVET,
            sender=_first(payload, "from_number", "from"),
            body=_first(payload, "content", "message", "body"),
            recipient=_first(payload, "phone_id", "to_number", "to"),
        )

    logger.warning("Unknown SMS webhook shape; keys=%s", sorted(payload.keys()))
    return InboundSms(
        source=WebhookSource.GENERIC,
        sender=_first(payload, "from_number", "From", "from"),
        body=_first(payload, "content", "Body", "body", "message"),
        recipient=_first(payload, "phone_id", "To", "to_number", "to"),
    )


# ══════════════════════════════════════════════════════════════════════════
# Command Grammar
# ══════════════════════════════════════════════════════════════════════════

class CommandError(Exception):
    """The SMS body does not follow the REPORT grammar."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class ParsedCommand:
    qr_token: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    manual_location: Optional[str] = None
    helper_note: Optional[str] = None

    def to_submission(self) -> ReportSubmission:
        return ReportSubmission(
            qr_token=self.qr_token,
            latitude=self.latitude,
            longitude=self.longitude,
            manual_location=self.manual_location,
            helper_note=self.helper_note,
        )


def _coordinate(token: str, bound: float) -> Optional[float]:
    try:
        value = float(token)
    except ValueError:
        return None
    if not math.isfinite(value) or not -bound <= value <= bound:
        return None
    return value


def _join_after(parts: List[str], index: int, end: Optional[int] = None) -> Optional[str]:
    text = " ".join(parts[index + 1:end])
    return text or None


def _index_of(parts: List[str], keyword: str, start: int = 0) -> int:
    try:
        return parts.index(keyword, start)
    except ValueError:
        return -1


def _parse_coordinates(parts: List[str]) -> Optional[Tuple[float, float]]:
    if len(parts) < 4:
        return None
    lat = _coordinate(parts[2], 90)
    lng = _coordinate(parts[3], 180)
    if lat is None or lng is None:
        return None
    return lat, lng


def parse_command(body: str) -> ParsedCommand:
    """
    Decode a REPORT command.

    Raises:
        CommandError("invalid_format") when the first word is not REPORT
        CommandError("missing_token") when no vehicle token follows it

    >>> parse_command("REPORT tok123 12.97 77.59 NOTE car smoking").helper_note
    'car smoking'
    """
    parts = (body or "").split()
    if not parts or parts[0] != COMMAND_KEYWORD:
        raise CommandError("invalid_format", MSG_INVALID_FORMAT)
    if len(parts) < 2:
        raise CommandError("missing_token", MSG_MISSING_TOKEN)

    token = parts[1]

    coordinates = _parse_coordinates(parts)
    if coordinates is not None:
        note_at = _index_of(parts, NOTE_KEYWORD, 4)
        note = _join_after(parts, note_at) if note_at != -1 else None
        return ParsedCommand(
            qr_token=token,
            latitude=coordinates[0],
            longitude=coordinates[1],
            helper_note=note,
        )

    location_at = _index_of(parts, LOCATION_KEYWORD, 2)
    if location_at != -1:
        note_at = _index_of(parts, NOTE_KEYWORD, location_at + 1)
        if note_at != -1:
            return ParsedCommand(
                qr_token=token,
                manual_location=_join_after(parts, location_at, note_at),
                helper_note=_join_after(parts, note_at),
            )
        return ParsedCommand(qr_token=token, manual_location=_join_after(parts, location_at))

    note_at = _index_of(parts, NOTE_KEYWORD, 2)
    if note_at != -1:
        return ParsedCommand(qr_token=token, helper_note=_join_after(parts, note_at))

    return ParsedCommand(qr_token=token)


# ══════════════════════════════════════════════════════════════════════════
# Replies
# ══════════════════════════════════════════════════════════════════════════

def twiml_message(text: str) -> str:
    """TwiML envelope carrying one reply message."""
    reply = MessagingResponse()
    reply.message(text)
    return str(reply)
