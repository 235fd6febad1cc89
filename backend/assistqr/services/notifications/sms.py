"""
AssistQR Backend — SMS Channel
================================

What:  Composes the single-segment alert SMS and delivers it through
       Fast2SMS (Indian numbers) or Twilio (everything else, and the
       fallback for Indian numbers).
Why:   SMS is the only channel guaranteed to reach a contact who is away
       from email, and the only one available to the cellular-only report
       path.

Message Layout (ASCII only, ≤ SMS_MAX_LENGTH characters):
    EMERGENCY ALERT
    KA01AB1234 Swift White
    19/10/26, 14:05
    maps.google.com/?q=12.97,77.59      ← or manual location (≤50)
    car smoking near the signal         ← helper note (≤40)
    -AssistQR

    Non-ASCII characters would switch the message to UCS-2 and cut the
    segment to 70 characters, so free text is folded to ASCII.

Truncation Order (when over budget):
    1. shorten/drop the helper note
    2. shorten/drop the manual location
    3. drop the signature
    Header, vehicle line, timestamp and maps link are never altered.
"""

import asyncio
import logging
import re
import unicodedata
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from assistqr.config import settings
from assistqr.exceptions import ProviderError
from assistqr.services.notifications.base import (
    Channel,
    HttpProvider,
    NotificationProvider,
    ProviderChain,
    ProviderResult,
    ReportAlert,
)

logger = logging.getLogger(__name__)

SMS_HEADER = "EMERGENCY ALERT"
SMS_SIGNATURE = "-AssistQR"
LOCATION_LIMIT = 50
NOTE_LIMIT = 40

# Shortest truncated field worth sending: one character plus "...".
_MIN_FIELD = 4


# ══════════════════════════════════════════════════════════════════════════
# Message Composition
# ══════════════════════════════════════════════════════════════════════════

def to_ascii(text: str) -> str:
    """Fold accents and drop any remaining non-ASCII characters."""
    folded = unicodedata.normalize("NFKD", text)
    ascii_text = folded.encode("ascii", "ignore").decode("ascii")
    return " ".join(ascii_text.split())


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def compact_timestamp(moment: datetime, tz_name: Optional[str] = None) -> str:
    """dd/mm/yy, HH:MM in the configured timezone."""
    local = moment.astimezone(ZoneInfo(tz_name or settings.sms_timezone))
    return local.strftime("%d/%m/%y, %H:%M")


def vehicle_line(alert: ReportAlert) -> str:
    parts = [alert.license_plate, alert.model or "", alert.color or ""]
    return to_ascii(" ".join(p for p in parts if p))


def compose_sms(
    alert: ReportAlert,
    max_length: Optional[int] = None,
    tz_name: Optional[str] = None,
) -> str:
    """
    Build the alert SMS body for a report, within the length budget.

    If the mandatory lines alone exceed the budget (an absurdly long vehicle
    model), the message is cut at the budget as a last resort.
    """
    budget = max_length or settings.sms_max_length

    mandatory = [SMS_HEADER, vehicle_line(alert), compact_timestamp(alert.reported_at, tz_name)]
    if alert.has_coordinates:
        mandatory.append(f"maps.google.com/?q={alert.latitude},{alert.longitude}")

    location_source = (
        to_ascii(alert.manual_location)
        if alert.manual_location and not alert.has_coordinates
        else ""
    )
    note_source = to_ascii(alert.helper_note) if alert.helper_note else ""

    location = truncate(location_source, LOCATION_LIMIT) if location_source else None
    note = truncate(note_source, NOTE_LIMIT) if note_source else None
    signature: Optional[str] = SMS_SIGNATURE

    def render() -> str:
        lines = list(mandatory)
        if location:
            lines.append(location)
        if note:
            lines.append(note)
        if signature:
            lines.append(signature)
        return "\n".join(lines)

    message = render()
    while len(message) > budget:
        overflow = len(message) - budget
        if note:
            target = len(note) - overflow
            note = truncate(note_source, target) if target >= _MIN_FIELD else None
        elif location:
            target = len(location) - overflow
            location = truncate(location_source, target) if target >= _MIN_FIELD else None
        elif signature:
            signature = None
        else:
            logger.warning(
                "SMS mandatory fields exceed %d chars for report %s; cutting",
                budget, alert.report_id,
            )
            return message[:budget]
        message = render()

    return message


# ══════════════════════════════════════════════════════════════════════════
# Phone Number Helpers
# ══════════════════════════════════════════════════════════════════════════

def _digits(phone_number: str) -> str:
    return re.sub(r"\D", "", phone_number or "")


def is_indian_number(phone_number: str) -> bool:
    """
    E.164 numbers are Indian when they are +91 followed by 10 digits.
    Bare numbers are accepted as 10 digits or 91 + 10 digits.
    """
    digits = _digits(phone_number)
    if phone_number.strip().startswith("+"):
        return len(digits) == 12 and digits.startswith("91")
    return len(digits) == 10 or (len(digits) == 12 and digits.startswith("91"))


def format_indian_number(phone_number: str) -> str:
    """Strip the country code; Fast2SMS expects the 10-digit subscriber number."""
    digits = _digits(phone_number)
    if digits.startswith("91") and len(digits) >= 12:
        return digits[2:12]
    return digits


# ══════════════════════════════════════════════════════════════════════════
# Providers
# ══════════════════════════════════════════════════════════════════════════

class Fast2SmsProvider(HttpProvider):
    """Fast2SMS Quick SMS route (India only, no DLT template)."""

    name = "fast2sms"

    def __init__(self, api_key: Optional[str] = None, url: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = settings.fast2sms_api_key if api_key is None else api_key
        self.url = url or settings.fast2sms_url

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, message: str, recipient: str) -> ProviderResult:
        response = await self.post_json(
            self.url,
            {
                "route": "q",
                "message": message,
                "language": "english",
                "numbers": format_indian_number(recipient),
            },
            {"authorization": self.api_key},
        )
        try:
            data = response.json()
        except ValueError:
            raise ProviderError(
                provider=self.name,
                message=f"unparseable response (HTTP {response.status_code})",
            )

        if isinstance(data, dict) and data.get("return") is True:
            return ProviderResult(success=True, message_id=str(data.get("request_id") or ""))

        detail = data.get("message") if isinstance(data, dict) else None
        if isinstance(detail, list):
            detail = "; ".join(str(d) for d in detail)
        raise ProviderError(
            provider=self.name,
            message=detail or f"rejected (HTTP {response.status_code})",
            context={"status_code": response.status_code},
        )


class TwilioSmsProvider(NotificationProvider):
    """
    Twilio Programmable Messaging.

    The twilio SDK is synchronous, so the call runs in a worker thread.
    """

    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[TwilioClient] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.account_sid = settings.twilio_account_sid if account_sid is None else account_sid
        self.auth_token = settings.twilio_auth_token if auth_token is None else auth_token
        self.from_number = settings.twilio_phone_number if from_number is None else from_number
        self._client = client

    def is_configured(self) -> bool:
        if self._client is not None:
            return bool(self.from_number)
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def client(self) -> TwilioClient:
        if self._client is None:
            # The worker thread outlives a cancelled await, so the HTTP call
            # itself must give up within the provider timeout.
            self._client = TwilioClient(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=self.timeout),
            )
        return self._client

    async def send(self, message: str, recipient: str) -> ProviderResult:
        try:
            created = await asyncio.to_thread(
                self.client.messages.create,
                body=message,
                from_=self.from_number,
                to=recipient,
            )
        except (TwilioException, OSError) as e:
            raise ProviderError(provider=self.name, message=str(e))
        return ProviderResult(success=True, message_id=getattr(created, "sid", None))


# ══════════════════════════════════════════════════════════════════════════
# Channel
# ══════════════════════════════════════════════════════════════════════════

class SmsChannel:
    """
    Chooses the provider chain from the destination number.

    Indian number + Fast2SMS configured → [Fast2SMS, Twilio]
    anything else                        → [Twilio]
    """

    channel = Channel.SMS

    def __init__(
        self,
        fast2sms: Optional[Fast2SmsProvider] = None,
        twilio: Optional[TwilioSmsProvider] = None,
    ):
        self.fast2sms = fast2sms or Fast2SmsProvider()
        self.twilio = twilio or TwilioSmsProvider()

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in (self.fast2sms, self.twilio) if p.is_configured()]

    def providers_for(self, phone_number: str) -> List[NotificationProvider]:
        if is_indian_number(phone_number) and self.fast2sms.is_configured():
            return [self.fast2sms, self.twilio]
        return [self.twilio]

    def compose(self, alert: ReportAlert) -> str:
        return compose_sms(alert)

    async def send(self, message: str, phone_number: str) -> ProviderResult:
        chain = ProviderChain(self.providers_for(phone_number), Channel.SMS)
        return await chain.deliver(message, phone_number)
