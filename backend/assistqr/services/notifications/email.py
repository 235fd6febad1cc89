"""
AssistQR Backend — Email Channel
==================================

What:  Renders the alert email and delivers it through a fixed provider
       chain: Resend API → SendGrid API → SMTP relay.
Why:   Transactional APIs are the most reliable path out of a cloud host;
       SMTP is the last resort when no API key is configured or both APIs
       are failing.
How:   Photos are loaded once per report (local storage first, HTTP with a
       short timeout otherwise) and rendered per provider capability:
         - SendGrid, SMTP: inline images (cid: references)
         - Resend:         links in the body, photos as attachments
       A photo that cannot be loaded is skipped; the email still goes out.
"""

import asyncio
import base64
import html
import logging
import mimetypes
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import List, Optional, Sequence

import httpx

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
from assistqr.services.storage_service import StorageService, storage_service

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

NOT_SPECIFIED = "Not specified"
NO_REPLY_NOTICE = (
    "Please do not reply to this email address as it is not monitored. "
    "If you need to contact someone regarding this alert, please reach out "
    "to the vehicle owner directly."
)


# ══════════════════════════════════════════════════════════════════════════
# Photos
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertPhoto:
    filename: str
    content: bytes
    content_type: str
    content_id: str
    url: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.content).decode("ascii")


class PhotoLoader:
    """Loads report photos for inlining, from disk when they are ours."""

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage or storage_service
        self.timeout = timeout or settings.photo_fetch_timeout
        self.transport = transport

    async def load(self, report_id: str, urls: Sequence[str]) -> List[AlertPhoto]:
        photos: List[AlertPhoto] = []
        if not urls:
            return photos

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            for index, url in enumerate(urls, start=1):
                loaded = await self._load_one(client, url)
                if loaded is None:
                    continue
                content, content_type = loaded
                ext = mimetypes.guess_extension(content_type) or ".jpg"
                photos.append(
                    AlertPhoto(
                        filename=f"accident_photo_{index}{ext}",
                        content=content,
                        content_type=content_type,
                        content_id=f"photo{index}.{report_id}@assistqr",
                        url=url,
                    )
                )

        logger.info("Loaded %d/%d photo(s) for report %s", len(photos), len(urls), report_id)
        return photos

    async def _load_one(self, client: httpx.AsyncClient, url: str):
        local = self.storage.local_path_for_url(url)
        if local is not None:
            try:
                content = await self.storage.read_local(local)
            except OSError as e:
                logger.warning("Could not read photo %s: %s", local.name, str(e))
                return None
            return content, mimetypes.guess_type(local.name)[0] or "image/jpeg"

        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Could not download photo %s: %s", url, str(e))
            return None
        if response.status_code != 200:
            logger.warning("Could not download photo %s: HTTP %d", url, response.status_code)
            return None
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return response.content, content_type


# ══════════════════════════════════════════════════════════════════════════
# Message
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertEmail:
    """One report's alert email, renderable with or without inline photos."""

    alert: ReportAlert
    photos: List[AlertPhoto] = field(default_factory=list)

    @property
    def subject(self) -> str:
        return (
            "URGENT: Emergency Alert - Possible Accident Involving Vehicle "
            f"{self.alert.license_plate}"
        )

    @property
    def report_time(self) -> str:
        return self.alert.reported_at.strftime("%d %b %Y, %H:%M UTC")

    def text(self) -> str:
        a = self.alert
        lines = [
            "Emergency Alert: Possible Accident Report",
            "",
            "Vehicle Information:",
            f"- License Plate: {a.license_plate}",
            f"- Model: {a.model or NOT_SPECIFIED}",
            f"- Color: {a.color or NOT_SPECIFIED}",
            "",
            f"Time of Report: {self.report_time}",
            "",
        ]
        if a.maps_url:
            lines.append(f"Location: {a.maps_url}")
        if a.manual_location:
            lines.append(f"Location Description: {a.manual_location}")
        if not a.maps_url and not a.manual_location:
            lines.append("Location: Not provided")
        if a.helper_note:
            lines.append(f"Helper Note: {a.helper_note}")
        if a.image_urls:
            lines.append("")
            lines.append("Accident Photos:")
            lines.extend(f"Photo {i}: {url}" for i, url in enumerate(a.image_urls, start=1))
        lines += [
            "",
            "If you believe this is a false alarm, please contact the vehicle owner directly.",
            "",
            "---",
            f"IMPORTANT: {NO_REPLY_NOTICE}",
            "",
            "Thank you,",
            "AssistQR - Vehicle Safety System",
        ]
        return "\n".join(lines)

    def html(self, inline_images: bool) -> str:
        a = self.alert
        esc = html.escape

        details = [
            f'<div class="info-row"><span class="label">Time of Report:</span> {esc(self.report_time)}</div>'
        ]
        if a.maps_url:
            details.append(
                f'<div class="info-row"><a href="{esc(a.maps_url)}" class="button">'
                "View Location on Google Maps</a></div>"
            )
        if a.manual_location:
            details.append(
                '<div class="info-row"><span class="label">Location Description:</span> '
                f"{esc(a.manual_location)}</div>"
            )
        if a.helper_note:
            details.append(
                '<div class="info-row"><span class="label">Helper Note:</span> '
                f"{esc(a.helper_note)}</div>"
            )

        photos_html = ""
        if inline_images and self.photos:
            count = len(self.photos)
            imgs = "".join(
                f'<img src="cid:{p.content_id}" alt="Accident photo {i}" '
                'style="max-width: 100%; height: auto; margin: 10px 0; display: block;" />'
                for i, p in enumerate(self.photos, start=1)
            )
            photos_html = (
                f'<div class="section"><h3>Accident Photos ({count} photo{"s" if count > 1 else ""})</h3>'
                f'<div class="images">{imgs}</div></div>'
            )
        elif a.image_urls:
            links = "".join(
                f'<li><a href="{esc(url)}" target="_blank">Photo {i}</a></li>'
                for i, url in enumerate(a.image_urls, start=1)
            )
            photos_html = (
                '<div class="section"><h3>Accident Photos</h3>'
                f"<p>Photos are available at the following links:</p><ul>{links}</ul></div>"
            )

        return f"""<!DOCTYPE html>
<html>
<head>
<style>
  body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
  .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
  .header {{ background-color: #dc3545; color: white; padding: 20px; text-align: center; }}
  .content {{ background-color: #f9f9f9; padding: 20px; }}
  .section h3 {{ color: #dc3545; border-bottom: 2px solid #dc3545; padding-bottom: 5px; }}
  .label {{ font-weight: bold; }}
  .button {{ display: inline-block; padding: 10px 20px; background-color: #dc3545; color: white; text-decoration: none; border-radius: 5px; }}
  .footer {{ text-align: center; color: #666; font-size: 12px; margin-top: 20px; }}
</style>
</head>
<body>
<div class="container">
  <div class="header"><h1>Emergency Alert</h1></div>
  <div class="content">
    <div class="section">
      <h3>Vehicle Information</h3>
      <div class="info-row"><span class="label">License Plate:</span> {esc(a.license_plate)}</div>
      <div class="info-row"><span class="label">Model:</span> {esc(a.model or NOT_SPECIFIED)}</div>
      <div class="info-row"><span class="label">Color:</span> {esc(a.color or NOT_SPECIFIED)}</div>
    </div>
    <div class="section">
      <h3>Report Details</h3>
      {"".join(details)}
    </div>
    {photos_html}
    <div class="footer">
      <p>If you believe this is a false alarm, please contact the vehicle owner directly.</p>
      <p><strong>IMPORTANT NOTICE</strong></p>
      <p>{esc(NO_REPLY_NOTICE)}</p>
    </div>
  </div>
</div>
</body>
</html>"""


# ══════════════════════════════════════════════════════════════════════════
# Providers
# ══════════════════════════════════════════════════════════════════════════

class ResendProvider(HttpProvider):
    """Resend transactional API. Photos go as attachments, linked in the body."""

    name = "resend"
    inline_images = False

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = settings.resend_api_key if api_key is None else api_key
        self.from_email = from_email or settings.resend_from_email

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, message: AlertEmail, recipient: str) -> ProviderResult:
        payload = {
            "from": self.from_email,
            "to": [recipient],
            "subject": message.subject,
            "html": message.html(inline_images=self.inline_images),
            "text": message.text(),
        }
        if message.photos:
            payload["attachments"] = [
                {"filename": p.filename, "content": p.base64, "content_type": p.content_type}
                for p in message.photos
            ]

        response = await self.post_json(
            RESEND_URL,
            payload,
            {"Authorization": f"Bearer {self.api_key}"},
        )
        if response.status_code >= 300:
            raise ProviderError(
                provider=self.name,
                message=f"HTTP {response.status_code}: {response.text[:200]}",
                context={"status_code": response.status_code},
            )
        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return ProviderResult(success=True, message_id=message_id)


class SendGridProvider(HttpProvider):
    """SendGrid v3 mail/send. Supports inline images through content_id."""

    name = "sendgrid"
    inline_images = True

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = settings.sendgrid_api_key if api_key is None else api_key
        self.from_email = settings.sendgrid_from_email if from_email is None else from_email

    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    async def send(self, message: AlertEmail, recipient: str) -> ProviderResult:
        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.from_email, "name": settings.email_from_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text()},
                {"type": "text/html", "value": message.html(inline_images=self.inline_images)},
            ],
        }
        if message.photos:
            payload["attachments"] = [
                {
                    "content": p.base64,
                    "filename": p.filename,
                    "type": p.content_type,
                    "disposition": "inline",
                    "content_id": p.content_id,
                }
                for p in message.photos
            ]

        response = await self.post_json(
            SENDGRID_URL,
            payload,
            {"Authorization": f"Bearer {self.api_key}"},
        )
        if response.status_code >= 300:
            raise ProviderError(
                provider=self.name,
                message=f"HTTP {response.status_code}: {response.text[:200]}",
                context={"status_code": response.status_code},
            )
        return ProviderResult(success=True, message_id=response.headers.get("x-message-id"))


class SmtpProvider(NotificationProvider):
    """
    Plain SMTP relay, the last resort.

    smtplib is blocking, so the whole exchange runs in a worker thread.
    Port 465 uses implicit TLS; other ports upgrade with STARTTLS when
    SMTP_USE_TLS is set.
    """

    name = "smtp"
    inline_images = True

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.host = settings.smtp_host if host is None else host
        self.port = port or settings.smtp_port
        self.user = settings.smtp_user if user is None else user
        self.password = settings.smtp_pass if password is None else password
        self.from_email = (settings.smtp_from_email or self.user) if from_email is None else from_email

    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    def build_message(self, message: AlertEmail, recipient: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = formataddr((settings.email_from_name, self.from_email))
        msg["To"] = recipient
        msg["X-Priority"] = "1"
        msg["Importance"] = "high"
        msg["Message-ID"] = make_msgid(domain="assistqr")
        msg.set_content(message.text())
        msg.add_alternative(message.html(inline_images=self.inline_images), subtype="html")

        html_part = msg.get_payload()[-1]
        for photo in message.photos:
            maintype, _, subtype = photo.content_type.partition("/")
            html_part.add_related(
                photo.content,
                maintype=maintype or "image",
                subtype=subtype or "jpeg",
                cid=f"<{photo.content_id}>",
                filename=photo.filename,
            )
        return msg

    def _send_blocking(self, msg: EmailMessage) -> None:
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with server:
            if self.port != 465 and settings.smtp_use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def send(self, message: AlertEmail, recipient: str) -> ProviderResult:
        msg = self.build_message(message, recipient)
        try:
            await asyncio.to_thread(self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(provider=self.name, message=f"{type(e).__name__}: {e}")
        return ProviderResult(success=True, message_id=msg["Message-ID"])


# ══════════════════════════════════════════════════════════════════════════
# Channel
# ══════════════════════════════════════════════════════════════════════════

class EmailChannel:
    """Resend → SendGrid → SMTP, only the configured ones."""

    channel = Channel.EMAIL

    def __init__(
        self,
        providers: Optional[Sequence[NotificationProvider]] = None,
        photo_loader: Optional[PhotoLoader] = None,
    ):
        if providers is None:
            providers = [ResendProvider(), SendGridProvider(), SmtpProvider()]
        self.chain = ProviderChain(providers, Channel.EMAIL)
        self.photo_loader = photo_loader or PhotoLoader()

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.chain.configured]

    async def compose(self, alert: ReportAlert) -> AlertEmail:
        """Load photos once; the result is shared by every contact."""
        photos: List[AlertPhoto] = []
        if alert.image_urls and self.chain.configured:
            photos = await self.photo_loader.load(alert.report_id, alert.image_urls)
        return AlertEmail(alert=alert, photos=photos)

    async def send(self, message: AlertEmail, email: str) -> ProviderResult:
        return await self.chain.deliver(message, email)
