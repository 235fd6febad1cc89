"""
Tests for provider chains, the email/SMS channels and the fan-out.

No network: providers are in-test fakes, HTTP providers talk to
httpx.MockTransport.
"""

import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from assistqr.exceptions import ProviderError
from assistqr.services.notifications.base import (
    Channel,
    ContactInfo,
    NotificationProvider,
    ProviderChain,
    ProviderResult,
)
from assistqr.services.notifications.email import (
    AlertEmail,
    EmailChannel,
    PhotoLoader,
    ResendProvider,
    SendGridProvider,
)
from assistqr.services.notifications.fanout import NotificationFanout
from assistqr.services.notifications.sms import Fast2SmsProvider, SmsChannel


class FakeProvider(NotificationProvider):
    """Scripted provider: succeeds, raises ProviderError, or hangs."""

    def __init__(self, name, behaviour="ok", timeout=1.0):
        super().__init__(timeout=timeout)
        self.name = name
        self.behaviour = behaviour
        self.sent = []

    def is_configured(self):
        return self.behaviour != "unconfigured"

    async def send(self, message, recipient):
        self.sent.append((message, recipient))
        if self.behaviour == "fail":
            raise ProviderError(provider=self.name, message="refused")
        if self.behaviour == "hang":
            await asyncio.sleep(10)
        if self.behaviour == "boom":
            raise RuntimeError("unexpected")
        return ProviderResult(success=True, message_id=f"{self.name}-1")


# ══════════════════════════════════════════════════════════════════════════
# ProviderChain
# ══════════════════════════════════════════════════════════════════════════

class TestProviderChain:

    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        first, second = FakeProvider("a"), FakeProvider("b")
        chain = ProviderChain([first, second], Channel.EMAIL)

        result = await chain.deliver("msg", "x@example.com")

        assert result.success is True
        assert result.provider == "a"
        assert second.sent == []

    @pytest.mark.asyncio
    async def test_falls_back_after_failure(self):
        chain = ProviderChain([FakeProvider("a", "fail"), FakeProvider("b")], Channel.EMAIL)

        result = await chain.deliver("msg", "x@example.com")

        assert result.success is True
        assert result.provider == "b"
        assert result.errors == ["a: refused"]

    @pytest.mark.asyncio
    async def test_timeout_moves_to_next_provider(self):
        chain = ProviderChain(
            [FakeProvider("slow", "hang", timeout=0.05), FakeProvider("fast")],
            Channel.SMS,
        )

        result = await chain.deliver("msg", "+14155550123")

        assert result.success is True
        assert result.provider == "fast"
        assert "timed out" in result.errors[0]

    @pytest.mark.asyncio
    async def test_all_failed(self):
        chain = ProviderChain([FakeProvider("a", "fail"), FakeProvider("b", "fail")], Channel.EMAIL)

        result = await chain.deliver("msg", "x@example.com")

        assert result.success is False
        assert result.provider == "b"
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_unconfigured_providers_are_skipped(self):
        skipped = FakeProvider("a", "unconfigured")
        chain = ProviderChain([skipped, FakeProvider("b")], Channel.EMAIL)

        result = await chain.deliver("msg", "x@example.com")

        assert result.provider == "b"
        assert skipped.sent == []

    @pytest.mark.asyncio
    async def test_nothing_configured(self):
        chain = ProviderChain([FakeProvider("a", "unconfigured")], Channel.SMS)

        result = await chain.deliver("msg", "+14155550123")

        assert result.success is False
        assert result.error == "no sms provider configured"


# ══════════════════════════════════════════════════════════════════════════
# HTTP Providers
# ══════════════════════════════════════════════════════════════════════════

class TestHttpProviders:

    @pytest.mark.asyncio
    async def test_fast2sms_success(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"return": True, "request_id": "r1"})

        provider = Fast2SmsProvider(
            api_key="k", url="https://f2s.test/bulk", transport=httpx.MockTransport(handler)
        )
        result = await provider.send("hello", "+919876543210")

        assert result.success is True
        assert result.message_id == "r1"
        assert captured["body"]["numbers"] == "9876543210"
        assert captured["body"]["route"] == "q"
        assert captured["auth"] == "k"

    @pytest.mark.asyncio
    async def test_fast2sms_rejection_raises(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"return": False, "message": ["Invalid key"]})
        )
        provider = Fast2SmsProvider(api_key="k", url="https://f2s.test/bulk", transport=transport)

        with pytest.raises(ProviderError) as exc_info:
            await provider.send("hello", "+919876543210")

        assert "Invalid key" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_resend_attaches_photos(self, sample_alert, sample_image_bytes):
        captured = {}

        def handler(request: httpx.Request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-1"})

        from assistqr.services.notifications.email import AlertPhoto

        photo = AlertPhoto(
            filename="accident_photo_1.jpg",
            content=sample_image_bytes,
            content_type="image/jpeg",
            content_id="photo1.r@assistqr",
            url="http://testserver.local/uploads/a.jpg",
        )
        message = AlertEmail(
            alert=replace(sample_alert, image_urls=(photo.url,)), photos=[photo]
        )
        provider = ResendProvider(api_key="k", transport=httpx.MockTransport(handler))

        result = await provider.send(message, "owner@example.com")

        assert result.message_id == "email-1"
        assert captured["body"]["to"] == ["owner@example.com"]
        assert captured["body"]["attachments"][0]["filename"] == "accident_photo_1.jpg"
        # Resend gets links, not cid: references
        assert "cid:" not in captured["body"]["html"]
        assert photo.url in captured["body"]["html"]

    @pytest.mark.asyncio
    async def test_sendgrid_error_status_raises(self, sample_alert):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, text="unauthorized"))
        provider = SendGridProvider(api_key="k", from_email="alerts@example.com", transport=transport)

        with pytest.raises(ProviderError) as exc_info:
            await provider.send(AlertEmail(alert=sample_alert), "owner@example.com")

        assert "401" in exc_info.value.message


# ══════════════════════════════════════════════════════════════════════════
# Email Message
# ══════════════════════════════════════════════════════════════════════════

class TestAlertEmail:

    def test_subject_names_the_plate(self, sample_alert):
        assert "KA01AB1234" in AlertEmail(alert=sample_alert).subject

    def test_text_falls_back_when_location_missing(self, sample_alert):
        alert = replace(sample_alert, latitude=None, longitude=None)

        assert "Location: Not provided" in AlertEmail(alert=alert).text()

    def test_html_escapes_user_text(self, sample_alert):
        alert = replace(sample_alert, helper_note="<script>alert(1)</script>")

        html = AlertEmail(alert=alert).html(inline_images=True)

        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    @pytest.mark.asyncio
    async def test_compose_skips_photo_loading_without_providers(self, sample_alert):
        loader = PhotoLoader(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        channel = EmailChannel(providers=[FakeProvider("a", "unconfigured")], photo_loader=loader)

        message = await channel.compose(replace(sample_alert, image_urls=("http://x/1.jpg",)))

        assert message.photos == []

    @pytest.mark.asyncio
    async def test_unreachable_photo_is_skipped(self, sample_alert, sample_image_bytes):
        def handler(request: httpx.Request):
            if request.url.path.endswith("good.jpg"):
                return httpx.Response(200, content=sample_image_bytes, headers={"content-type": "image/jpeg"})
            return httpx.Response(404)

        loader = PhotoLoader(transport=httpx.MockTransport(handler))
        photos = await loader.load("r1", ["http://cdn.test/good.jpg", "http://cdn.test/gone.jpg"])

        assert len(photos) == 1
        assert photos[0].content == sample_image_bytes
        assert photos[0].filename == "accident_photo_1.jpg"


# ══════════════════════════════════════════════════════════════════════════
# Fan-out
# ══════════════════════════════════════════════════════════════════════════

class TestNotificationFanout:

    def setup_method(self):
        self.email_provider = FakeProvider("email-fake")
        self.sms_provider = FakeProvider("sms-fake")
        sms_channel = SmsChannel()
        sms_channel.twilio = self.sms_provider
        self.fanout = NotificationFanout(
            email_channel=EmailChannel(providers=[self.email_provider]),
            sms_channel=sms_channel,
        )
        self.contacts = [
            ContactInfo(name="Asha", phone_number="+919876543210", email="asha@example.com"),
            ContactInfo(name="Ben", phone_number="+14155550123"),
        ]

    @pytest.mark.asyncio
    async def test_email_only(self, sample_alert):
        result = await self.fanout.dispatch(sample_alert, self.contacts, [Channel.EMAIL])

        assert result.contact_count == 2
        assert result.notified_count == 1
        assert len(result.attempts) == 2
        assert [r for _, r in self.email_provider.sent] == ["asha@example.com"]
        assert self.sms_provider.sent == []

    @pytest.mark.asyncio
    async def test_both_channels_notify_everyone(self, sample_alert):
        result = await self.fanout.dispatch(
            sample_alert, self.contacts, [Channel.EMAIL, Channel.SMS]
        )

        assert result.notified_count == 2
        assert len(result.attempts) == 4
        assert sorted(r for _, r in self.sms_provider.sent) == ["+14155550123", "+919876543210"]

    @pytest.mark.asyncio
    async def test_one_contact_failing_does_not_stop_others(self, sample_alert):
        self.email_provider.behaviour = "boom"

        result = await self.fanout.dispatch(
            sample_alert, self.contacts, [Channel.EMAIL, Channel.SMS]
        )

        assert result.notified_count == 2
        failed = result.failed()
        assert any("RuntimeError" in (a.error or "") for a in failed)

    @pytest.mark.asyncio
    async def test_total_failure_is_not_an_exception(self, sample_alert):
        self.email_provider.behaviour = "fail"
        self.sms_provider.behaviour = "fail"

        result = await self.fanout.dispatch(
            sample_alert, self.contacts, [Channel.EMAIL, Channel.SMS]
        )

        assert result.notified_count == 0
        assert len(result.failed()) == 4

    @pytest.mark.asyncio
    async def test_email_fallback_per_contact(self, sample_alert):
        primary = FakeProvider("primary")
        secondary = FakeProvider("secondary")
        refused_by = {
            "primary": {"c1@example.com", "c2@example.com"},
            "secondary": {"c1@example.com"},
        }

        def refusing(provider):
            async def send(message, recipient):
                provider.sent.append((message, recipient))
                if recipient in refused_by[provider.name]:
                    raise ProviderError(provider=provider.name, message="refused")
                return ProviderResult(success=True, message_id=f"{provider.name}-1")
            return send

        primary.send = refusing(primary)
        secondary.send = refusing(secondary)
        fanout = NotificationFanout(
            email_channel=EmailChannel(providers=[primary, secondary]),
            sms_channel=SmsChannel(),
        )
        contacts = [
            ContactInfo(name="C1", phone_number="+14155550101", email="c1@example.com"),
            ContactInfo(name="C2", phone_number="+14155550102", email="c2@example.com"),
        ]

        result = await fanout.dispatch(sample_alert, contacts, [Channel.EMAIL])

        assert result.notified_count == 1
        by_name = {a.contact.name: a for a in result.attempts}
        assert by_name["C1"].success is False
        assert by_name["C2"].success is True
        assert by_name["C2"].provider == secondary.name

    @pytest.mark.asyncio
    async def test_zero_contacts(self, sample_alert):
        result = await self.fanout.dispatch(sample_alert, [], [Channel.EMAIL, Channel.SMS])

        assert result.contact_count == 0
        assert result.notified_count == 0
        assert result.attempts == []
