"""
Tests for the alert SMS composer and phone-number routing.
"""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from assistqr.services.notifications.sms import (
    SMS_HEADER,
    SMS_SIGNATURE,
    SmsChannel,
    TwilioSmsProvider,
    compact_timestamp,
    compose_sms,
    format_indian_number,
    is_indian_number,
    to_ascii,
    truncate,
)


class TestComposeSms:

    def test_layout_with_coordinates(self, sample_alert):
        message = compose_sms(sample_alert, max_length=160, tz_name="Asia/Kolkata")
        lines = message.split("\n")

        assert lines[0] == SMS_HEADER
        assert lines[1] == "KA01AB1234 Honda City White"
        assert lines[2] == "15/01/24, 17:30"
        assert lines[3] == "maps.google.com/?q=12.9716,77.5946"
        assert lines[-1] == SMS_SIGNATURE
        assert len(message) <= 160

    def test_manual_location_used_without_coordinates(self, sample_alert):
        alert = replace(
            sample_alert, latitude=None, longitude=None,
            manual_location="Near Silk Board junction", helper_note=None,
        )
        message = compose_sms(alert, max_length=160, tz_name="UTC")

        assert "Near Silk Board junction" in message
        assert "maps.google.com" not in message

    def test_manual_location_ignored_with_coordinates(self, sample_alert):
        alert = replace(sample_alert, manual_location="Somewhere")
        message = compose_sms(alert, max_length=160, tz_name="UTC")

        assert "Somewhere" not in message

    def test_long_fields_are_capped(self, sample_alert):
        alert = replace(
            sample_alert, latitude=None, longitude=None,
            manual_location="L" * 80, helper_note="N" * 80,
        )
        message = compose_sms(alert, max_length=400, tz_name="UTC")
        lines = message.split("\n")

        assert lines[3] == "L" * 47 + "..."
        assert lines[4] == "N" * 37 + "..."

    def test_note_is_shortened_first(self, sample_alert):
        full = compose_sms(sample_alert, max_length=400, tz_name="UTC")
        budget = len(full) - 10
        message = compose_sms(sample_alert, max_length=budget, tz_name="UTC")

        assert len(message) <= budget
        assert "maps.google.com/?q=12.9716,77.5946" in message
        assert message.endswith(SMS_SIGNATURE)
        assert "..." in message.split("\n")[4]

    def test_signature_dropped_last(self, sample_alert):
        alert = replace(sample_alert, helper_note=None)
        mandatory = compose_sms(alert, max_length=400, tz_name="UTC")
        budget = len(mandatory) - 3
        message = compose_sms(alert, max_length=budget, tz_name="UTC")

        assert SMS_SIGNATURE not in message
        assert message.endswith("maps.google.com/?q=12.9716,77.5946")

    def test_mandatory_lines_never_exceed_budget(self, sample_alert):
        alert = replace(sample_alert, model="X" * 300)
        message = compose_sms(alert, max_length=160, tz_name="UTC")

        assert len(message) == 160

    def test_output_is_ascii(self, sample_alert):
        alert = replace(sample_alert, helper_note="Café crash — bystander hurt ❤")
        message = compose_sms(alert, max_length=160, tz_name="UTC")

        assert message.isascii()
        assert "Cafe crash" in message


class TestHelpers:

    def test_to_ascii_folds_accents(self):
        assert to_ascii("  Ñandú   road ") == "Nandu road"

    @pytest.mark.parametrize("text,limit,expected", [
        ("short", 10, "short"),
        ("abcdefghij", 8, "abcde..."),
        ("abcdef", 3, "abc"),
    ])
    def test_truncate(self, text, limit, expected):
        assert truncate(text, limit) == expected

    def test_compact_timestamp_converts_timezone(self):
        moment = datetime(2024, 12, 31, 20, 0, tzinfo=timezone.utc)
        assert compact_timestamp(moment, "Asia/Kolkata") == "01/01/25, 01:30"

    @pytest.mark.parametrize("number,expected", [
        ("+919876543210", True),
        ("9876543210", True),
        ("919876543210", True),
        ("+14155550123", False),
        ("+9198765", False),
        ("+1 987 654 3210", False),
    ])
    def test_is_indian_number(self, number, expected):
        assert is_indian_number(number) is expected

    def test_format_indian_number(self):
        assert format_indian_number("+91 98765 43210") == "9876543210"
        assert format_indian_number("9876543210") == "9876543210"


class TestSmsChannelRouting:

    def setup_method(self):
        self.channel = SmsChannel()

    def test_indian_numbers_try_fast2sms_first(self):
        self.channel.fast2sms.api_key = "key"

        providers = self.channel.providers_for("+919876543210")

        assert [p.name for p in providers] == ["fast2sms", "twilio"]

    def test_foreign_numbers_use_twilio_only(self):
        self.channel.fast2sms.api_key = "key"

        providers = self.channel.providers_for("+14155550123")

        assert [p.name for p in providers] == ["twilio"]

    def test_unconfigured_fast2sms_is_skipped(self):
        self.channel.fast2sms.api_key = ""

        providers = self.channel.providers_for("+919876543210")

        assert [p.name for p in providers] == ["twilio"]


class TestTwilioProvider:

    def test_http_calls_are_bounded_by_provider_timeout(self):
        provider = TwilioSmsProvider(
            account_sid="AC00000000000000000000000000000000",
            auth_token="secret",
            from_number="+15005550006",
            timeout=12.0,
        )

        assert provider.is_configured()
        assert provider.client.http_client.timeout == 12.0
