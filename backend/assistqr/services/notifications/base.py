"""
AssistQR Backend — Notification Provider Interface
====================================================

What:  Abstract base class for notification providers plus the ordered
       fallback chain that drives them.
Why:   Email and SMS both follow the same shape: an ordered list of
       providers, the first one that accepts the message wins. Keeping that
       logic in one place means Resend, SendGrid, SMTP, Fast2SMS and Twilio
       only implement `send()`.
How:   Concrete providers inherit from NotificationProvider, report whether
       their credentials are present, and raise ProviderError on failure.
       ProviderChain wraps every call in its own timeout, logs each failure
       and moves on to the next provider. It never raises.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from assistqr.config import settings
from assistqr.exceptions import ProviderError

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass(frozen=True)
class ContactInfo:
    """An emergency contact, detached from the ORM session."""
    name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_model(cls, contact: Any) -> "ContactInfo":
        return cls(
            name=contact.name,
            phone_number=contact.phone_number or None,
            email=contact.email or None,
        )

    def address_for(self, channel: Channel) -> Optional[str]:
        return self.email if channel is Channel.EMAIL else self.phone_number


@dataclass(frozen=True)
class ReportAlert:
    """Everything a channel needs to describe one persisted report."""
    report_id: str
    license_plate: str
    model: Optional[str]
    color: Optional[str]
    reported_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    manual_location: Optional[str] = None
    helper_note: Optional[str] = None
    image_urls: Tuple[str, ...] = ()

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def maps_url(self) -> Optional[str]:
        if not self.has_coordinates:
            return None
        return f"https://www.google.com/maps?q={self.latitude},{self.longitude}"


@dataclass
class ProviderResult:
    """
    Outcome of one delivery through a chain.

    `provider` is the provider that accepted the message, or the last one
    tried when all failed. `errors` keeps one entry per failed provider.
    """
    success: bool
    provider: Optional[str] = None
    message_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


class NotificationProvider(ABC):
    """
    Abstract interface for a single delivery provider.

    Contract:
        - send() returns a successful ProviderResult or raises ProviderError
        - implementations translate their own SDK/HTTP errors to ProviderError
        - send() must not enforce the overall timeout; the chain does that
    """

    name: str = "provider"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.provider_timeout

    @abstractmethod
    def is_configured(self) -> bool:
        """True when the provider's credentials are present."""
        ...

    @abstractmethod
    async def send(self, message: Any, recipient: str) -> ProviderResult:
        """
        Deliver one message to one recipient.

        Raises:
            ProviderError: the provider refused or could not be reached.
        """
        ...


class ProviderChain:
    """
    Ordered fallback over a list of providers.

    Only configured providers take part. Each attempt runs under
    asyncio.wait_for with that provider's own timeout, so a hanging provider
    costs at most its timeout before the next one is tried.
    """

    def __init__(self, providers: Sequence[NotificationProvider], channel: Channel):
        self.providers = list(providers)
        self.channel = channel

    @property
    def configured(self) -> List[NotificationProvider]:
        return [p for p in self.providers if p.is_configured()]

    async def deliver(self, message: Any, recipient: str) -> ProviderResult:
        providers = self.configured
        if not providers:
            logger.error("No %s provider configured; cannot notify %s", self.channel.value, recipient)
            return ProviderResult(
                success=False,
                errors=[f"no {self.channel.value} provider configured"],
            )

        errors: List[str] = []
        last_name: Optional[str] = None
        for provider in providers:
            last_name = provider.name
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    provider.send(message, recipient),
                    timeout=provider.timeout,
                )
            except asyncio.TimeoutError:
                errors.append(f"{provider.name}: timed out after {provider.timeout:.0f}s")
                logger.warning(
                    "%s provider %s timed out after %.0fs",
                    self.channel.value, provider.name, provider.timeout,
                )
                continue
            except ProviderError as e:
                errors.append(f"{provider.name}: {e.message}")
                logger.warning(
                    "%s provider %s failed: %s",
                    self.channel.value, provider.name, e.message,
                )
                continue

            logger.info(
                "%s delivered via %s in %.0fms",
                self.channel.value, provider.name, (time.perf_counter() - start) * 1000,
            )
            result.provider = provider.name
            result.errors = errors + result.errors
            return result

        logger.error("All %s providers failed for %s", self.channel.value, recipient)
        return ProviderResult(success=False, provider=last_name, errors=errors)


# ── HTTP providers ────────────────────────────────────────────────────────
# Transport-level failures (connection reset, DNS, read timeout) are retried
# inside the provider's own timeout budget. HTTP error statuses are not.
transient_http_retry = retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(settings.retry_max_attempts),
    wait=wait_exponential_jitter(
        initial=settings.retry_min_wait,
        max=settings.retry_max_wait,
        jitter=1,
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class HttpProvider(NotificationProvider):
    """
    Base for providers reached over a JSON HTTP API.

    `transport` lets tests substitute httpx.MockTransport.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout)
        self.transport = transport

    @transient_http_retry
    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            return await client.post(url, json=payload, headers=headers)

    async def post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> httpx.Response:
        """POST with retries; transport failures surface as ProviderError."""
        try:
            return await self._post_json(url, payload, headers)
        except httpx.HTTPError as e:
            raise ProviderError(
                provider=self.name,
                message=f"request failed: {type(e).__name__}: {e}",
            )
