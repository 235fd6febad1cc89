"""
AssistQR Backend — Notification Fan-out
=========================================

What:  Sends one report's alert to every emergency contact on every
       requested channel, concurrently, and aggregates the outcomes.
Why:   The report is already committed when this runs. A contact that
       cannot be reached must never stop the others from being alerted,
       and must never turn a saved report into a failed request.
How:   One coroutine per (contact, channel) pair, joined with
       asyncio.gather(return_exceptions=True). Each pair yields a
       NotificationAttempt. The per-provider timeouts inside each chain
       bound how long the whole fan-out can take.

Aggregate:
    notified_count = contacts with at least one successful attempt among
    the requested channels. Zero contacts → 0, not an error.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from assistqr.services.notifications.base import Channel, ContactInfo, ReportAlert
from assistqr.services.notifications.email import EmailChannel
from assistqr.services.notifications.sms import SmsChannel

logger = logging.getLogger(__name__)


@dataclass
class NotificationAttempt:
    channel: Channel
    contact: ContactInfo
    success: bool
    provider: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FanoutResult:
    contact_count: int
    attempts: List[NotificationAttempt] = field(default_factory=list)
    # Index of the contact each attempt belongs to, parallel to `attempts`.
    _contact_index: List[int] = field(default_factory=list, repr=False)

    @property
    def notified_count(self) -> int:
        return len({
            idx for idx, attempt in zip(self._contact_index, self.attempts)
            if attempt.success
        })

    def failed(self) -> List[NotificationAttempt]:
        return [a for a in self.attempts if not a.success]


class NotificationFanout:
    """
    Concurrent multi-channel dispatcher.

    Channels are injectable so tests can substitute provider chains without
    touching the network.
    """

    def __init__(
        self,
        email_channel: Optional[EmailChannel] = None,
        sms_channel: Optional[SmsChannel] = None,
    ):
        self.email = email_channel or EmailChannel()
        self.sms = sms_channel or SmsChannel()

    async def dispatch(
        self,
        alert: ReportAlert,
        contacts: Sequence[Any],
        channels: Iterable[Channel],
    ) -> FanoutResult:
        """
        Alert every contact on every channel in `channels`.

        Args:
            alert:    the persisted report, detached from the DB session
            contacts: ContactInfo or EmergencyContact rows
            channels: any of Channel.EMAIL / Channel.SMS

        Never raises for delivery failures.
        """
        people = [c if isinstance(c, ContactInfo) else ContactInfo.from_model(c) for c in contacts]
        wanted = [ch for ch in (Channel.EMAIL, Channel.SMS) if ch in set(channels)]
        result = FanoutResult(contact_count=len(people))

        if not people:
            logger.warning("Report %s: vehicle has no emergency contacts", alert.report_id)
            return result
        if not wanted:
            return result

        messages: Dict[Channel, Any] = {}
        if Channel.EMAIL in wanted and any(p.email for p in people):
            messages[Channel.EMAIL] = await self.email.compose(alert)
        if Channel.SMS in wanted and any(p.phone_number for p in people):
            messages[Channel.SMS] = self.sms.compose(alert)

        pairs = [(idx, person, ch) for idx, person in enumerate(people) for ch in wanted]
        logger.info(
            "Report %s: dispatching %d notification(s) to %d contact(s) via %s",
            alert.report_id, len(pairs), len(people), ",".join(ch.value for ch in wanted),
        )

        outcomes = await asyncio.gather(
            *(self._attempt(person, ch, messages.get(ch)) for _, person, ch in pairs),
            return_exceptions=True,
        )

        for (idx, person, ch), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "Report %s: unexpected %s failure for %s",
                    alert.report_id, ch.value, person.name,
                    exc_info=outcome,
                )
                outcome = NotificationAttempt(
                    channel=ch,
                    contact=person,
                    success=False,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            result.attempts.append(outcome)
            result._contact_index.append(idx)

        logger.info(
            "Report %s: notified %d/%d contact(s)",
            alert.report_id, result.notified_count, result.contact_count,
        )
        return result

    async def _attempt(
        self,
        person: ContactInfo,
        channel: Channel,
        message: Any,
    ) -> NotificationAttempt:
        address = person.address_for(channel)
        if not address or message is None:
            return NotificationAttempt(
                channel=channel,
                contact=person,
                success=False,
                error=f"no {channel.value} address",
            )

        sender = self.email if channel is Channel.EMAIL else self.sms
        delivered = await sender.send(message, address)
        return NotificationAttempt(
            channel=channel,
            contact=person,
            success=delivered.success,
            provider=delivered.provider,
            error=delivered.error,
        )


# ── Singleton Instance ────────────────────────────────────────────────────
notification_fanout = NotificationFanout()
