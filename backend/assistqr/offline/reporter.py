"""
AssistQR Offline Client — Report Submission
=============================================

What:  Submits a bystander's report, falling back to the local queue.
Why:   The bystander should get the same "report saved" answer whether the
       network worked or not; only a report the server rejected outright
       (unknown vehicle, bad input) needs their attention.
How:   Online: POST straight to the server. Offline, or on a transient
       failure (network error, 408/429/5xx): store report and photos in one
       queue transaction and let the SyncEngine deliver it later.

Result:
    DELIVERED  server accepted it; report_id is the server's id
    QUEUED     stored locally; queue_id identifies the entry
    REJECTED   server refused it with a terminal 4xx; nothing stored
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from assistqr.exceptions import TransientNetworkError
from assistqr.offline.queue import ImageFile, LocalQueue, ReportDraft, validate_image
from assistqr.offline.sync import (
    SyncEngine,
    error_text,
    is_transient_status,
    post_report,
    success_body,
)

logger = logging.getLogger(__name__)


class SubmitStatus(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass
class SubmitResult:
    status: SubmitStatus
    report_id: Optional[str] = None
    queue_id: Optional[int] = None
    notification_count: Optional[int] = None
    error: Optional[str] = None


class OfflineReporter:
    def __init__(self, queue: LocalQueue, engine: SyncEngine):
        self.queue = queue
        self.engine = engine

    async def submit(
        self,
        draft: ReportDraft,
        images: Sequence[ImageFile] = (),
    ) -> SubmitResult:
        """
        Deliver or queue one report.

        Raises:
            InvalidImageError:       a photo is not an image (nothing sent or stored)
            StorageUnavailableError: offline and the queue could not be written
        """
        for image in images:
            validate_image(image.data, image.mime_type)

        if not self.engine.is_online():
            return await self._queue(draft, images, reason="offline")

        try:
            async with self.engine.client() as client:
                response = await post_report(client, draft, images)
        except TransientNetworkError as e:
            return await self._queue(draft, images, reason=e.message)

        if response.is_success:
            body = success_body(response)
            logger.info("Report delivered directly: %s", body.get("reportId"))
            return SubmitResult(
                status=SubmitStatus.DELIVERED,
                report_id=body.get("reportId"),
                notification_count=body.get("notificationCount"),
            )

        if is_transient_status(response.status_code):
            return await self._queue(draft, images, reason=f"HTTP {response.status_code}")

        message = error_text(response)
        logger.warning("Report rejected by server: %s", message)
        return SubmitResult(status=SubmitStatus.REJECTED, error=message)

    async def _queue(
        self,
        draft: ReportDraft,
        images: Sequence[ImageFile],
        reason: str,
    ) -> SubmitResult:
        queue_id = await self.queue.enqueue_with_images(draft, images)
        logger.info("Report queued as %d (%s)", queue_id, reason)
        if self.engine.is_online():
            # Transient server trouble: try again soon rather than waiting
            # for a connectivity change that may never come.
            self.engine.request_sync()
        return SubmitResult(status=SubmitStatus.QUEUED, queue_id=queue_id, error=reason)
