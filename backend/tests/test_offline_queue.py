"""
Tests for the client-side offline queue.

Each test gets its own SQLite file (tmp_path), so state never leaks.
"""

import base64

import pytest

from assistqr.exceptions import InvalidImageError, NotFoundError, ValidationError
from assistqr.offline.queue import (
    ImageEncoding,
    ImageFile,
    LocalQueue,
    QueuedImage,
    QueueStatus,
    ReportDraft,
)


def draft(**overrides) -> ReportDraft:
    fields = {"qr_token": "tok-abc", "latitude": "12.97", "longitude": "77.59"}
    fields.update(overrides)
    return ReportDraft(**fields)


class TestReportDraft:

    def test_form_fields_skip_empty_values(self):
        fields = ReportDraft(qr_token="tok", manual_location="", helper_note="hurt").form_fields()

        assert fields == {"qrToken": "tok", "helperNote": "hurt"}


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_starts_pending(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft(helper_note="smoke"))

        entry = await offline_queue.get(queue_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.retry_count == 0
        assert entry.helper_note == "smoke"
        assert entry.latitude == "12.97"
        assert await offline_queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_enqueue_with_images_keeps_order(self, offline_queue, sample_image_bytes):
        images = [
            ImageFile(data=sample_image_bytes, filename="a.jpg", mime_type="image/jpeg"),
            ImageFile(data=b"\x89PNG...", filename="b.png", mime_type="image/png"),
        ]

        queue_id = await offline_queue.enqueue_with_images(draft(), images)

        stored = await offline_queue.images_for(queue_id)
        assert [i.filename for i in stored] == ["a.jpg", "b.png"]
        assert stored[0].data == sample_image_bytes

    @pytest.mark.asyncio
    async def test_invalid_image_queues_nothing(self, offline_queue, sample_image_bytes):
        images = [
            ImageFile(data=sample_image_bytes, filename="a.jpg", mime_type="image/jpeg"),
            ImageFile(data=b"text", filename="notes.txt", mime_type="text/plain"),
        ]

        with pytest.raises(InvalidImageError):
            await offline_queue.enqueue_with_images(draft(), images)

        assert await offline_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_list_pending_is_oldest_first(self, offline_queue):
        first = await offline_queue.enqueue(draft(helper_note="first"))
        second = await offline_queue.enqueue(draft(helper_note="second"))

        pending = await offline_queue.list_pending()

        assert [e.id for e in pending] == [first, second]

    @pytest.mark.asyncio
    async def test_init_is_idempotent(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())

        await offline_queue.init()

        assert await offline_queue.get(queue_id) is not None


class TestAttachImage:

    @pytest.mark.asyncio
    async def test_attach_to_pending(self, offline_queue, sample_image_bytes):
        queue_id = await offline_queue.enqueue(draft())

        image_id = await offline_queue.attach_image(queue_id, sample_image_bytes, "c.jpg", "image/jpeg")

        images = await offline_queue.images_for(queue_id)
        assert [i.id for i in images] == [image_id]

    @pytest.mark.asyncio
    async def test_attach_to_unknown_entry(self, offline_queue, sample_image_bytes):
        with pytest.raises(NotFoundError):
            await offline_queue.attach_image(999, sample_image_bytes, "c.jpg", "image/jpeg")

    @pytest.mark.asyncio
    async def test_attach_after_sync_started(self, offline_queue, sample_image_bytes):
        queue_id = await offline_queue.enqueue(draft())
        assert await offline_queue.claim(queue_id) is True

        with pytest.raises(ValidationError) as exc_info:
            await offline_queue.attach_image(queue_id, sample_image_bytes, "c.jpg", "image/jpeg")

        assert exc_info.value.reason == "not_pending"

    @pytest.mark.asyncio
    async def test_attach_rejects_non_image(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())

        with pytest.raises(InvalidImageError):
            await offline_queue.attach_image(queue_id, b"%PDF", "doc.pdf", "application/pdf")


class TestStatusTransitions:

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())

        assert await offline_queue.claim(queue_id) is True
        assert await offline_queue.claim(queue_id) is False

    @pytest.mark.asyncio
    async def test_failed_increments_retry_count(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())

        assert await offline_queue.set_status(queue_id, QueueStatus.FAILED, "HTTP 503") == 1
        assert await offline_queue.set_status(queue_id, QueueStatus.PENDING) == 1
        assert await offline_queue.set_status(queue_id, QueueStatus.FAILED, "timeout") == 2

        entry = await offline_queue.get(queue_id)
        assert entry.last_error == "timeout"

    @pytest.mark.asyncio
    async def test_set_status_unknown_entry(self, offline_queue):
        with pytest.raises(NotFoundError):
            await offline_queue.set_status(42, QueueStatus.FAILED)

    @pytest.mark.asyncio
    async def test_remove_deletes_images(self, offline_queue, sample_image_bytes):
        queue_id = await offline_queue.enqueue_with_images(
            draft(), [ImageFile(sample_image_bytes, "a.jpg", "image/jpeg")]
        )

        await offline_queue.remove(queue_id)

        assert await offline_queue.get(queue_id) is None
        assert await offline_queue.images_for(queue_id) == []

    @pytest.mark.asyncio
    async def test_requeue_only_permanently_failed(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())
        assert await offline_queue.requeue(queue_id) is False

        await offline_queue.set_status(queue_id, QueueStatus.FAILED, "404")
        await offline_queue.set_status(queue_id, QueueStatus.PERMANENTLY_FAILED)

        assert await offline_queue.requeue(queue_id) is True
        entry = await offline_queue.get(queue_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.retry_count == 0
        assert entry.last_error is None

    @pytest.mark.asyncio
    async def test_release_orphans(self, offline_queue):
        stuck = await offline_queue.enqueue(draft())
        waiting = await offline_queue.enqueue(draft())
        await offline_queue.claim(stuck, now=1000.0)

        assert await offline_queue.release_orphans(now=1031.0, stale_after=30) == 1
        assert [e.id for e in await offline_queue.list_pending()] == [stuck, waiting]

    @pytest.mark.asyncio
    async def test_fresh_claim_is_not_released(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())
        await offline_queue.claim(queue_id, now=1000.0)

        assert await offline_queue.release_orphans(now=1020.0, stale_after=30) == 0
        assert (await offline_queue.get(queue_id)).status == QueueStatus.SYNCING.value

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_claim_fresh(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())
        token = await offline_queue.try_acquire_sync_lock(now=1000.0, stale_after=30, cooldown=0)
        await offline_queue.claim(queue_id, now=1000.0)

        assert await offline_queue.refresh_sync_lock(token, now=1025.0, queue_id=queue_id) is True

        assert await offline_queue.release_orphans(now=1040.0, stale_after=30) == 0
        assert await offline_queue.try_acquire_sync_lock(now=1040.0, stale_after=30, cooldown=0) is None

    @pytest.mark.asyncio
    async def test_refresh_by_former_holder_fails(self, offline_queue):
        old = await offline_queue.try_acquire_sync_lock(now=1000.0, stale_after=30, cooldown=0)
        await offline_queue.try_acquire_sync_lock(now=1031.0, stale_after=30, cooldown=0)

        assert await offline_queue.refresh_sync_lock(old, now=1032.0) is False

    @pytest.mark.asyncio
    async def test_stranded_failed_entry_is_recovered(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())
        await offline_queue.set_status(queue_id, QueueStatus.FAILED, "HTTP 500")

        assert await offline_queue.release_orphans(now=1000.0, stale_after=30) == 1
        entry = await offline_queue.get(queue_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.retry_count == 1


class TestRecordFailure:

    @pytest.mark.asyncio
    async def test_back_to_pending_while_retries_left(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())
        await offline_queue.claim(queue_id)

        status, retry_count = await offline_queue.record_failure(queue_id, "HTTP 503", retry_limit=5)

        assert status is QueueStatus.PENDING
        assert retry_count == 1
        entry = await offline_queue.get(queue_id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.last_error == "HTTP 503"
        assert entry.claimed_at is None

    @pytest.mark.asyncio
    async def test_parked_at_retry_limit(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())

        await offline_queue.record_failure(queue_id, "HTTP 500", retry_limit=2)
        status, retry_count = await offline_queue.record_failure(queue_id, "HTTP 500", retry_limit=2)

        assert status is QueueStatus.PERMANENTLY_FAILED
        assert retry_count == 2

    @pytest.mark.asyncio
    async def test_terminal_failure_parks_at_once(self, offline_queue):
        queue_id = await offline_queue.enqueue(draft())

        status, retry_count = await offline_queue.record_failure(
            queue_id, "HTTP 404", retry_limit=5, terminal=True
        )

        assert status is QueueStatus.PERMANENTLY_FAILED
        assert retry_count == 1

    @pytest.mark.asyncio
    async def test_unknown_entry(self, offline_queue):
        with pytest.raises(NotFoundError):
            await offline_queue.record_failure(7, "HTTP 500", retry_limit=5)


class TestLegacyImages:

    async def _insert_row(self, queue: LocalQueue, queue_id: int, **fields):
        async with queue.sessions() as session:
            async with session.begin():
                session.add(QueuedImage(report_id=queue_id, filename="old.jpg", mime_type="image/jpeg", **fields))

    @pytest.mark.asyncio
    async def test_base64_rows_are_decoded(self, offline_queue, sample_image_bytes):
        queue_id = await offline_queue.enqueue(draft())
        await self._insert_row(
            offline_queue, queue_id,
            schema_version=1,
            encoding=ImageEncoding.BASE64.value,
            payload=base64.b64encode(sample_image_bytes),
            size=len(sample_image_bytes),
        )

        images = await offline_queue.images_for(queue_id)

        assert len(images) == 1
        assert images[0].data == sample_image_bytes

    @pytest.mark.asyncio
    async def test_corrupt_rows_are_skipped(self, offline_queue, sample_image_bytes):
        queue_id = await offline_queue.enqueue_with_images(
            draft(), [ImageFile(sample_image_bytes, "new.jpg", "image/jpeg")]
        )
        await self._insert_row(
            offline_queue, queue_id,
            schema_version=1, encoding=ImageEncoding.BASE64.value, payload=b"!!not base64!!", size=14,
        )
        await self._insert_row(
            offline_queue, queue_id,
            schema_version=3, encoding="zstd", payload=b"\x00", size=1,
        )

        images = await offline_queue.images_for(queue_id)

        assert [i.filename for i in images] == ["new.jpg"]


class TestSyncLock:

    @pytest.mark.asyncio
    async def test_single_holder(self, offline_queue):
        token = await offline_queue.try_acquire_sync_lock(now=1000.0, stale_after=30, cooldown=0)

        assert token is not None
        assert await offline_queue.try_acquire_sync_lock(now=1001.0, stale_after=30, cooldown=0) is None
        assert await offline_queue.release_sync_lock(token) is True
        assert await offline_queue.try_acquire_sync_lock(now=1002.0, stale_after=30, cooldown=0) is not None

    @pytest.mark.asyncio
    async def test_cooldown_between_cycles(self, offline_queue):
        token = await offline_queue.try_acquire_sync_lock(now=1000.0, stale_after=30, cooldown=10)
        await offline_queue.release_sync_lock(token)

        assert await offline_queue.try_acquire_sync_lock(now=1005.0, stale_after=30, cooldown=10) is None
        assert await offline_queue.try_acquire_sync_lock(now=1010.0, stale_after=30, cooldown=10) is not None

    @pytest.mark.asyncio
    async def test_stale_lock_is_taken_over(self, offline_queue):
        crashed = await offline_queue.try_acquire_sync_lock(now=1000.0, stale_after=30, cooldown=0)

        fresh = await offline_queue.try_acquire_sync_lock(now=1031.0, stale_after=30, cooldown=0)

        assert fresh is not None
        assert await offline_queue.release_sync_lock(crashed) is False
        assert await offline_queue.release_sync_lock(fresh) is True

    @pytest.mark.asyncio
    async def test_lock_is_shared_across_queue_instances(self, offline_queue, queue_url):
        other = LocalQueue(queue_url)
        await other.init()
        try:
            token = await offline_queue.try_acquire_sync_lock(now=1000.0, stale_after=30, cooldown=0)
            assert token is not None
            assert await other.try_acquire_sync_lock(now=1001.0, stale_after=30, cooldown=0) is None
        finally:
            await other.close()
