"""
AssistQR Offline Client — Local Persistent Queue
==================================================

What:  Durable, local storage for reports a bystander submitted while
       offline, together with their photos.
Why:   Accident scenes are often dead zones. A report typed there must
       survive the app being closed, the phone rebooting, and any number of
       failed sync attempts until the server confirms it.
How:   A SQLite file through async SQLAlchemy (aiosqlite). Every operation
       is its own short transaction; concurrency-sensitive transitions
       (claiming an entry, taking the sync lock) are single conditional
       UPDATE statements judged by their rowcount.

Entry Lifecycle:
    ┌─────────┐ claim ┌─────────┐ 2xx     ┌─────────┐
    │ pending │──────▶│ syncing │────────▶│ removed │
    └─────────┘       └─────────┘         └─────────┘
         ▲                 │ record_failure (retry_count += 1), one UPDATE
         │  retries left   │
         └─────────────────┤
                           │ ceiling reached or terminal 4xx
                           ▼
                  ┌────────────────────┐
                  │ permanently_failed │  (kept; requeue() to retry)
                  └────────────────────┘

    `failed` is only ever written by set_status(); release_orphans() returns
    such rows to pending, together with `syncing` rows whose claim went
    stale (no heartbeat for longer than the lock timeout).

Image Records:
    Every row carries `schema_version` and an `encoding` tag. Version 1
    rows stored base64 text; version 2 rows store raw bytes. Reads branch
    on the tag so entries queued by an older client still sync.

Sync Lock:
    One row (id=1) shared by every process using the same queue file:
    holder token, when it was taken, and when the last cycle started.
"""

import base64
import binascii
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    case,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from assistqr.config import settings
from assistqr.exceptions import (
    InvalidImageError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SYNC_LOCK_ID = 1
IMAGE_SCHEMA_VERSION = 2


class QueueStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"


class ImageEncoding(str, Enum):
    RAW = "raw"
    BASE64 = "base64"


# ══════════════════════════════════════════════════════════════════════════
# Tables
# ══════════════════════════════════════════════════════════════════════════

class OfflineBase(DeclarativeBase):
    """Metadata of the client-side queue file, separate from the server's."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueuedReport(OfflineBase):
    __tablename__ = "queued_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    qr_token: Mapped[str] = mapped_column(String(64), nullable=False)
    # Kept exactly as typed; the server validates them.
    latitude: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    longitude: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    manual_location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    helper_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=QueueStatus.PENDING.value, index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Clock reading of the last claim or heartbeat while `syncing`.
    claimed_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<QueuedReport(id={self.id}, status='{self.status}', "
            f"retry_count={self.retry_count})>"
        )


class QueuedImage(OfflineBase):
    __tablename__ = "queued_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        ForeignKey("queued_reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    schema_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=IMAGE_SCHEMA_VERSION
    )
    encoding: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ImageEncoding.RAW.value
    )
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class SyncLock(OfflineBase):
    __tablename__ = "sync_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    holder: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_started_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


# ══════════════════════════════════════════════════════════════════════════
# Value Objects
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class ReportDraft:
    """A report as the bystander filled it in."""
    qr_token: str
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    manual_location: Optional[str] = None
    helper_note: Optional[str] = None

    def form_fields(self) -> dict:
        """Multipart fields, present only when set."""
        fields = {"qrToken": self.qr_token}
        optional = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "manualLocation": self.manual_location,
            "helperNote": self.helper_note,
        }
        fields.update({key: value for key, value in optional.items() if value})
        return fields

    @classmethod
    def from_entry(cls, entry: QueuedReport) -> "ReportDraft":
        return cls(
            qr_token=entry.qr_token,
            latitude=entry.latitude,
            longitude=entry.longitude,
            manual_location=entry.manual_location,
            helper_note=entry.helper_note,
        )


@dataclass
class ImageFile:
    """Photo bytes plus the metadata needed to re-upload them."""
    data: bytes
    filename: str
    mime_type: str
    id: Optional[int] = None


def validate_image(data: bytes, mime_type: Optional[str]) -> None:
    if not mime_type or not mime_type.startswith("image/"):
        raise InvalidImageError(mime_type=mime_type)
    if not data:
        raise InvalidImageError(message="Image is empty", mime_type=mime_type)


def decode_image(row: QueuedImage) -> Optional[bytes]:
    """Bytes of an image row according to its encoding tag; None if unreadable."""
    if row.encoding == ImageEncoding.RAW.value:
        return bytes(row.payload)
    if row.encoding == ImageEncoding.BASE64.value:
        try:
            return base64.b64decode(row.payload, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Queued image %d has corrupt base64 payload", row.id)
            return None
    logger.warning("Queued image %d has unknown encoding '%s'", row.id, row.encoding)
    return None


# ══════════════════════════════════════════════════════════════════════════
# Queue
# ══════════════════════════════════════════════════════════════════════════

class LocalQueue:
    """
    Async facade over the queue file.

    Usage:
        queue = LocalQueue()
        await queue.init()
        queue_id = await queue.enqueue_with_images(draft, images)
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_async_engine(url or settings.offline_db_url)
        self.sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def init(self) -> None:
        """Create tables and the sync lock row. Safe to call repeatedly."""
        async with self._transaction("init") as session:
            conn = await session.connection()
            await conn.run_sync(OfflineBase.metadata.create_all)
            if await session.get(SyncLock, SYNC_LOCK_ID) is None:
                session.add(SyncLock(id=SYNC_LOCK_ID))

    async def close(self) -> None:
        await self.engine.dispose()

    async def __aenter__(self) -> "LocalQueue":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """
        One transaction per operation. Database failures surface as
        StorageUnavailableError; nothing is committed on any error.
        """
        try:
            async with self.sessions() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Offline queue %s failed: %s", operation, str(e))
            raise StorageUnavailableError(
                message="The offline queue is unavailable.",
                context={"operation": operation, "error_type": type(e).__name__},
            ) from e

    # ── Writes ────────────────────────────────────────────────────────────

    async def enqueue(self, draft: ReportDraft) -> int:
        async with self._transaction("enqueue") as session:
            entry = self._new_entry(draft)
            session.add(entry)
            await session.flush()
            queue_id = entry.id
        logger.info("Queued report %d for later sync", queue_id)
        return queue_id

    async def enqueue_with_images(self, draft: ReportDraft, images: Sequence[ImageFile]) -> int:
        """The report and all of its images in one transaction."""
        for image in images:
            validate_image(image.data, image.mime_type)
        async with self._transaction("enqueue_with_images") as session:
            entry = self._new_entry(draft)
            session.add(entry)
            await session.flush()
            for image in images:
                session.add(self._new_image(entry.id, image.data, image.filename, image.mime_type))
            queue_id = entry.id
        logger.info("Queued report %d with %d image(s)", queue_id, len(images))
        return queue_id

    async def attach_image(
        self,
        queue_id: int,
        data: bytes,
        filename: str,
        mime_type: Optional[str],
    ) -> int:
        """
        Store one more photo for a queued report.

        Raises:
            InvalidImageError: not an image, or empty
            NotFoundError:     no such entry
            ValidationError:   the entry already left `pending`
        """
        validate_image(data, mime_type)
        async with self._transaction("attach_image") as session:
            entry = await session.get(QueuedReport, queue_id)
            if entry is None:
                raise NotFoundError(resource="queued_report", resource_id=str(queue_id))
            if entry.status != QueueStatus.PENDING.value:
                raise ValidationError(
                    message="Images can only be attached to pending reports.",
                    field="queue_id",
                    reason="not_pending",
                    context={"status": entry.status},
                )
            image = self._new_image(queue_id, data, filename, mime_type)
            session.add(image)
            await session.flush()
            return image.id

    async def set_status(
        self,
        queue_id: int,
        status: QueueStatus,
        error: Optional[str] = None,
    ) -> int:
        """
        Move an entry to `status`. Recording FAILED increments retry_count.

        Returns the entry's retry_count after the update.
        """
        status = QueueStatus(status)
        values = {"status": status.value}
        if status is not QueueStatus.SYNCING:
            values["claimed_at"] = None
        if status is QueueStatus.FAILED:
            values["retry_count"] = QueuedReport.retry_count + 1
            values["last_error"] = error
        async with self._transaction("set_status") as session:
            result = await session.execute(
                update(QueuedReport)
                .execution_options(synchronize_session=False)
                .where(QueuedReport.id == queue_id)
                .values(**values)
                .returning(QueuedReport.retry_count)
            )
            retry_count = result.scalar_one_or_none()
            if retry_count is None:
                raise NotFoundError(resource="queued_report", resource_id=str(queue_id))
            return retry_count

    async def claim(self, queue_id: int, now: Optional[float] = None) -> bool:
        """pending → syncing, atomically. False if someone else got there first."""
        claimed_at = time.time() if now is None else now
        async with self._transaction("claim") as session:
            result = await session.execute(
                update(QueuedReport)
                .execution_options(synchronize_session=False)
                .where(
                    QueuedReport.id == queue_id,
                    QueuedReport.status == QueueStatus.PENDING.value,
                )
                .values(status=QueueStatus.SYNCING.value, claimed_at=claimed_at)
            )
            return result.rowcount == 1

    async def record_failure(
        self,
        queue_id: int,
        error: str,
        retry_limit: int,
        terminal: bool = False,
    ) -> Tuple[QueueStatus, int]:
        """
        Count one failed attempt and settle the entry in a single UPDATE:
        back to pending while retries are left, permanently_failed once
        `retry_limit` is reached or when the failure is terminal.

        Returns the new status and retry_count.
        """
        if terminal:
            next_status = QueueStatus.PERMANENTLY_FAILED.value
        else:
            next_status = case(
                (QueuedReport.retry_count + 1 >= retry_limit, QueueStatus.PERMANENTLY_FAILED.value),
                else_=QueueStatus.PENDING.value,
            )
        async with self._transaction("record_failure") as session:
            result = await session.execute(
                update(QueuedReport)
                .execution_options(synchronize_session=False)
                .where(QueuedReport.id == queue_id)
                .values(
                    status=next_status,
                    retry_count=QueuedReport.retry_count + 1,
                    last_error=error,
                    claimed_at=None,
                )
                .returning(QueuedReport.status, QueuedReport.retry_count)
            )
            row = result.one_or_none()
            if row is None:
                raise NotFoundError(resource="queued_report", resource_id=str(queue_id))
            return QueueStatus(row.status), row.retry_count

    async def remove(self, queue_id: int) -> None:
        """Delete an entry and its images together."""
        async with self._transaction("remove") as session:
            await session.execute(
                delete(QueuedImage)
                .execution_options(synchronize_session=False)
                .where(QueuedImage.report_id == queue_id)
            )
            await session.execute(
                delete(QueuedReport)
                .execution_options(synchronize_session=False)
                .where(QueuedReport.id == queue_id)
            )

    async def requeue(self, queue_id: int) -> bool:
        """Give a permanently failed entry a fresh retry budget."""
        async with self._transaction("requeue") as session:
            result = await session.execute(
                update(QueuedReport)
                .execution_options(synchronize_session=False)
                .where(
                    QueuedReport.id == queue_id,
                    QueuedReport.status == QueueStatus.PERMANENTLY_FAILED.value,
                )
                .values(status=QueueStatus.PENDING.value, retry_count=0, last_error=None)
            )
            return result.rowcount == 1

    async def release_orphans(self, now: float, stale_after: float) -> int:
        """
        Return stranded entries to `pending`: `syncing` rows whose claim is
        older than `stale_after`, and any row left in `failed`.

        A live cycle refreshes its claim while uploading, so a fresh
        `syncing` row is never taken from it.
        """
        stale_claim = (QueuedReport.status == QueueStatus.SYNCING.value) & (
            QueuedReport.claimed_at.is_(None) | (QueuedReport.claimed_at < now - stale_after)
        )
        async with self._transaction("release_orphans") as session:
            result = await session.execute(
                update(QueuedReport)
                .execution_options(synchronize_session=False)
                .where(stale_claim | (QueuedReport.status == QueueStatus.FAILED.value))
                .values(status=QueueStatus.PENDING.value, claimed_at=None)
            )
            count = result.rowcount
        if count:
            logger.warning("Released %d report(s) stranded by an interrupted cycle", count)
        return count

    # ── Reads ─────────────────────────────────────────────────────────────

    async def list_pending(self) -> List[QueuedReport]:
        return await self.list_by_status(QueueStatus.PENDING)

    async def list_by_status(self, status: QueueStatus) -> List[QueuedReport]:
        """Entries with `status`, oldest first."""
        async with self._transaction("list") as session:
            result = await session.execute(
                select(QueuedReport)
                .where(QueuedReport.status == QueueStatus(status).value)
                .order_by(QueuedReport.timestamp, QueuedReport.id)
            )
            return list(result.scalars().all())

    async def get(self, queue_id: int) -> Optional[QueuedReport]:
        async with self._transaction("get") as session:
            return await session.get(QueuedReport, queue_id)

    async def pending_count(self) -> int:
        async with self._transaction("pending_count") as session:
            result = await session.execute(
                select(func.count())
                .select_from(QueuedReport)
                .where(QueuedReport.status == QueueStatus.PENDING.value)
            )
            return result.scalar_one()

    async def images_for(self, queue_id: int) -> List[ImageFile]:
        """Images in insertion order; unreadable rows are skipped."""
        async with self._transaction("images_for") as session:
            result = await session.execute(
                select(QueuedImage)
                .where(QueuedImage.report_id == queue_id)
                .order_by(QueuedImage.id)
            )
            rows = list(result.scalars().all())

        images = []
        for row in rows:
            data = decode_image(row)
            if not data:
                continue
            images.append(ImageFile(data=data, filename=row.filename, mime_type=row.mime_type, id=row.id))
        return images

    # ── Sync Lock ─────────────────────────────────────────────────────────

    async def try_acquire_sync_lock(
        self,
        now: float,
        stale_after: float,
        cooldown: float,
    ) -> Optional[str]:
        """
        Take the cross-process sync lock.

        Succeeds only when the lock is free (or older than `stale_after`)
        and at least `cooldown` seconds passed since the last cycle start.
        Returns the holder token, or None.
        """
        token = uuid.uuid4().hex
        async with self._transaction("acquire_lock") as session:
            result = await session.execute(
                update(SyncLock)
                .execution_options(synchronize_session=False)
                .where(
                    SyncLock.id == SYNC_LOCK_ID,
                    (SyncLock.holder.is_(None)) | (SyncLock.locked_at < now - stale_after),
                    (SyncLock.last_started_at.is_(None))
                    | (SyncLock.last_started_at <= now - cooldown),
                )
                .values(holder=token, locked_at=now, last_started_at=now)
            )
            acquired = result.rowcount == 1
        return token if acquired else None

    async def refresh_sync_lock(
        self,
        token: str,
        now: float,
        queue_id: Optional[int] = None,
    ) -> bool:
        """
        Heartbeat: move the lock's `locked_at` (and the claim of `queue_id`,
        when given) to `now`. False if `token` no longer holds the lock.
        """
        async with self._transaction("refresh_lock") as session:
            result = await session.execute(
                update(SyncLock)
                .execution_options(synchronize_session=False)
                .where(SyncLock.id == SYNC_LOCK_ID, SyncLock.holder == token)
                .values(locked_at=now)
            )
            if result.rowcount != 1:
                return False
            if queue_id is not None:
                await session.execute(
                    update(QueuedReport)
                    .execution_options(synchronize_session=False)
                    .where(
                        QueuedReport.id == queue_id,
                        QueuedReport.status == QueueStatus.SYNCING.value,
                    )
                    .values(claimed_at=now)
                )
            return True

    async def release_sync_lock(self, token: str) -> bool:
        """Clear the lock only if `token` still holds it."""
        async with self._transaction("release_lock") as session:
            result = await session.execute(
                update(SyncLock)
                .execution_options(synchronize_session=False)
                .where(SyncLock.id == SYNC_LOCK_ID, SyncLock.holder == token)
                .values(holder=None, locked_at=None)
            )
            return result.rowcount == 1

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _new_entry(draft: ReportDraft) -> QueuedReport:
        return QueuedReport(
            qr_token=draft.qr_token,
            latitude=draft.latitude,
            longitude=draft.longitude,
            manual_location=draft.manual_location,
            helper_note=draft.helper_note,
            status=QueueStatus.PENDING.value,
            retry_count=0,
            timestamp=_utcnow(),
        )

    @staticmethod
    def _new_image(queue_id: int, data: bytes, filename: str, mime_type: str) -> QueuedImage:
        return QueuedImage(
            report_id=queue_id,
            schema_version=IMAGE_SCHEMA_VERSION,
            encoding=ImageEncoding.RAW.value,
            payload=data,
            filename=filename or "photo.jpg",
            mime_type=mime_type,
            size=len(data),
        )
