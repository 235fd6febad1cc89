"""
AssistQR Backend — Photo Storage Service
==========================================

What:  Validates, stores and serves accident photos on the local storage volume.
Why:   Reports reference photos by public URL; the alert email links to (or
       inlines) those photos, so they must be fetchable by anyone holding
       the link.
How:   Validates MIME type, size and count, stores bytes in date-organized
       directories under UUID filenames, and returns
       `{PUBLIC_BASE_URL}/uploads/<YYYY/MM/DD/uuid.ext>`.
Who:   Called by ReportService during ingestion and by the email channel to
       load photos for inlining.

Security Model:
    1. Count check:   at most MAX_FILES photos per report
    2. MIME check:    declared content type must be image/*
    3. Size check:    each photo ≤ MAX_FILE_SIZE, and non-empty
    4. UUID filename: no user input reaches the file system path
    5. Serving:       GET /uploads/{path} refuses anything outside the root
"""

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import aiofiles

from assistqr.config import settings
from assistqr.exceptions import InvalidImageError, StorageUnavailableError, ValidationError

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "/uploads/"

# Extension used when the filename carries none we recognise.
DEFAULT_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


@dataclass
class PhotoUpload:
    """One uploaded photo, already read into memory."""
    filename: str
    content_type: Optional[str]
    content: bytes


@dataclass
class StoredPhoto:
    url: str
    relative_path: str
    absolute_path: str


class StorageService:
    """
    Manages the photo lifecycle: validate → store → serve → cleanup.

    Directory Structure:
        storage/
        └── 2024/
            └── 01/
                └── 15/
                    ├── a1b2c3d4-5678.jpg
                    └── e5f6g7h8-9012.png
    """

    def __init__(
        self,
        storage_root: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("StorageService initialized with storage_root=%s", self.storage_root)

    # ── Validation ────────────────────────────────────────────────────────

    def validate_count(self, count: int) -> None:
        if count > settings.max_files:
            raise ValidationError(
                message=f"Too many files. Maximum {settings.max_files} images allowed.",
                field="images",
                reason="too_many_files",
                context={"max_files": settings.max_files, "received": count},
            )

    def validate_photo(self, photo: PhotoUpload) -> None:
        """
        Validate a single photo's MIME type and size.

        Raises:
            InvalidImageError: declared type is not image/*, or no bytes
            ValidationError:   file_too_large
        """
        content_type = (photo.content_type or "").lower()
        if not content_type.startswith("image/"):
            raise InvalidImageError(
                message="Only image files are allowed",
                mime_type=photo.content_type,
                context={"filename": photo.filename},
            )

        if len(photo.content) > settings.max_file_size:
            max_mb = settings.max_file_size / (1024 * 1024)
            raise ValidationError(
                message=f"File too large. Maximum size is {max_mb:.0f}MB per file.",
                field="images",
                reason="file_too_large",
                context={"max_size_mb": max_mb, "actual_size": len(photo.content)},
            )

        if not photo.content:
            raise InvalidImageError(
                message="Uploaded image is empty",
                mime_type=photo.content_type,
                context={"filename": photo.filename},
            )

    def validate_photos(self, photos: Sequence[PhotoUpload]) -> None:
        """Count first, then each photo in upload order."""
        self.validate_count(len(photos))
        for photo in photos:
            self.validate_photo(photo)

    # ── Storage ───────────────────────────────────────────────────────────

    @staticmethod
    def _extension_for(photo: PhotoUpload) -> str:
        ext = Path(photo.filename or "").suffix.lower()
        guessed = mimetypes.guess_type(f"x{ext}")[0] if ext else None
        if guessed and guessed.startswith("image/"):
            return ext
        return DEFAULT_EXTENSIONS.get((photo.content_type or "").lower(), ".img")

    def _generate_storage_path(self, extension: str) -> Tuple[Path, str]:
        now = datetime.now(timezone.utc)
        relative_path = f"{now.strftime('%Y/%m/%d')}/{uuid.uuid4()}{extension}"
        return self.storage_root / relative_path, relative_path

    def public_url(self, relative_path: str) -> str:
        return f"{self.public_base_url}{UPLOADS_PREFIX}{relative_path}"

    async def store_photo(self, photo: PhotoUpload) -> StoredPhoto:
        """
        Write one validated photo to disk.

        Raises:
            StorageUnavailableError if directory creation or file write fails.
        """
        absolute_path, relative_path = self._generate_storage_path(self._extension_for(photo))
        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as f:
                await f.write(photo.content)
        except OSError as e:
            logger.error("Failed to store photo at %s: %s", absolute_path, str(e))
            raise StorageUnavailableError(
                message="Failed to save uploaded image. Please try again.",
                context={"path": str(absolute_path), "os_error": str(e)},
            )

        logger.info("Photo stored: %s (%d bytes)", relative_path, len(photo.content))
        return StoredPhoto(
            url=self.public_url(relative_path),
            relative_path=relative_path,
            absolute_path=str(absolute_path),
        )

    async def store_photos(self, photos: Sequence[PhotoUpload]) -> List[StoredPhoto]:
        """
        Store photos in upload order. If any write fails, the photos already
        written by this call are removed before the error propagates.
        """
        stored: List[StoredPhoto] = []
        try:
            for photo in photos:
                stored.append(await self.store_photo(photo))
        except StorageUnavailableError:
            await self.cleanup(stored)
            raise
        return stored

    async def cleanup(self, stored: Sequence[StoredPhoto]) -> None:
        for item in stored:
            await self.cleanup_file(item.absolute_path)

    async def cleanup_file(self, file_path: str) -> None:
        """
        Remove a file from storage. Best effort: used after a failed commit,
        where the original error is the one worth reporting.
        """
        try:
            path = Path(file_path)
            if path.exists():
                os.remove(path)
                logger.info("Cleaned up file: %s", path.name)
        except OSError as e:
            logger.warning("Failed to clean up file %s: %s", file_path, str(e))

    # ── Lookup ────────────────────────────────────────────────────────────

    def resolve(self, relative_path: str) -> Optional[Path]:
        """
        Resolve a path under the storage root. Returns None when the path
        escapes the root.
        """
        full_path = (self.storage_root / relative_path).resolve()
        if not full_path.is_relative_to(self.storage_root):
            return None
        return full_path

    def local_path_for_url(self, url: str) -> Optional[Path]:
        """Map one of our own public URLs back to the file on disk."""
        prefix = f"{self.public_base_url}{UPLOADS_PREFIX}"
        if not url.startswith(prefix):
            return None
        path = self.resolve(url[len(prefix):])
        if path is None or not path.is_file():
            return None
        return path

    async def read_local(self, path: Path) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()


# ── Singleton Instance ────────────────────────────────────────────────────
storage_service = StorageService()
