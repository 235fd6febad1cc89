"""
AssistQR Backend — Photo Serving Route
========================================

What:  GET /uploads/{path}, the public URL of every stored accident photo.
Who:   Email clients following links in the alert, and the photo loader
       when the storage root is not local to the process.

Security:
    - Paths are resolved against STORAGE_ROOT and refused if they escape it
    - Only regular files are served; directories are a 404
"""

import mimetypes

from fastapi import APIRouter
from fastapi.responses import FileResponse

from assistqr.exceptions import NotFoundError, ValidationError
from assistqr.services.storage_service import storage_service

router = APIRouter(tags=["Files"])


@router.get(
    "/uploads/{file_path:path}",
    summary="Serve a stored accident photo",
    responses={
        200: {"description": "Image file"},
        404: {"description": "File not found"},
    },
)
async def serve_photo(file_path: str) -> FileResponse:
    full_path = storage_service.resolve(file_path)
    if full_path is None:
        raise ValidationError(message="Invalid file path", field="path", reason="path_traversal")
    if not full_path.is_file():
        raise NotFoundError(resource="file", resource_id=file_path)

    media_type, _ = mimetypes.guess_type(full_path.name)
    return FileResponse(
        path=str(full_path),
        media_type=media_type or "application/octet-stream",
        # Photo names are UUIDs and never rewritten.
        headers={"Cache-Control": "public, max-age=86400"},
    )
