"""Validation helpers for uploaded images."""

from typing import Optional, Tuple

from fastapi import UploadFile

from app.core.config import settings


def validate_image_upload(upload: UploadFile, content: bytes) -> Tuple[bool, Optional[int], Optional[str]]:
    """
    Check an uploaded image against the allowed types and size limit.

    Args:
        upload: The uploaded file (for its name and declared content type)
        content: The bytes already read from it

    Returns:
        Tuple of (is_valid, http_status, error_message)
    """
    content_type = (upload.content_type or "").lower()
    if content_type not in settings.face_swap_allowed_types:
        return False, 415, (
            f"Unsupported image type '{content_type or 'unknown'}' for {upload.filename or 'upload'}. "
            f"Allowed: {', '.join(settings.face_swap_allowed_types)}"
        )

    if not content:
        return False, 400, f"Empty file: {upload.filename or 'upload'}"

    if len(content) > settings.FACE_SWAP_MAX_UPLOAD_BYTES:
        limit_mb = settings.FACE_SWAP_MAX_UPLOAD_BYTES // (1024 * 1024)
        return False, 413, f"{upload.filename or 'upload'} exceeds the {limit_mb}MB limit"

    return True, None, None
