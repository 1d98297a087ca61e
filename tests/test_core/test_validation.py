"""Tests for upload validation utilities."""

from io import BytesIO

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from app.core.config import settings
from app.core.validation import validate_image_upload


def make_upload(content_type, filename="photo.jpg"):
    headers = Headers({"content-type": content_type}) if content_type else Headers({})
    return UploadFile(file=BytesIO(b""), filename=filename, headers=headers)


class TestValidateImageUpload:
    """Tests for face swap image validation."""

    @pytest.mark.parametrize("content_type", ["image/jpeg", "image/jpg", "image/png", "image/webp", "IMAGE/PNG"])
    def test_allowed_types(self, content_type):
        """Every configured image type should pass, case-insensitively."""
        is_valid, status_code, error = validate_image_upload(make_upload(content_type), b"\xff\xd8")
        assert is_valid is True
        assert status_code is None
        assert error is None

    def test_unsupported_type_is_415(self):
        """A non-image type should be rejected with 415 and name the file."""
        is_valid, status_code, error = validate_image_upload(make_upload("application/pdf", "scan.pdf"), b"%PDF")
        assert is_valid is False
        assert status_code == 415
        assert "scan.pdf" in error

    def test_missing_type_is_415(self):
        """An upload without a declared type should be rejected."""
        is_valid, status_code, error = validate_image_upload(make_upload(None), b"\xff\xd8")
        assert is_valid is False
        assert status_code == 415
        assert "unknown" in error

    def test_empty_file_is_400(self):
        """An empty image should be rejected with 400."""
        is_valid, status_code, _ = validate_image_upload(make_upload("image/png"), b"")
        assert is_valid is False
        assert status_code == 400

    def test_oversized_file_is_413(self):
        """An image over the size limit should be rejected with 413."""
        content = b"x" * (settings.FACE_SWAP_MAX_UPLOAD_BYTES + 1)
        is_valid, status_code, error = validate_image_upload(make_upload("image/jpeg"), content)
        assert is_valid is False
        assert status_code == 413
        assert "MB" in error

    def test_file_at_limit_passes(self):
        """An image exactly at the size limit should pass."""
        content = b"x" * settings.FACE_SWAP_MAX_UPLOAD_BYTES
        is_valid, _, _ = validate_image_upload(make_upload("image/jpeg"), content)
        assert is_valid is True
