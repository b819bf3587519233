from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Sequence

from app.core.errors import UploadTooLargeError, ValidationError

DEFAULT_ALLOWED_EXTENSIONS: tuple[str, ...] = (
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".webp",
    ".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v",
    ".heic", ".heif", ".dng", ".raw", ".cr2", ".nef", ".arw",
)

DEFAULT_ALLOWED_MIME_TYPES: tuple[str, ...] = (
    "image/jpeg", "image/png", "image/gif", "image/bmp", "image/tiff", "image/webp",
    "video/mp4", "video/quicktime", "video/x-msvideo", "video/x-matroska", "video/webm",
    "image/heic", "image/heif", "image/x-adobe-dng", "image/x-canon-cr2", "image/x-nikon-nef",
)


def guess_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or "application/octet-stream"


@dataclass(frozen=True)
class UploadPolicy:
    """Upload-wide limits checked before any byte reaches storage.

    Empty allow-lists disable that check. Comparisons ignore case.
    """

    max_file_size: int = 104_857_600
    allowed_extensions: Sequence[str] = DEFAULT_ALLOWED_EXTENSIONS
    allowed_mime_types: Sequence[str] = DEFAULT_ALLOWED_MIME_TYPES

    def is_allowed_extension(self, extension: str) -> bool:
        if not self.allowed_extensions:
            return True
        return extension.lower() in {item.lower() for item in self.allowed_extensions}

    def is_allowed_mime_type(self, mime_type: str) -> bool:
        if not self.allowed_mime_types:
            return True
        return mime_type.lower() in {item.lower() for item in self.allowed_mime_types}

    def check_size(self, size: int) -> None:
        if size < 0:
            raise ValidationError("invalid_size", f"size must be non-negative, got {size}")
        if self.max_file_size and size > self.max_file_size:
            raise UploadTooLargeError(
                "upload_too_large",
                f"file size {size} exceeds maximum allowed size {self.max_file_size}",
            )

    def validate(self, filename: str, content_type: str | None, size: int) -> str:
        """Validate an upload and return the effective content type."""
        self.check_size(size)
        extension = PurePosixPath(filename).suffix.lower()
        if not self.is_allowed_extension(extension):
            raise ValidationError("extension_not_allowed", f"file extension {extension or '<none>'} is not allowed")
        effective = (content_type or "").split(";", 1)[0].strip().lower()
        if not effective or effective == "application/octet-stream":
            effective = guess_content_type(filename)
        if not self.is_allowed_mime_type(effective):
            raise ValidationError("mime_type_not_allowed", f"MIME type {effective} is not allowed")
        return effective


__all__ = [
    "DEFAULT_ALLOWED_EXTENSIONS",
    "DEFAULT_ALLOWED_MIME_TYPES",
    "UploadPolicy",
    "guess_content_type",
]
