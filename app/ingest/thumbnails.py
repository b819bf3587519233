from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import BinaryIO, Dict, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError, features

from app.core.errors import ThumbnailError
from app.core.logging import get_logger

from .paths import THUMBNAIL_DIR

logger = get_logger(component="thumbnails")

SUPPORTED_CONTENT_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/bmp",
        "image/tiff",
        "image/webp",
    }
)


@dataclass(frozen=True)
class ThumbnailSpec:
    kind: str
    max_width: int
    max_height: int
    quality: int
    format: str
    extension: str
    content_type: str


THUMBNAIL_SPECS: Tuple[ThumbnailSpec, ...] = (
    ThumbnailSpec("preview", 1440, 1440, 80, "JPEG", ".jpg", "image/jpeg"),
    ThumbnailSpec("webp", 250, 250, 75, "WEBP", ".webp", "image/webp"),
    ThumbnailSpec("thumb", 160, 160, 70, "JPEG", ".jpg", "image/jpeg"),
)
THUMBNAIL_KINDS = tuple(spec.kind for spec in THUMBNAIL_SPECS)


@dataclass(slots=True)
class GeneratedThumbnail:
    kind: str
    data: bytes
    width: int
    height: int
    content_type: str
    extension: str


def webp_supported() -> bool:
    return bool(features.check("webp"))


def resolve_spec(spec: ThumbnailSpec) -> ThumbnailSpec:
    """Return ``spec`` with the WebP encoding swapped for JPEG when Pillow lacks WebP."""
    if spec.format == "WEBP" and not webp_supported():
        return ThumbnailSpec(spec.kind, spec.max_width, spec.max_height, spec.quality, "JPEG", ".jpg", "image/jpeg")
    return spec


def spec_for_kind(kind: str) -> ThumbnailSpec:
    for spec in THUMBNAIL_SPECS:
        if spec.kind == kind:
            return resolve_spec(spec)
    raise ThumbnailError("unknown_thumbnail_kind", f"unknown thumbnail kind: {kind}")


def can_generate(content_type: str | None) -> bool:
    effective = (content_type or "").split(";", 1)[0].strip().lower()
    return effective in SUPPORTED_CONTENT_TYPES


def calculate_dimensions(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Fit ``width`` x ``height`` inside the box, preserving aspect ratio.

    Images that already fit are returned unchanged; nothing is upscaled.
    """
    if width <= max_width and height <= max_height:
        return width, height
    aspect = width / height
    if max_width / aspect <= max_height:
        new_width, new_height = max_width, round(max_width / aspect)
    else:
        new_width, new_height = round(max_height * aspect), max_height
    return max(new_width, 1), max(new_height, 1)


def thumbnail_path(original_path: str, kind: str) -> str:
    """Derive the storage key of a thumbnail from its original's key."""
    spec = spec_for_kind(kind)
    original = PurePosixPath(original_path)
    name = f"{original.stem}_{kind}{spec.extension}"
    return str(original.parent / THUMBNAIL_DIR / name)


def _load_image(stream: BinaryIO) -> Image.Image:
    try:
        with Image.open(stream) as image:
            image.load()
            oriented = ImageOps.exif_transpose(image) or image
            if oriented.mode != "RGB":
                oriented = oriented.convert("RGB")
            else:
                oriented = oriented.copy()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ThumbnailError("image_decode_failed", f"failed to decode image: {exc}") from exc
    return oriented


def render(image: Image.Image, spec: ThumbnailSpec) -> GeneratedThumbnail:
    width, height = calculate_dimensions(image.width, image.height, spec.max_width, spec.max_height)
    resized = image if (width, height) == image.size else image.resize((width, height), Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    resized.save(buffer, format=spec.format, quality=spec.quality)
    return GeneratedThumbnail(
        kind=spec.kind,
        data=buffer.getvalue(),
        width=width,
        height=height,
        content_type=spec.content_type,
        extension=spec.extension,
    )


class ThumbnailGenerator:
    """Renders every configured thumbnail kind from a single decode of the source."""

    def __init__(self, specs: Tuple[ThumbnailSpec, ...] = THUMBNAIL_SPECS):
        self.specs = tuple(resolve_spec(spec) for spec in specs)

    def generate(self, stream: BinaryIO) -> Dict[str, GeneratedThumbnail]:
        """Generate all kinds for the image in ``stream``.

        Args:
            stream: The original image bytes.

        Returns:
            Generated thumbnails keyed by kind. A kind that fails to render is
            logged and left out.

        Raises:
            ThumbnailError: The source could not be decoded at all.
        """
        image = _load_image(stream)
        results: Dict[str, GeneratedThumbnail] = {}
        try:
            for spec in self.specs:
                try:
                    results[spec.kind] = render(image, spec)
                except (OSError, ValueError, KeyError) as exc:
                    logger.warning("thumbnail_kind_failed", kind=spec.kind, error=str(exc))
        finally:
            image.close()
        return results


__all__ = [
    "GeneratedThumbnail",
    "THUMBNAIL_KINDS",
    "THUMBNAIL_SPECS",
    "ThumbnailGenerator",
    "ThumbnailSpec",
    "calculate_dimensions",
    "can_generate",
    "render",
    "spec_for_kind",
    "thumbnail_path",
]
