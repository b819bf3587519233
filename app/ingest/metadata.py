from __future__ import annotations

import json
import mimetypes
import shutil
import subprocess
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple

from PIL import ExifTags, Image, UnidentifiedImageError

from app.core.logging import get_logger

MAX_INT32 = 2147483647

EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"
VIDEO_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
)
VIDEO_DATE_TAGS = ("creation_time", "date", "com.apple.quicktime.creationdate")
VIDEO_LOCATION_TAGS = ("com.apple.quicktime.location.ISO6709", "location")

logger = get_logger(component="metadata")


@dataclass(slots=True)
class AssetMetadata:
    """Best-effort metadata derived from an asset's bytes. Every field is optional."""

    taken_at: Optional[datetime] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration_s: Optional[float] = None
    make: Optional[str] = None
    model: Optional[str] = None
    lens_model: Optional[str] = None
    f_number: Optional[float] = None
    focal_length: Optional[float] = None
    iso: Optional[int] = None
    exposure_time: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.taken_at is not None:
            payload["taken_at"] = self.taken_at.isoformat()
        return payload


def asset_type_from_content_type(content_type: str | None, filename: str = "") -> str:
    """Map a MIME type onto the coarse asset type.

    An empty or generic content type falls back to a guess from ``filename``.
    """
    effective = (content_type or "").split(";", 1)[0].strip().lower()
    if not effective or effective == "application/octet-stream":
        guessed, _ = mimetypes.guess_type(filename) if filename else (None, None)
        effective = (guessed or "").lower()
    if effective.startswith("image/"):
        return "image"
    if effective.startswith("video/"):
        return "video"
    if effective.startswith("audio/"):
        return "audio"
    return "other"


def mime_type_for_asset_type(asset_type: str) -> str:
    if asset_type == "image":
        return "image/jpeg"
    if asset_type == "video":
        return "video/mp4"
    return "application/octet-stream"


def clamp_int(value: int) -> int:
    return max(min(int(value), MAX_INT32), -MAX_INT32 - 1)


def _clean_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value).replace("\x00", "").strip()
    return text or None


def _rational_parts(value: Any) -> Optional[Tuple[int, int]]:
    if isinstance(value, tuple) and len(value) == 2:
        return int(value[0]), int(value[1])
    numerator = getattr(value, "numerator", None)
    denominator = getattr(value, "denominator", None)
    if numerator is not None and denominator is not None:
        return int(numerator), int(denominator)
    return None


def rational_to_float(value: Any) -> Optional[float]:
    """Convert an EXIF rational to a float.

    Args:
        value: An ``IFDRational``, a ``(num, den)`` tuple or a plain number.

    Returns:
        The float value, or None when the denominator is zero or the value is unusable.
    """
    parts = _rational_parts(value)
    if parts is not None:
        numerator, denominator = parts
        if denominator == 0:
            return None
        return numerator / denominator
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def exposure_to_string(value: Any) -> Optional[str]:
    parts = _rational_parts(value)
    if parts is not None:
        return f"{parts[0]}/{parts[1]}"
    if value is None:
        return None
    return str(value)


def dms_to_decimal(dms: Any, ref: Any) -> Optional[float]:
    """Convert a GPS degrees/minutes/seconds triple to signed decimal degrees."""
    if not isinstance(dms, (tuple, list)) or len(dms) != 3:
        return None
    parts = [rational_to_float(item) for item in dms]
    if any(part is None for part in parts):
        return None
    degrees, minutes, seconds = parts
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if _clean_string(ref) in {"S", "W"}:
        decimal = -decimal
    return decimal


def parse_exif_datetime(value: Any) -> Optional[datetime]:
    text = _clean_string(value)
    if not text:
        return None
    try:
        return datetime.strptime(text, EXIF_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_video_datetime(value: str) -> Optional[datetime]:
    """Parse a container date tag, trying RFC 3339 first and then the fixed layouts."""
    value = value.strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            return parsed
    except ValueError:
        pass
    for fmt in VIDEO_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_iso6709(value: str) -> Optional[Tuple[float, float]]:
    """Parse an ISO 6709 location such as ``+37.7749-122.4194/``.

    Args:
        value: The raw tag value.

    Returns:
        ``(latitude, longitude)``, or None when the string cannot be split or
        both coordinates are zero.
    """
    text = (value or "").strip().rstrip("/")
    split_at = next((idx for idx in range(1, len(text)) if text[idx] in "+-"), None)
    if split_at is None:
        return None
    lat_text, lon_text = text[:split_at], text[split_at:]
    # altitude may follow the longitude as a third signed component
    third = next((idx for idx in range(1, len(lon_text)) if lon_text[idx] in "+-"), None)
    if third is not None:
        lon_text = lon_text[:third]
    try:
        lat = float(lat_text)
    except ValueError:
        lat = 0.0
    try:
        lon = float(lon_text)
    except ValueError:
        lon = 0.0
    if lat == 0.0 and lon == 0.0:
        return None
    return lat, lon


def parse_ffprobe_output(raw: Dict[str, Any]) -> AssetMetadata:
    """Normalise ffprobe JSON into asset metadata.

    Args:
        raw: Decoded ``ffprobe -show_format -show_streams`` output.

    Returns:
        The extracted metadata; fields ffprobe did not report stay None.
    """
    metadata = AssetMetadata()

    for stream in raw.get("streams") or []:
        if stream.get("codec_type") != "video":
            continue
        width = _positive_int(stream.get("width"))
        height = _positive_int(stream.get("height"))
        metadata.width = width
        metadata.height = height
        metadata.duration_s = _float_or_none(stream.get("duration"))
        break

    format_info = raw.get("format") or {}
    if metadata.duration_s is None:
        metadata.duration_s = _float_or_none(format_info.get("duration"))

    tags = {str(key): str(value) for key, value in (format_info.get("tags") or {}).items() if value is not None}
    for key in VIDEO_DATE_TAGS:
        if key in tags:
            parsed = parse_video_datetime(tags[key])
            if parsed is not None:
                metadata.taken_at = parsed
                break

    metadata.make = _clean_string(tags.get("com.apple.quicktime.make"))
    metadata.model = _clean_string(tags.get("com.apple.quicktime.model"))

    for key in VIDEO_LOCATION_TAGS:
        if key in tags:
            location = parse_iso6709(tags[key])
            if location is not None:
                metadata.latitude, metadata.longitude = location
                break
    return metadata


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return clamp_int(number) if number > 0 else None


def _float_or_none(value: Any) -> Optional[float]:
    if value in (None, "", "N/A"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class MetadataExtractor:
    """Derives :class:`AssetMetadata` from stored bytes.

    Images are read through Pillow's EXIF support and videos through
    ``ffprobe``. Extraction never raises: a field that cannot be read is
    skipped and logged at debug level.
    """

    def __init__(self, *, ffprobe_timeout_s: float = 30.0, ffprobe_binary: str = "ffprobe"):
        self.ffprobe_timeout_s = ffprobe_timeout_s
        self.ffprobe_binary = ffprobe_binary

    def extract(
        self,
        stream: BinaryIO,
        filename: str,
        content_type: str | None,
        size: int,
        *,
        timeout_s: float | None = None,
    ) -> AssetMetadata:
        asset_type = asset_type_from_content_type(content_type, filename)
        if asset_type == "image":
            return self.extract_image(stream)
        if asset_type == "video":
            return self.extract_video(stream, timeout_s=timeout_s)
        logger.debug("metadata_skipped", filename=filename, asset_type=asset_type, size=size)
        return AssetMetadata()

    def extract_image(self, stream: BinaryIO) -> AssetMetadata:
        metadata = AssetMetadata()
        try:
            image = Image.open(stream)
        except (UnidentifiedImageError, OSError) as exc:
            logger.debug("image_open_failed", error=str(exc))
            return metadata

        with image:
            metadata.width, metadata.height = image.size
            try:
                exif = image.getexif()
            except (OSError, ValueError, SyntaxError) as exc:
                logger.debug("exif_read_failed", error=str(exc))
                return metadata
            if not exif:
                return metadata
            self._apply_exif(metadata, exif)
        return metadata

    def _apply_exif(self, metadata: AssetMetadata, exif: Image.Exif) -> None:
        base = ExifTags.Base
        try:
            exif_ifd = dict(exif.get_ifd(ExifTags.IFD.Exif))
        except (KeyError, ValueError, OSError) as exc:
            logger.debug("exif_ifd_failed", error=str(exc))
            exif_ifd = {}
        try:
            gps_ifd = dict(exif.get_ifd(ExifTags.IFD.GPSInfo))
        except (KeyError, ValueError, OSError) as exc:
            logger.debug("gps_ifd_failed", error=str(exc))
            gps_ifd = {}

        def lookup(tag: int) -> Any:
            if tag in exif_ifd:
                return exif_ifd[tag]
            return exif.get(tag)

        def dimension(tag: int) -> Optional[int]:
            value = lookup(tag)
            if value is None:
                return None
            number = int(value)
            return clamp_int(number) if number > 0 else None

        def iso() -> Optional[int]:
            value = lookup(base.ISOSpeedRatings)
            if isinstance(value, (tuple, list)):
                value = value[0] if value else None
            return None if value is None else clamp_int(int(value))

        def exposure() -> Optional[str]:
            value = lookup(base.ExposureTime)
            return None if value is None else exposure_to_string(value)

        fields: List[Tuple[str, Callable[[], Any]]] = [
            ("make", lambda: _clean_string(lookup(base.Make))),
            ("model", lambda: _clean_string(lookup(base.Model))),
            ("lens_model", lambda: _clean_string(lookup(base.LensModel))),
            ("description", lambda: _clean_string(lookup(base.ImageDescription))),
            ("width", lambda: dimension(base.ExifImageWidth)),
            ("height", lambda: dimension(base.ExifImageHeight)),
            ("f_number", lambda: rational_to_float(lookup(base.FNumber))),
            ("focal_length", lambda: rational_to_float(lookup(base.FocalLength))),
            ("iso", iso),
            ("exposure_time", exposure),
            ("taken_at", lambda: parse_exif_datetime(lookup(base.DateTimeOriginal))),
        ]
        if gps_ifd:
            gps = ExifTags.GPS
            fields.append(
                ("latitude", lambda: dms_to_decimal(gps_ifd.get(gps.GPSLatitude), gps_ifd.get(gps.GPSLatitudeRef)))
            )
            fields.append(
                ("longitude", lambda: dms_to_decimal(gps_ifd.get(gps.GPSLongitude), gps_ifd.get(gps.GPSLongitudeRef)))
            )

        # One malformed tag only loses its own field.
        for attr, read in fields:
            try:
                value = read()
            except (TypeError, ValueError, ZeroDivisionError, OverflowError, IndexError, AttributeError) as exc:
                logger.debug("exif_field_skipped", field=attr, error=str(exc))
                continue
            if value is not None:
                setattr(metadata, attr, value)

    def extract_video(self, stream: BinaryIO, *, timeout_s: float | None = None) -> AssetMetadata:
        binary = shutil.which(self.ffprobe_binary)
        if binary is None:
            logger.debug("ffprobe_unavailable")
            return AssetMetadata()

        with tempfile.NamedTemporaryFile(prefix="pictor-probe-") as handle:
            shutil.copyfileobj(stream, handle)
            handle.flush()
            raw = self.probe_file(handle.name, binary=binary, timeout_s=timeout_s)
        if raw is None:
            return AssetMetadata()
        return parse_ffprobe_output(raw)

    def probe_file(self, path: str, *, binary: str | None = None, timeout_s: float | None = None) -> Optional[Dict[str, Any]]:
        """Run ffprobe against ``path`` and return its decoded JSON, or None on failure."""
        command = [
            binary or self.ffprobe_binary,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            path,
        ]
        try:
            proc = subprocess.run(
                command,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout_s or self.ffprobe_timeout_s,
            )
        except subprocess.TimeoutExpired:
            logger.warning("ffprobe_timeout", path=path, timeout_s=timeout_s or self.ffprobe_timeout_s)
            return None
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            logger.debug("ffprobe_failed", path=path, error=str(exc))
            return None
        try:
            return json.loads(proc.stdout or b"{}")
        except json.JSONDecodeError as exc:
            logger.debug("ffprobe_output_invalid", path=path, error=str(exc))
            return None


__all__ = [
    "AssetMetadata",
    "MetadataExtractor",
    "asset_type_from_content_type",
    "clamp_int",
    "dms_to_decimal",
    "mime_type_for_asset_type",
    "parse_ffprobe_output",
    "parse_iso6709",
    "rational_to_float",
]
