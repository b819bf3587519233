from __future__ import annotations

import posixpath
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Callable, Iterable, Optional, Tuple

from app.core.errors import RangeNotSatisfiableError, StorageError
from app.core.logging import get_logger
from app.ingest.checksum import CHUNK_SIZE

ARCHIVE_SPOOL_MAX_MEMORY = 16 * 1024 * 1024
# zip timestamps cannot predate the DOS epoch
ZIP_EPOCH = datetime(1980, 1, 1)

logger = get_logger(component="downloads")


def parse_byte_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Resolve a single-range ``Range`` header against an object of ``size`` bytes.

    Args:
        header: Raw header value such as ``bytes=0-1023``, ``bytes=1024-`` or ``bytes=-500``.
        size: Total object size in bytes.

    Returns:
        Inclusive ``(start, end)`` offsets, or None when the header is absent,
        malformed or asks for several ranges; those are served in full.

    Raises:
        RangeNotSatisfiableError: The range starts past the end of the object.
    """
    if not header:
        return None
    unit, _, spec = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not spec or "," in spec:
        return None
    first, sep, last = spec.strip().partition("-")
    if not sep:
        return None
    first, last = first.strip(), last.strip()
    if (first and not first.isdigit()) or (last and not last.isdigit()) or not (first or last):
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiableError(size)
        return max(size - suffix, 0), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if last and end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiableError(size)
    return start, min(end, size - 1)


def skip_to(stream: BinaryIO, offset: int) -> None:
    """Position ``stream`` at ``offset``, reading forward when it cannot seek."""
    if offset <= 0:
        return
    seekable = getattr(stream, "seekable", None)
    if seekable is not None and seekable():
        stream.seek(offset)
        return
    remaining = offset
    while remaining > 0:
        chunk = stream.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            break
        remaining -= len(chunk)


@dataclass(slots=True)
class ArchiveEntry:
    """One asset resolved into its place inside a zip archive."""

    asset_id: str
    archive_path: str
    storage_path: str
    size: int
    modified: datetime


def archive_path_for(filename: str, asset_id: str, created_at: datetime) -> str:
    """Lay an asset out as ``YYYY/MM/DD/<filename>`` inside an archive."""
    name = posixpath.basename(filename.replace("\\", "/")) or asset_id
    if name in {".", ".."}:
        name = asset_id
    return f"{created_at.year:04d}/{created_at.month:02d}/{created_at.day:02d}/{name}"


def unique_archive_paths(paths: Iterable[str]) -> list[str]:
    """Suffix repeated names with ``_1``, ``_2`` and so on, keeping their extension."""
    taken: set[str] = set()
    result: list[str] = []
    for path in paths:
        candidate = path
        stem, ext = posixpath.splitext(path)
        counter = 1
        while candidate in taken:
            candidate = f"{stem}_{counter}{ext}"
            counter += 1
        taken.add(candidate)
        result.append(candidate)
    return result


def write_archive(entries: Iterable[ArchiveEntry], open_object: Callable[[str], BinaryIO]) -> BinaryIO:
    """Write ``entries`` into a spooled zip file and return it rewound.

    Entries whose object cannot be opened are left out and logged; a failure
    while copying an opened object aborts the whole archive.
    """
    spool = tempfile.SpooledTemporaryFile(max_size=ARCHIVE_SPOOL_MAX_MEMORY, prefix="pictor-archive-")
    try:
        with zipfile.ZipFile(spool, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for entry in entries:
                try:
                    source = open_object(entry.storage_path)
                except StorageError as exc:
                    logger.warning("archive_entry_skipped", asset_id=entry.asset_id, error=str(exc))
                    continue
                modified = max(entry.modified.replace(tzinfo=None), ZIP_EPOCH)
                info = zipfile.ZipInfo(entry.archive_path, date_time=modified.timetuple()[:6])
                info.compress_type = zipfile.ZIP_DEFLATED
                try:
                    with archive.open(info, "w", force_zip64=True) as target:
                        shutil.copyfileobj(source, target, CHUNK_SIZE)
                finally:
                    source.close()
    except Exception:
        spool.close()
        raise
    spool.seek(0)
    return spool


__all__ = [
    "ArchiveEntry",
    "archive_path_for",
    "parse_byte_range",
    "skip_to",
    "unique_archive_paths",
    "write_archive",
]
