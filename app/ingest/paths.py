from __future__ import annotations

from datetime import datetime, timezone
from pathlib import PurePosixPath

THUMBNAIL_DIR = "thumbnails"


def safe_filename(filename: str) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name.strip()
    if name in {"", ".", ".."}:
        return "upload"
    return name


def build_asset_path(
    owner_id: str,
    asset_id: str,
    filename: str,
    *,
    now: datetime | None = None,
    include_day: bool = False,
) -> str:
    """Return the canonical storage key ``owner/YYYY/MM[/DD]/asset_id/filename``."""
    now = now or datetime.now(timezone.utc)
    parts = [owner_id, f"{now.year:04d}", f"{now.month:02d}"]
    if include_day:
        parts.append(f"{now.day:02d}")
    parts += [asset_id, safe_filename(filename)]
    return "/".join(parts)


def owner_prefix(owner_id: str) -> str:
    return f"{owner_id}/"


__all__ = ["THUMBNAIL_DIR", "build_asset_path", "owner_prefix", "safe_filename"]
