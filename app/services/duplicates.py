from __future__ import annotations

from collections import defaultdict
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.db.models import Asset, AssetStatus
from app.ingest.checksum import checksum_hex, parse_checksum_hex


def _member(asset: Asset) -> dict[str, Any]:
    return {
        "asset_id": asset.asset_id,
        "checksum": checksum_hex(asset.checksum) if asset.checksum else None,
        "asset_type": asset.asset_type.value,
        "storage_path": asset.storage_path,
        "size_bytes": asset.size_bytes,
        "original_filename": asset.original_filename,
    }


class DuplicateIndex:
    """Finds byte-identical assets within one owner's library.

    Every query filters on ``owner_id`` in SQL before grouping, so assets of
    different users never end up in the same group.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _active_assets(self, owner_id: str, *criteria: Any) -> list[Asset]:
        stmt = (
            select(Asset)
            .where(Asset.owner_id == owner_id, Asset.status == AssetStatus.active, *criteria)
            .order_by(Asset.created_at, Asset.asset_id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_asset_duplicates(self, owner_id: str) -> list[dict[str, Any]]:
        assets = await self._active_assets(owner_id, Asset.checksum.is_not(None))
        groups: dict[bytes, list[Asset]] = defaultdict(list)
        for asset in assets:
            groups[asset.checksum].append(asset)

        results = []
        for digest, members in groups.items():
            if len(members) < 2:
                continue
            results.append(
                {
                    "duplicate_id": checksum_hex(digest),
                    "assets": [_member(asset) for asset in members],
                }
            )
        results.sort(key=lambda group: group["duplicate_id"])
        return results

    async def find_by_checksum(self, owner_id: str, checksum: str) -> list[dict[str, Any]]:
        digest = parse_checksum_hex(checksum)
        return [_member(asset) for asset in await self._active_assets(owner_id, Asset.checksum == digest)]

    async def find_by_size(self, owner_id: str, size: int) -> list[dict[str, Any]]:
        if size < 0:
            raise ValidationError("invalid_size", f"size must be non-negative, got {size}")
        return [_member(asset) for asset in await self._active_assets(owner_id, Asset.size_bytes == size)]


__all__ = ["DuplicateIndex"]
