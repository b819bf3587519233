from __future__ import annotations

from typing import List

from fastapi import APIRouter

from app.api import deps

from . import schemas


router = APIRouter(prefix="/duplicates", tags=["duplicates"])


@router.get("", response_model=List[schemas.DuplicateGroup])
async def list_duplicates(index: deps.DuplicatesDependency, context: deps.AuthDependency) -> List[schemas.DuplicateGroup]:
    groups = await index.get_asset_duplicates(context.user_id)
    return [schemas.DuplicateGroup(**group) for group in groups]


@router.get("/checksum/{checksum}", response_model=List[schemas.DuplicateMember])
async def find_by_checksum(
    checksum: str,
    index: deps.DuplicatesDependency,
    context: deps.AuthDependency,
) -> List[schemas.DuplicateMember]:
    with deps.translate_errors():
        members = await index.find_by_checksum(context.user_id, checksum)
    return [schemas.DuplicateMember(**member) for member in members]


@router.get("/size/{size}", response_model=List[schemas.DuplicateMember])
async def find_by_size(
    size: int,
    index: deps.DuplicatesDependency,
    context: deps.AuthDependency,
) -> List[schemas.DuplicateMember]:
    with deps.translate_errors():
        members = await index.find_by_size(context.user_id, size)
    return [schemas.DuplicateMember(**member) for member in members]


__all__ = ["router"]
