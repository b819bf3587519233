from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.api import deps
from app.core.auth import issue_token
from app.core.config import Settings, get_settings
from app.core.tools import check_tools

from . import schemas
from .schemas import EnvCheckResponse


router = APIRouter(prefix="/admin", tags=["admin"])


class DevTokenRequest(BaseModel):
    user_id: str = Field(..., examples=["user-123"])
    scopes: list[str] = Field(default_factory=list)


class DevTokenResponse(BaseModel):
    token: str


@router.get("/env-check", response_model=EnvCheckResponse, summary="Report external tool availability")
async def env_check(context: deps.AdminDependency) -> EnvCheckResponse:
    return EnvCheckResponse(**check_tools())


@router.get("/queues", response_model=List[schemas.QueueStatsResponse])
async def queue_stats(context: deps.AdminDependency, jobs: deps.JobsDependency) -> List[schemas.QueueStatsResponse]:
    return [
        schemas.QueueStatsResponse(
            name=item.name,
            priority=item.priority,
            pending=item.pending,
            scheduled=item.scheduled,
            active=item.active,
            dead=item.dead,
            paused=item.paused,
        )
        for item in await jobs.stats()
    ]


@router.post("/queues/{name}/pause", response_model=schemas.QueueActionResponse)
async def pause_queue(name: str, context: deps.AdminDependency, jobs: deps.JobsDependency) -> schemas.QueueActionResponse:
    with deps.translate_errors():
        await jobs.pause(name)
        paused = await jobs.is_paused(name)
    return schemas.QueueActionResponse(name=name, paused=paused)


@router.post("/queues/{name}/resume", response_model=schemas.QueueActionResponse)
async def resume_queue(name: str, context: deps.AdminDependency, jobs: deps.JobsDependency) -> schemas.QueueActionResponse:
    with deps.translate_errors():
        await jobs.resume(name)
        paused = await jobs.is_paused(name)
    return schemas.QueueActionResponse(name=name, paused=paused)


@router.delete("/queues/{name}/jobs", response_model=schemas.QueueActionResponse)
async def clear_queue(name: str, context: deps.AdminDependency, jobs: deps.JobsDependency) -> schemas.QueueActionResponse:
    with deps.translate_errors():
        cleared = await jobs.clear(name)
        paused = await jobs.is_paused(name)
    return schemas.QueueActionResponse(name=name, paused=paused, cleared=cleared)


@router.post("/dev-token", response_model=DevTokenResponse, summary="Mint development JWT")
async def mint_dev_token(payload: DevTokenRequest, settings: Settings = Depends(get_settings)) -> DevTokenResponse:
    if settings.environment_lower not in {"development", "dev"}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="dev_token_disabled")
    return DevTokenResponse(token=issue_token(settings, payload.user_id, scopes=payload.scopes))


__all__ = ["router"]
