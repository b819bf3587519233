from __future__ import annotations

from fastapi import APIRouter

from app.api import deps

from . import schemas


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=schemas.JobResponse)
async def get_job(
    job_id: str,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
    jobs: deps.JobsDependency,
) -> schemas.JobResponse:
    with deps.translate_errors():
        job = await service.get_owned_job(owner_id=context.user_id, job_id=job_id)
    queue_state = await jobs.get_status(job_id)
    error = job.error or {}

    return schemas.JobResponse(
        job_id=job.job_id,
        type=job.job_type.value,
        asset_id=job.asset_id,
        priority=job.priority.value,
        status=job.status.value,
        queue_state=queue_state.value,
        retry_count=job.retry_count,
        scheduled_for=job.scheduled_for,
        started_at=job.started_at,
        finished_at=job.finished_at,
        result=job.result,
        error=schemas.JobError(**error) if error else None,
    )


__all__ = ["router"]
